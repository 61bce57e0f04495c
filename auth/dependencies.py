"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token sources are checked in priority order:
  1. Session cookie ("session_token") -- set by POST /api/v1/auth/login.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on the same checks:
  - TokenService.verify(): signature, token type, required claims, exp + leeway
  - the session's revocation flag in the credential store
  - the user still exists and is active

Every failure raises InvalidToken with the same generic message. The caller
cannot tell an expired token from a revoked one or a forged one [T1].

try_get_current_session() is the soft variant (returns None on failure).
get_current_session() / get_current_user() raise 401.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, Request

from auth.models import User
from auth.tokens import COOKIE_NAME, TokenClaims
from core.errors import InvalidToken


@dataclass(frozen=True)
class CurrentSession:
    """The authenticated caller: who they are and which session they used."""

    user: User
    claims: TokenClaims


def _read_token(request: Request) -> str | None:
    token = request.cookies.get(COOKIE_NAME)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def try_get_current_session(request: Request) -> CurrentSession | None:
    """Authenticate the request via cookie or Bearer header.

    Returns None on any failure. Store outages (StoreUnavailable) are not
    failures of the token and propagate as 503.
    """
    token = _read_token(request)
    if token is None:
        return None
    claims = request.app.state.token_service.verify(token)
    if claims is None:
        return None

    user_store = request.app.state.user_store
    if user_store.is_session_revoked(claims.session_id):
        return None
    user = user_store.get_by_id(claims.subject_id)
    if user is None or not user.is_active:
        return None
    return CurrentSession(user=user, claims=claims)


def get_current_session(request: Request) -> CurrentSession:
    """Require authentication. Raises InvalidToken (401) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(current: CurrentSession = Depends(get_current_session)): ...
    """
    current = try_get_current_session(request)
    if current is None:
        raise InvalidToken()
    return current


def get_current_user(current: CurrentSession = Depends(get_current_session)) -> User:
    return current.user
