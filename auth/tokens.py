"""
auth/tokens.py -- Session token issuance and verification.

Security design decisions:
  JWT: python-jose with HS256. Tokens carry subject id, email, role, session
       id (sid), iat and exp. Verification returns None on any failure -- the
       route layer turns that into a generic 401, so a caller cannot learn
       whether the signature or the expiry was the problem [T1].

  Fixed expiry: exp = iat + 1 day (or 7 days with Remember Me), decided once
       in issue(). Nothing in the service re-issues or extends a token; a
       stolen token dies on schedule [T2].

  Clock skew: verify() accepts a token up to token_leeway_seconds (60s) past
       exp to absorb drift between the issuing and verifying hosts. The exp
       comparison is done here against the injected clock rather than inside
       jose so the boundary is deterministic under test.

  Revocation: verify() is necessary but not sufficient. The service holds no
       state and cannot see revocations -- auth/dependencies.py checks the
       session's revocation flag in the credential store after verify().

  Signing key: injected from Settings at construction. A missing or short key
       raises SigningKeyError, which aborts startup instead of degrading.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from jose import JWTError, jwt

from core.config import MIN_SECRET_KEY_LENGTH, Settings
from core.errors import SigningKeyError

if TYPE_CHECKING:
    from auth.models import User

logger = logging.getLogger("spendtracker.tokens")

ALGORITHM = "HS256"
TOKEN_TYPE = "session"
COOKIE_NAME = "session_token"

_REQUIRED_CLAIMS = ("sub", "email", "role", "sid", "iat", "exp", "typ")


@dataclass(frozen=True)
class TokenClaims:
    """Decoded, verified claim set. Immutable once issued."""

    subject_id: int
    email: str
    role: str
    session_id: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class IssuedToken:
    token: str
    claims: TokenClaims


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenService:
    """Issues and verifies signed session tokens.

    Pure and lock-free: safe to share across threads and requests.

    Usage:
        tokens = TokenService(get_settings())
        issued = tokens.issue(user, session_id="...", remember_me=False)
        claims = tokens.verify(issued.token)   # TokenClaims or None
    """

    def __init__(self, settings: Settings, clock: Callable[[], datetime] | None = None) -> None:
        key = settings.secret_key
        if not key or len(key) < MIN_SECRET_KEY_LENGTH:
            raise SigningKeyError("Token signing key is missing or shorter than 32 characters.")
        self._key = key
        self._settings = settings
        self._leeway = settings.token_leeway_seconds
        self._clock = clock or _utcnow

    # ------------------------------------------------------------------
    # Issue / verify
    # ------------------------------------------------------------------

    def issue(self, user: User, session_id: str, remember_me: bool = False) -> IssuedToken:
        """Sign a token for user/session_id with a fixed 1d or 7d lifetime [T2]."""
        issued_at = self._clock().replace(microsecond=0)
        expires_at = issued_at + timedelta(seconds=self._settings.ttl_for(remember_me))
        payload = {
            "sub": str(user.id),
            "email": user.email,
            "role": user.role,
            "sid": session_id,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "typ": TOKEN_TYPE,
        }
        token = jwt.encode(payload, self._key, algorithm=ALGORITHM)
        claims = TokenClaims(
            subject_id=user.id,
            email=user.email,
            role=user.role,
            session_id=session_id,
            issued_at=issued_at,
            expires_at=expires_at,
        )
        return IssuedToken(token=token, claims=claims)

    def verify(self, token: str | None) -> TokenClaims | None:
        """Return the claims of a valid token, or None for anything else [T1].

        None covers malformed input, bad signatures, the wrong token type,
        missing claims, and tokens more than token_leeway_seconds past exp.
        """
        if not token or not isinstance(token, str):
            return None
        try:
            payload = jwt.decode(token, self._key, algorithms=[ALGORITHM], options={"verify_exp": False})
        except JWTError:
            return None
        if any(name not in payload for name in _REQUIRED_CLAIMS) or payload["typ"] != TOKEN_TYPE:
            return None
        try:
            subject_id = int(payload["sub"])
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            return None
        if self._clock() > expires_at + timedelta(seconds=self._leeway):
            return None
        return TokenClaims(
            subject_id=subject_id,
            email=str(payload["email"]),
            role=str(payload["role"]),
            session_id=str(payload["sid"]),
            issued_at=issued_at,
            expires_at=expires_at,
        )

    # ------------------------------------------------------------------
    # Cookie helpers
    # ------------------------------------------------------------------

    def set_session_cookie(self, response, issued: IssuedToken) -> None:
        """Write the token as an httpOnly cookie that dies with the token.

        httponly=True: JS cannot read the cookie (XSS mitigation).
        samesite="lax": not sent on cross-site POST (CSRF mitigation).
        secure: HTTPS-only when SECURE_COOKIES=true.
        max_age: seconds left until exp, so cookie and token expire together.
        """
        remaining = math.ceil((issued.claims.expires_at - self._clock()).total_seconds())
        response.set_cookie(
            COOKIE_NAME,
            value=issued.token,
            httponly=True,
            samesite="lax",
            secure=self._settings.secure_cookies,
            max_age=max(remaining, 0),
            path="/",
        )

    def clear_session_cookie(self, response) -> None:
        response.delete_cookie(
            COOKIE_NAME,
            path="/",
            httponly=True,
            samesite="lax",
            secure=self._settings.secure_cookies,
        )
