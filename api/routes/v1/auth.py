"""
api/routes/v1/auth.py -- Authentication, MFA and session REST endpoints.

Routes:
  POST   /api/v1/auth/login                  -- password (+ second factor) login; sets cookie
  POST   /api/v1/auth/logout                 -- revokes the current session; clears cookie
  GET    /api/v1/auth/me                     -- current user info (requires auth)
  GET    /api/v1/auth/mfa/setup              -- MFA status (requires auth)
  POST   /api/v1/auth/mfa/setup              -- begin enrollment: secret, QR, backup codes
  POST   /api/v1/auth/mfa/verify             -- confirm enrollment with a TOTP code
  POST   /api/v1/auth/mfa/disable            -- disable MFA (password re-entry)
  GET    /api/v1/auth/sessions               -- caller's live sessions
  DELETE /api/v1/auth/sessions/{session_id}  -- revoke one of the caller's sessions
  POST   /api/v1/auth/sessions/revoke-others -- revoke every session but the current one

Security:
  [H2] POST /login is rate-limited per IP (Settings.login_rate_limit).
  [C1] LoginService uses timing-equalized lookups -- never inline the check here.
  [M5] Cache-Control: no-store on login and MFA setup responses.
  IDOR guard: DELETE /sessions/{id} passes the caller's user_id to the store;
  the store's WHERE clause requires both to match.

Errors are raised as core.errors.AuthServiceError subclasses; api/main.py
renders them into the shared error envelope.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    LoginData,
    LoginRequest,
    MeData,
    MessageData,
    MFADisableData,
    MFADisableRequest,
    MFASetupData,
    MFAStatusData,
    MFAVerifyRequest,
    RevokedData,
    SessionInfo,
    SuccessResponse,
    UserInfo,
)
from auth.dependencies import CurrentSession, get_current_session, try_get_current_session
from auth.login import LoginService
from auth.mfa import MFAService
from auth.tokens import TokenService
from core.config import get_settings

# Auth policy:
# - POST /auth/login:   public -- login endpoint must be unauthenticated
# - POST /auth/logout:  public -- clearing a cookie needs no prior auth; the
#                       session is revoked only when a valid token is present
# - everything else:    requires auth (get_current_session)
router = APIRouter()


# ---------------------------------------------------------------------------
# Sign-in / sign-out
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=SuccessResponse[LoginData])
@limiter.limit(get_settings().login_rate_limit)  # [H2] innermost so the wrapper itself enforces the limit
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password, plus a second factor when enabled.

    Without mfaToken, an MFA-enabled account answers requires_mfa=true and no
    cookie is set. Wrong email and wrong password share one error message.
    """
    login_service: LoginService = request.app.state.login_service
    token_service: TokenService = request.app.state.token_service
    result = login_service.login(
        email=body.email,
        password=body.password,
        mfa_code=body.mfa_code,
        remember_me=body.remember_me,
        headers=request.headers,
    )

    if result.requires_mfa:
        data = LoginData(requires_mfa=True)
    else:
        data = LoginData(
            access_token=result.issued.token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_at=result.issued.claims.expires_at.isoformat(),
            user=UserInfo.from_user(result.user),
        )
    resp = JSONResponse(status_code=200, content=SuccessResponse[LoginData](data=data).model_dump())
    if result.issued is not None:
        token_service.set_session_cookie(resp, result.issued)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout", response_model=SuccessResponse[MessageData])
def logout(request: Request) -> JSONResponse:
    """Revoke the current session (if any) and clear the cookie."""
    current = try_get_current_session(request)
    if current is not None:
        request.app.state.login_service.logout(current.claims)
    resp = JSONResponse(content=SuccessResponse[MessageData](data=MessageData(message="Logged out.")).model_dump())
    request.app.state.token_service.clear_session_cookie(resp)
    return resp


@router.get("/auth/me", response_model=SuccessResponse[MeData])
def me(request: Request, current: CurrentSession = Depends(get_current_session)) -> SuccessResponse[MeData]:
    mfa: MFAService = request.app.state.mfa_service
    return SuccessResponse[MeData](
        data=MeData(
            user=UserInfo.from_user(current.user),
            session_id=current.claims.session_id,
            expires_at=current.claims.expires_at.isoformat(),
            mfa_enabled=mfa.is_required(current.user),
        )
    )


# ---------------------------------------------------------------------------
# MFA
# ---------------------------------------------------------------------------


@router.get("/auth/mfa/setup", response_model=SuccessResponse[MFAStatusData])
def mfa_status(
    request: Request, current: CurrentSession = Depends(get_current_session)
) -> SuccessResponse[MFAStatusData]:
    mfa: MFAService = request.app.state.mfa_service
    return SuccessResponse[MFAStatusData](data=MFAStatusData.from_status(mfa.status(current.user)))


@router.post("/auth/mfa/setup", response_model=SuccessResponse[MFASetupData])
def mfa_setup(request: Request, current: CurrentSession = Depends(get_current_session)) -> JSONResponse:
    """Start enrollment. The plaintext backup codes in this response are never shown again."""
    mfa: MFAService = request.app.state.mfa_service
    setup = mfa.begin_setup(current.user)
    resp = JSONResponse(
        content=SuccessResponse[MFASetupData](data=MFASetupData.from_setup(setup)).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/mfa/verify", response_model=SuccessResponse[MessageData])
def mfa_verify(
    request: Request,
    body: MFAVerifyRequest,
    current: CurrentSession = Depends(get_current_session),
) -> SuccessResponse[MessageData]:
    mfa: MFAService = request.app.state.mfa_service
    mfa.confirm_setup(current.user, body.code)
    return SuccessResponse[MessageData](data=MessageData(message="MFA has been enabled."))


@router.post("/auth/mfa/disable", response_model=SuccessResponse[MFADisableData])
def mfa_disable(
    request: Request,
    body: MFADisableRequest,
    current: CurrentSession = Depends(get_current_session),
) -> JSONResponse:
    """Turn MFA off. Every session, including this one, is revoked."""
    mfa: MFAService = request.app.state.mfa_service
    revoked = mfa.disable(current.user, body.password)
    resp = JSONResponse(
        content=SuccessResponse[MFADisableData](
            data=MFADisableData(message="MFA has been disabled. Please sign in again.", sessions_revoked=revoked)
        ).model_dump()
    )
    request.app.state.token_service.clear_session_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.get("/auth/sessions", response_model=SuccessResponse[list[SessionInfo]])
def list_sessions(
    request: Request, current: CurrentSession = Depends(get_current_session)
) -> SuccessResponse[list[SessionInfo]]:
    login_service: LoginService = request.app.state.login_service
    sessions = login_service.list_sessions(current.user.id)
    return SuccessResponse[list[SessionInfo]](
        data=[SessionInfo.from_session(s, current.claims.session_id) for s in sessions]
    )


@router.post("/auth/sessions/revoke-others", response_model=SuccessResponse[RevokedData])
def revoke_other_sessions(
    request: Request, current: CurrentSession = Depends(get_current_session)
) -> SuccessResponse[RevokedData]:
    login_service: LoginService = request.app.state.login_service
    count = login_service.revoke_other_sessions(current.user.id, current.claims.session_id)
    return SuccessResponse[RevokedData](data=RevokedData(revoked=count))


@router.delete("/auth/sessions/{session_id}", response_model=SuccessResponse[RevokedData])
def revoke_session(
    request: Request,
    session_id: str,
    current: CurrentSession = Depends(get_current_session),
) -> SuccessResponse[RevokedData]:
    """Revoke one of the caller's sessions. Ownership is verified in the store [IDOR guard]."""
    login_service: LoginService = request.app.state.login_service
    login_service.revoke_session(current.user.id, session_id)
    return SuccessResponse[RevokedData](data=RevokedData(revoked=1))
