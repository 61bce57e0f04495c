"""
API request and response models for the Spend Tracker auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
audit/models.py, which own the internal domain representation. Route handlers
map between the two.

Envelope: every successful body is {"success": true, "data": ...} and every
error body is {"success": false, "error": {"code", "message"}}.

Separation of concerns: domain models = domain truth; api/ models = API contract.
"""

from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from audit.models import LoginAttempt, LoginHistoryPage
from auth.mfa import MFASetup, MFAStatus
from auth.models import Session, User
from core.device import describe_device

T = TypeVar("T")

TOTP_CODE_PATTERN = r"^\d{6}$"


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class SuccessResponse(BaseModel, Generic[T]):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    data: T


class FieldError(BaseModel):
    """One rejected input field. The submitted value is never echoed back."""

    model_config = ConfigDict(frozen=True)

    loc: str  # e.g. "body.password"
    msg: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    fields: Optional[list[FieldError]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    success: bool = False
    error: ErrorDetail


class MessageData(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    password max_length=128 keeps input well under bcrypt's 72-byte cutoff for
    typical passwords and bounds hashing cost per request. Both snake_case and
    the camelCase names used by the web client are accepted.
    """

    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=128)
    mfa_code: Optional[str] = Field(default=None, max_length=16, alias="mfaToken")
    remember_me: bool = Field(default=False, alias="rememberMe")


class MFAVerifyRequest(BaseModel):
    """Request body for POST /api/v1/auth/mfa/verify."""

    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(pattern=TOTP_CODE_PATTERN)


class MFADisableRequest(BaseModel):
    """Request body for POST /api/v1/auth/mfa/disable. Password re-entry is mandatory."""

    password: str = Field(min_length=1, max_length=128)


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class UserInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    role: str
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserInfo":
        return cls(id=user.id, email=user.email, role=user.role, last_login=user.last_login)


class LoginData(BaseModel):
    """Response data for POST /api/v1/auth/login.

    requires_mfa=True means the password was right but a second factor is
    needed; no token is issued and the client repeats the login with mfaToken.
    """

    model_config = ConfigDict(frozen=True)

    requires_mfa: bool = False
    access_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_at: Optional[str] = None
    user: Optional[UserInfo] = None


class MeData(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: UserInfo
    session_id: str
    expires_at: str
    mfa_enabled: bool


class MFASetupData(BaseModel):
    """Response data for POST /api/v1/auth/mfa/setup. Backup codes are shown once."""

    model_config = ConfigDict(frozen=True)

    secret: str
    qr_code: str
    provisioning_uri: str
    backup_codes: list[str]

    @classmethod
    def from_setup(cls, setup: MFASetup) -> "MFASetupData":
        return cls(
            secret=setup.secret,
            qr_code=setup.qr_code,
            provisioning_uri=setup.provisioning_uri,
            backup_codes=list(setup.backup_codes),
        )


class MFAStatusData(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool
    has_secret: bool
    remaining_backup_codes: int

    @classmethod
    def from_status(cls, status: MFAStatus) -> "MFAStatusData":
        return cls(
            enabled=status.enabled,
            has_secret=status.has_secret,
            remaining_backup_codes=status.remaining_backup_codes,
        )


class MFADisableData(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    sessions_revoked: int


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class SessionInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    created_at: str
    expires_at: str
    remember_me: bool
    browser: Optional[str]
    os: Optional[str]
    device: Optional[str]
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, current_session_id: str) -> "SessionInfo":
        return cls(
            session_id=session.session_id,
            created_at=session.created_at,
            expires_at=session.expires_at,
            remember_me=session.remember_me,
            browser=session.browser,
            os=session.os,
            device=session.device,
            current=session.session_id == current_session_id,
        )


class RevokedData(BaseModel):
    model_config = ConfigDict(frozen=True)

    revoked: int


# ---------------------------------------------------------------------------
# Login history
# ---------------------------------------------------------------------------


class DeviceData(BaseModel):
    model_config = ConfigDict(frozen=True)

    browser: str
    os: str
    device: str
    label: str


class LoginHistoryRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    timestamp: str
    success: bool
    failure_reason: Optional[str]
    ip_address: str
    device: DeviceData
    location: Optional[str] = None

    @classmethod
    def from_attempt(cls, attempt: LoginAttempt) -> "LoginHistoryRecord":
        return cls(
            id=attempt.id,
            timestamp=attempt.timestamp.isoformat(),
            success=attempt.success,
            failure_reason=attempt.failure_reason,
            ip_address=attempt.ip_address,
            device=DeviceData(
                browser=attempt.device.browser,
                os=attempt.device.os,
                device=attempt.device.device,
                label=describe_device(attempt.device),
            ),
            location=attempt.location.label() if attempt.location else None,
        )


class Pagination(BaseModel):
    model_config = ConfigDict(frozen=True)

    page: int
    limit: int
    total: int
    total_pages: int


class LoginStats(BaseModel):
    """Whole-history counts; independent of the page filter."""

    model_config = ConfigDict(frozen=True)

    successful_logins: int
    failed_attempts: int


class LoginHistoryData(BaseModel):
    """Response data for GET /api/v1/security/login-history."""

    model_config = ConfigDict(frozen=True)

    records: list[LoginHistoryRecord]
    pagination: Pagination
    stats: LoginStats

    @classmethod
    def from_page(cls, page: LoginHistoryPage) -> "LoginHistoryData":
        return cls(
            records=[LoginHistoryRecord.from_attempt(a) for a in page.records],
            pagination=Pagination(
                page=page.page,
                limit=page.page_size,
                total=page.total_count,
                total_pages=page.total_pages,
            ),
            stats=LoginStats(successful_logins=page.success_count, failed_attempts=page.failure_count),
        )


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
