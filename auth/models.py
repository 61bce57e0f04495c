"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these classes only own domain shape.

MFA enrollment is a closed tagged variant rather than a loose
(enabled: bool, secret: str | None) pair. MFAAbsent / MFAPending /
MFAConfirmed make "enabled with no secret" unrepresentable, and callers
dispatch with isinstance().

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

ROLES = ("user", "admin")


@dataclass
class User:
    """An identity that can sign in.

    email is stored lower-cased and is the login name. hashed_password is a
    bcrypt hash; the plaintext never reaches the store. failed_login_attempts
    and locked_until drive the temporary lockout in auth/login.py.
    """

    email: str
    role: str  # "user" | "admin"
    id: int | None = None
    hashed_password: str | None = None
    is_active: bool = True
    failed_login_attempts: int = 0
    locked_until: str | None = None  # ISO 8601, None = not locked
    created_at: str | None = None
    last_login: str | None = None


@dataclass
class Session:
    """Server-side record of an issued session token.

    Only revoked_at / revoked_reason ever change after insert. expires_at is
    copied from the token's exp claim and is never extended.
    """

    session_id: str
    user_id: int
    created_at: str
    expires_at: str
    remember_me: bool = False
    browser: str | None = None
    os: str | None = None
    device: str | None = None
    revoked_at: str | None = None
    revoked_reason: str | None = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None


# ---------------------------------------------------------------------------
# MFA enrollment state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MFAAbsent:
    """No secret has been provisioned."""


@dataclass(frozen=True)
class MFAPending:
    """Secret stored, waiting for the first valid code."""

    secret: str


@dataclass(frozen=True)
class MFAConfirmed:
    """Second factor active; login demands a code."""

    secret: str


MFAEnrollment = Union[MFAAbsent, MFAPending, MFAConfirmed]


@dataclass
class BackupCode:
    """Stored form of a one-time recovery code. The plaintext is never kept.

    code_hash is HMAC-SHA256(SECRET_KEY, salt + normalized code). used_at is
    set exactly once by a conditional update in UserStore.mark_backup_code_used().
    """

    user_id: int
    salt: str
    code_hash: str
    id: int | None = None
    created_at: str | None = None
    used_at: str | None = None
