"""
auth/login.py -- Sign-in, sign-out and session management.

LoginService is the one place that decides whether an attempt succeeds. It
orchestrates the other auth components in a fixed order:

  1. origin      -- device (User-Agent), client IP, best-effort location
  2. lookup      -- timing-equalized bcrypt check (auth/passwords.py) [C1]
  3. lockout     -- max_failed_logins consecutive failures lock the account
                    for lockout_seconds; an expired lock is cleared here
  4. active flag -- disabled accounts cannot sign in
  5. password    -- wrong password increments the failure counter
  6. 2nd factor  -- only for confirmed MFA enrollments; a missing code yields
                    LoginResult(requires_mfa=True) instead of a token
  7. session     -- session row (revocation flag) + signed token

Audit contract: every call to login() produces exactly one LoginAttempt,
whichever branch it leaves through, including store failures. The recorder
is best-effort, so auditing can never change the outcome.

Failure reasons (stored, shown in the login history):
  "Invalid credentials"  unknown email
  "Account locked"       lock active at the time of the attempt
  "Account disabled"     is_active = False
  "Invalid password"     known email, wrong password
  "MFA code required"    password ok, second factor not supplied yet
  "Invalid MFA code"     wrong TOTP or unusable backup code
  "Service unavailable"  the credential store failed mid-attempt

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from audit.models import LoginAttempt
from audit.recorder import LoginAuditRecorder
from auth.mfa import MFAService
from auth.models import Session, User
from auth.passwords import lookup_user
from auth.store import UserStore
from auth.tokens import IssuedToken, TokenClaims, TokenService
from core.config import Settings
from core.db import now_iso, to_iso
from core.device import extract_ip, parse_user_agent, resolve_location
from core.errors import (
    AccountLocked,
    AuthServiceError,
    Forbidden,
    InvalidCredentials,
    NotFound,
    StoreUnavailable,
)
from core.models import DeviceInfo, GeoLocation

logger = logging.getLogger("spendtracker.auth")

REASON_UNKNOWN_EMAIL = "Invalid credentials"
REASON_LOCKED = "Account locked"
REASON_DISABLED = "Account disabled"
REASON_BAD_PASSWORD = "Invalid password"
REASON_MFA_REQUIRED = "MFA code required"
REASON_BAD_MFA = "Invalid MFA code"
REASON_UNAVAILABLE = "Service unavailable"


@dataclass(frozen=True)
class LoginOrigin:
    device: DeviceInfo
    ip_address: str
    location: Optional[GeoLocation]


@dataclass(frozen=True)
class LoginResult:
    """Outcome of a password check that did not fail.

    Either requires_mfa is True and nothing was issued, or user and issued
    are both set.
    """

    requires_mfa: bool = False
    user: Optional[User] = None
    issued: Optional[IssuedToken] = None


class _Rejected(Exception):
    """Internal: carries the audit reason alongside the error to raise."""

    def __init__(self, reason: str, error: AuthServiceError, user: User | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.error = error
        self.user = user


class LoginService:
    def __init__(
        self,
        store: UserStore,
        tokens: TokenService,
        mfa: MFAService,
        recorder: LoginAuditRecorder,
        settings: Settings,
    ) -> None:
        self._store = store
        self._tokens = tokens
        self._mfa = mfa
        self._recorder = recorder
        self._settings = settings

    # ------------------------------------------------------------------
    # Sign-in
    # ------------------------------------------------------------------

    def login(
        self,
        email: str,
        password: str,
        mfa_code: str | None = None,
        remember_me: bool = False,
        headers: Mapping[str, str] | None = None,
    ) -> LoginResult:
        """Authenticate one attempt and record it.

        Raises InvalidCredentials, AccountLocked, Forbidden, InvalidCode,
        InvalidOrUsed or StoreUnavailable. Returns LoginResult otherwise.
        """
        origin = self.origin(headers or {})
        user: User | None = None
        try:
            user = self._check_password(email, password)
            if mfa_code is None or not mfa_code.strip():
                if self._mfa.is_required(user):
                    self._audit(email, origin, user, REASON_MFA_REQUIRED)
                    return LoginResult(requires_mfa=True)
            elif self._mfa.is_required(user):
                self._check_second_factor(user, mfa_code)
            issued = self._open_session(user, remember_me, origin.device)
        except _Rejected as rejected:
            self._audit(email, origin, rejected.user, rejected.reason)
            raise rejected.error from None
        except StoreUnavailable:
            self._audit(email, origin, user, REASON_UNAVAILABLE)
            raise

        self._audit(email, origin, user, None)
        logger.info("Login succeeded for user %d (remember_me=%s)", user.id, remember_me)
        return LoginResult(user=user, issued=issued)

    def origin(self, headers: Mapping[str, str]) -> LoginOrigin:
        lowered = {k.lower(): v for k, v in headers.items()}
        ip_address = extract_ip(lowered)
        return LoginOrigin(
            device=parse_user_agent(lowered.get("user-agent")),
            ip_address=ip_address,
            location=resolve_location(ip_address, self._settings),
        )

    def _check_password(self, email: str, password: str) -> User:
        user, password_ok = lookup_user(self._store, email, password)
        if user is None:
            raise _Rejected(REASON_UNKNOWN_EMAIL, InvalidCredentials())

        if user.locked_until:
            if user.locked_until > now_iso():
                logger.warning("Login refused for locked user %d", user.id)
                raise _Rejected(REASON_LOCKED, AccountLocked(_lock_message(user.locked_until)), user)
            self._store.clear_lock(user.id)

        if not user.is_active:
            raise _Rejected(REASON_DISABLED, Forbidden("Account is disabled."), user)

        if not password_ok:
            self._count_failure(user)
            raise _Rejected(REASON_BAD_PASSWORD, InvalidCredentials(), user)
        return user

    def _check_second_factor(self, user: User, code: str) -> None:
        try:
            self._mfa.verify_second_factor(user, code)
        except StoreUnavailable:
            raise
        except AuthServiceError as exc:
            self._count_failure(user)
            raise _Rejected(REASON_BAD_MFA, exc, user) from None

    def _count_failure(self, user: User) -> None:
        lock_until = to_iso(datetime.now(timezone.utc) + timedelta(seconds=self._settings.lockout_seconds))
        attempts = self._store.record_failed_login(user.id, self._settings.max_failed_logins, lock_until)
        if attempts >= self._settings.max_failed_logins:
            logger.warning("User %d locked after %d failed logins", user.id, attempts)

    def _open_session(self, user: User, remember_me: bool, device: DeviceInfo) -> IssuedToken:
        session_id = uuid.uuid4().hex
        issued = self._tokens.issue(user, session_id, remember_me)
        self._store.create_session(
            Session(
                session_id=session_id,
                user_id=user.id,
                created_at=to_iso(issued.claims.issued_at),
                expires_at=to_iso(issued.claims.expires_at),
                remember_me=remember_me,
                browser=device.browser,
                os=device.os,
                device=device.device,
            )
        )
        self._store.record_successful_login(user.id)
        return issued

    def _audit(self, email: str, origin: LoginOrigin, user: User | None, reason: str | None) -> None:
        self._recorder.record(
            LoginAttempt(
                email=email,
                success=reason is None,
                failure_reason=reason,
                user_id=user.id if user else None,
                ip_address=origin.ip_address,
                device=origin.device,
                location=origin.location,
            )
        )

    # ------------------------------------------------------------------
    # Sign-out and sessions
    # ------------------------------------------------------------------

    def logout(self, claims: TokenClaims) -> bool:
        """Revoke the session behind claims. Idempotent."""
        revoked = self._store.revoke_session(claims.session_id, reason="logout", user_id=claims.subject_id)
        if revoked:
            logger.info("User %d signed out", claims.subject_id)
        return revoked

    def list_sessions(self, user_id: int) -> list[Session]:
        return self._store.list_active_sessions(user_id)

    def revoke_session(self, user_id: int, session_id: str) -> None:
        """Revoke one of user_id's own sessions. NotFound for anything else."""
        if not self._store.revoke_session(session_id, reason="user_revoked", user_id=user_id):
            raise NotFound("Session not found.")
        logger.info("User %d revoked session %s", user_id, session_id[:8])

    def revoke_other_sessions(self, user_id: int, current_session_id: str) -> int:
        count = self._store.revoke_user_sessions(user_id, reason="user_revoked", keep_session_id=current_session_id)
        logger.info("User %d revoked %d other session(s)", user_id, count)
        return count


def _lock_message(locked_until: str) -> str:
    remaining = datetime.fromisoformat(locked_until) - datetime.now(timezone.utc)
    minutes = max(1, -(-int(remaining.total_seconds()) // 60))
    return f"Account is locked. Try again in {minutes} minute(s)."
