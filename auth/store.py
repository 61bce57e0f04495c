"""
auth/store.py -- SQLAlchemy Core persistence layer for credentials and sessions.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user /
_row_to_session / _row_to_backup_code are the mappers. Services and route code
never touch SQL directly.

This is the "credential store": it owns password hashes, MFA secrets, backup
code hashes and the per-session revocation flag.

Concurrency:
  The only mutable server-held state is sessions.revoked_at and
  mfa_backup_codes.used_at. Both change exclusively through conditional
  UPDATEs (... WHERE revoked_at IS NULL / used_at IS NULL) and success is
  decided by rowcount, never by a prior SELECT. Two racing consumers of the
  same backup code therefore get exactly one rowcount == 1.

  The MFA state transitions are conditional the same way: a pending secret
  is only written WHERE mfa_enabled = 0, and confirmation only flips the flag
  WHERE the stored secret is still the one the code was checked against.

  SQLite reports writer contention as "database is locked". Conditional
  writes are retried briefly; anything still locked after that surfaces as
  StoreTimeout, other driver failures as StoreUnavailable.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Engine

from auth.models import BackupCode, MFAAbsent, MFAConfirmed, MFAEnrollment, MFAPending, Session, User
from core.db import make_engine, now_iso, retry_on_lock, translate_store_errors

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),
    Column("role", String(16), nullable=False, server_default="user"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(40)),
    Column("mfa_secret", Text),  # NULL = no enrollment
    Column("mfa_enabled", Integer, nullable=False, server_default="0"),
    Column("created_at", String(40), nullable=False),
    Column("last_login", String(40)),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("session_id", String(64), primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("created_at", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False),
    Column("remember_me", Integer, nullable=False, server_default="0"),
    Column("browser", String(64)),
    Column("os", String(64)),
    Column("device", String(16)),
    Column("revoked_at", String(40)),  # the revocation flag
    Column("revoked_reason", String(64)),
)

_backup_codes = Table(
    "mfa_backup_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("salt", String(32), nullable=False),
    Column("code_hash", String(64), nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("used_at", String(40)),
    Index("ix_mfa_backup_codes_user_unused", "user_id", "used_at"),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users, MFA enrollment, backup codes and sessions.

    Usage:
        store = UserStore("sqlite:///spendtracker_auth.db")
        store.create_user(User(email="alex@example.com", role="admin", hashed_password=hash_password("secret")))
        user = store.get_by_email("alex@example.com")
        store.close()
    """

    def __init__(self, db_url: str = "sqlite:///spendtracker_auth.db", timeout_seconds: float = 5.0) -> None:
        self.engine: Engine = make_engine(db_url, timeout_seconds)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with translate_store_errors(), self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        with translate_store_errors(), self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email.strip().lower(),
                    hashed_password=user.hashed_password,
                    role=user.role,
                    is_active=1 if user.is_active else 0,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with translate_store_errors(), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with translate_store_errors(), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def record_successful_login(self, user_id: int) -> None:
        """Stamp last_login and clear the failed-attempt counter and lock."""

        def _write() -> None:
            with self.engine.connect() as conn:
                conn.execute(
                    _users.update()
                    .where(_users.c.id == user_id)
                    .values(last_login=now_iso(), failed_login_attempts=0, locked_until=None)
                )
                conn.commit()

        retry_on_lock(_write)

    def record_failed_login(self, user_id: int, max_attempts: int, lock_until: str) -> int:
        """Increment the failed-login counter; lock the account once it hits max_attempts.

        The increment is a single UPDATE (failed_login_attempts + 1) so two
        concurrent failures both count. Returns the new counter value.
        """

        def _write() -> int:
            with self.engine.connect() as conn:
                conn.execute(
                    _users.update()
                    .where(_users.c.id == user_id)
                    .values(failed_login_attempts=_users.c.failed_login_attempts + 1)
                )
                conn.execute(
                    _users.update()
                    .where((_users.c.id == user_id) & (_users.c.failed_login_attempts >= max_attempts))
                    .values(locked_until=lock_until)
                )
                attempts = conn.execute(
                    select(_users.c.failed_login_attempts).where(_users.c.id == user_id)
                ).scalar()
                conn.commit()
            return attempts or 0

        return retry_on_lock(_write)

    def clear_lock(self, user_id: int) -> None:
        """Reset an expired lock so the next failure starts counting from zero."""

        def _write() -> None:
            with self.engine.connect() as conn:
                conn.execute(
                    _users.update().where(_users.c.id == user_id).values(failed_login_attempts=0, locked_until=None)
                )
                conn.commit()

        retry_on_lock(_write)

    # ------------------------------------------------------------------
    # MFA enrollment
    # ------------------------------------------------------------------

    def get_mfa_enrollment(self, user_id: int) -> MFAEnrollment:
        with translate_store_errors(), self.engine.connect() as conn:
            row = conn.execute(
                select(_users.c.mfa_secret, _users.c.mfa_enabled).where(_users.c.id == user_id)
            ).fetchone()
        if row is None or not row.mfa_secret:
            return MFAAbsent()
        if row.mfa_enabled:
            return MFAConfirmed(secret=row.mfa_secret)
        return MFAPending(secret=row.mfa_secret)

    def save_pending_enrollment(self, user_id: int, secret: str, codes: list[BackupCode]) -> bool:
        """Store a new pending secret and replace the user's backup codes.

        Conditional on the enrollment not being confirmed: the UPDATE only
        matches WHERE mfa_enabled = 0. Returns False (and writes nothing) if a
        confirmed enrollment exists or the user is unknown.
        """

        def _write() -> bool:
            now = now_iso()
            with self.engine.connect() as conn:
                result = conn.execute(
                    _users.update()
                    .where((_users.c.id == user_id) & (_users.c.mfa_enabled == 0))
                    .values(mfa_secret=secret)
                )
                if result.rowcount != 1:
                    conn.rollback()
                    return False
                conn.execute(_backup_codes.delete().where(_backup_codes.c.user_id == user_id))
                if codes:
                    conn.execute(
                        _backup_codes.insert(),
                        [{"user_id": user_id, "salt": c.salt, "code_hash": c.code_hash, "created_at": now} for c in codes],
                    )
                conn.commit()
            return True

        return retry_on_lock(_write)

    def confirm_enrollment(self, user_id: int, secret: str) -> bool:
        """Flip a pending enrollment to confirmed. Returns False if it changed underneath us."""

        def _write() -> bool:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _users.update()
                    .where((_users.c.id == user_id) & (_users.c.mfa_enabled == 0) & (_users.c.mfa_secret == secret))
                    .values(mfa_enabled=1)
                )
                conn.commit()
            return result.rowcount == 1

        return retry_on_lock(_write)

    def clear_enrollment(self, user_id: int) -> None:
        """Remove the secret and every backup code (MFA disable)."""

        def _write() -> None:
            with self.engine.connect() as conn:
                conn.execute(_users.update().where(_users.c.id == user_id).values(mfa_secret=None, mfa_enabled=0))
                conn.execute(_backup_codes.delete().where(_backup_codes.c.user_id == user_id))
                conn.commit()

        retry_on_lock(_write)

    # ------------------------------------------------------------------
    # Backup codes
    # ------------------------------------------------------------------

    def list_unused_backup_codes(self, user_id: int) -> list[BackupCode]:
        with translate_store_errors(), self.engine.connect() as conn:
            rows = conn.execute(
                _backup_codes.select()
                .where((_backup_codes.c.user_id == user_id) & (_backup_codes.c.used_at.is_(None)))
                .order_by(_backup_codes.c.id)
            ).fetchall()
        return [_row_to_backup_code(r) for r in rows]

    def count_unused_backup_codes(self, user_id: int) -> int:
        with translate_store_errors(), self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_backup_codes)
                .where((_backup_codes.c.user_id == user_id) & (_backup_codes.c.used_at.is_(None)))
            ).scalar()
        return result or 0

    def mark_backup_code_used(self, code_id: int) -> bool:
        """Atomically consume a backup code. True only for the single winning caller."""

        def _write() -> bool:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _backup_codes.update()
                    .where((_backup_codes.c.id == code_id) & (_backup_codes.c.used_at.is_(None)))
                    .values(used_at=now_iso())
                )
                conn.commit()
            return result.rowcount == 1

        return retry_on_lock(_write)

    # ------------------------------------------------------------------
    # Sessions (revocation flag)
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> None:
        def _write() -> None:
            with self.engine.connect() as conn:
                conn.execute(
                    _sessions.insert().values(
                        session_id=session.session_id,
                        user_id=session.user_id,
                        created_at=session.created_at,
                        expires_at=session.expires_at,
                        remember_me=1 if session.remember_me else 0,
                        browser=session.browser,
                        os=session.os,
                        device=session.device,
                    )
                )
                conn.commit()

        retry_on_lock(_write)

    def get_session(self, session_id: str) -> Session | None:
        with translate_store_errors(), self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.session_id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def is_session_revoked(self, session_id: str) -> bool:
        """True if the session was revoked or was never recorded."""
        session = self.get_session(session_id)
        return session is None or session.is_revoked

    def revoke_session(self, session_id: str, reason: str, user_id: int | None = None) -> bool:
        """Set the revocation flag on one live session.

        When user_id is given the session must belong to that user, so a
        caller cannot revoke someone else's session by guessing its ID.
        Returns True if this call revoked it.
        """
        condition = (_sessions.c.session_id == session_id) & (_sessions.c.revoked_at.is_(None))
        if user_id is not None:
            condition = condition & (_sessions.c.user_id == user_id)

        def _write() -> bool:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _sessions.update().where(condition).values(revoked_at=now_iso(), revoked_reason=reason)
                )
                conn.commit()
            return result.rowcount == 1

        return retry_on_lock(_write)

    def revoke_user_sessions(self, user_id: int, reason: str, keep_session_id: str | None = None) -> int:
        """Revoke every live session of a user, optionally sparing one. Returns the count."""
        condition = (_sessions.c.user_id == user_id) & (_sessions.c.revoked_at.is_(None))
        if keep_session_id is not None:
            condition = condition & (_sessions.c.session_id != keep_session_id)

        def _write() -> int:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _sessions.update().where(condition).values(revoked_at=now_iso(), revoked_reason=reason)
                )
                conn.commit()
            return result.rowcount

        return retry_on_lock(_write)

    def list_active_sessions(self, user_id: int) -> list[Session]:
        """Non-revoked, unexpired sessions for a user, newest first."""
        with translate_store_errors(), self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where(
                    (_sessions.c.user_id == user_id)
                    & (_sessions.c.revoked_at.is_(None))
                    & (_sessions.c.expires_at > now_iso())
                )
                .order_by(_sessions.c.created_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        role=row.role,
        is_active=bool(row.is_active),
        failed_login_attempts=row.failed_login_attempts or 0,
        locked_until=row.locked_until,
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_session(row) -> Session:
    return Session(
        session_id=row.session_id,
        user_id=row.user_id,
        created_at=row.created_at,
        expires_at=row.expires_at,
        remember_me=bool(row.remember_me),
        browser=row.browser,
        os=row.os,
        device=row.device,
        revoked_at=row.revoked_at,
        revoked_reason=row.revoked_reason,
    )


def _row_to_backup_code(row) -> BackupCode:
    return BackupCode(
        id=row.id,
        user_id=row.user_id,
        salt=row.salt,
        code_hash=row.code_hash,
        created_at=row.created_at,
        used_at=row.used_at,
    )
