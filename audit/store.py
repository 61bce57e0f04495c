"""
audit/store.py -- SQLAlchemy Core persistence for login attempts.

Pattern: Repository + Data Mapper. LoginHistoryStore is the repository;
_row_to_attempt is the mapper.

The table is append-only from this service's point of view: insert() is the
only write. Retention and pruning are an operational concern handled outside
the service.

Query contract (history()):
  - newest first (timestamp DESC, id DESC as tie-breaker)
  - offset pagination: skip = (page - 1) * page_size
  - the HistoryFilter narrows on the success column only
  - success / failure counts are computed over the user's unfiltered history

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, case, func, select, true
from sqlalchemy.engine import Engine
from sqlalchemy.sql.elements import ColumnElement

from audit.models import HistoryFilter, LoginAttempt, LoginHistoryPage
from core.db import make_engine, to_iso, translate_store_errors
from core.models import DEVICE_DESKTOP, UNKNOWN_BROWSER, UNKNOWN_OS, DeviceInfo, GeoLocation

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_history = Table(
    "login_history",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer),  # NULL when the email matched no account
    Column("email", String(255), nullable=False),
    Column("success", Integer, nullable=False),
    Column("failure_reason", String(64)),
    Column("ip_address", String(64), nullable=False, server_default="unknown"),
    Column("browser", String(64)),
    Column("os", String(64)),
    Column("device", String(16)),
    Column("city", String(128)),
    Column("country", String(128)),
    Column("timestamp", String(40), nullable=False),
    Index("ix_login_history_user_time", "user_id", "timestamp"),
)


# ---------------------------------------------------------------------------
# Query building
# ---------------------------------------------------------------------------


def filter_clause(history_filter: HistoryFilter) -> ColumnElement:
    """Map the closed HistoryFilter set onto a WHERE fragment."""
    if history_filter is HistoryFilter.SUCCESS:
        return _history.c.success == 1
    if history_filter is HistoryFilter.FAILED:
        return _history.c.success == 0
    return true()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class LoginHistoryStore:
    """Repository for LoginAttempt records.

    Usage:
        store = LoginHistoryStore("sqlite:///spendtracker_audit.db")
        store.insert(LoginAttempt(email="alex@example.com", success=True, user_id=1))
        page = store.history(user_id=1, page=1, page_size=20, history_filter=HistoryFilter.ALL)
    """

    def __init__(self, db_url: str = "sqlite:///spendtracker_audit.db", timeout_seconds: float = 5.0) -> None:
        self.engine: Engine = make_engine(db_url, timeout_seconds)
        _metadata.create_all(self.engine)

    def insert(self, attempt: LoginAttempt) -> int:
        """Append one attempt and return its row ID."""
        location = attempt.location
        with translate_store_errors(), self.engine.connect() as conn:
            result = conn.execute(
                _history.insert().values(
                    user_id=attempt.user_id,
                    email=attempt.email,
                    success=1 if attempt.success else 0,
                    failure_reason=attempt.failure_reason,
                    ip_address=attempt.ip_address,
                    browser=attempt.device.browser,
                    os=attempt.device.os,
                    device=attempt.device.device,
                    city=location.city if location else None,
                    country=location.country if location else None,
                    timestamp=to_iso(attempt.timestamp),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def history(
        self,
        user_id: int,
        page: int = 1,
        page_size: int = 20,
        history_filter: HistoryFilter = HistoryFilter.ALL,
    ) -> LoginHistoryPage:
        """Return one page of a user's attempts, newest first, with whole-history counts."""
        if page < 1 or page_size < 1:
            raise ValueError("page and page_size must be positive")
        scoped = _history.c.user_id == user_id
        narrowed = scoped & filter_clause(history_filter)
        with translate_store_errors(), self.engine.connect() as conn:
            rows = conn.execute(
                _history.select()
                .where(narrowed)
                .order_by(_history.c.timestamp.desc(), _history.c.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            ).fetchall()
            total = conn.execute(select(func.count()).select_from(_history).where(narrowed)).scalar() or 0
            counts = conn.execute(
                select(
                    func.coalesce(func.sum(case((_history.c.success == 1, 1), else_=0)), 0),
                    func.coalesce(func.sum(case((_history.c.success == 0, 1), else_=0)), 0),
                ).where(scoped)
            ).one()
        return LoginHistoryPage(
            records=[_row_to_attempt(r) for r in rows],
            page=page,
            page_size=page_size,
            total_count=total,
            success_count=int(counts[0]),
            failure_count=int(counts[1]),
        )

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_attempt(row) -> LoginAttempt:
    location = None
    if row.city or row.country:
        location = GeoLocation(city=row.city, country=row.country)
    return LoginAttempt(
        id=row.id,
        user_id=row.user_id,
        email=row.email,
        success=bool(row.success),
        failure_reason=row.failure_reason,
        ip_address=row.ip_address,
        device=DeviceInfo(
            browser=row.browser or UNKNOWN_BROWSER,
            os=row.os or UNKNOWN_OS,
            device=row.device or DEVICE_DESKTOP,
        ),
        location=location,
        timestamp=datetime.fromisoformat(row.timestamp),
    )
