"""
core/db.py -- Engine construction and error translation shared by the stores.

Both repositories (auth/store.py and audit/store.py) build their engines here
so SQLite gets the same treatment everywhere: WAL journal mode, a bounded
busy timeout, and check_same_thread disabled for FastAPI's thread pool.

Driver failures never leak out of a store as raw SQLAlchemy errors on the
read/write paths that matter to callers:
  - "database is locked" / "busy" after the busy timeout -> StoreTimeout
  - any other OperationalError -> StoreUnavailable
IntegrityError is left alone; callers treat it as a domain signal
(e.g. duplicate email).

Layer rule: core/ is the kernel. No imports from api/, auth/, or audit/.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from core.errors import StoreTimeout, StoreUnavailable

_T = TypeVar("_T")

_LOCK_RETRIES = 20
_LOCK_RETRY_DELAY = 0.02


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind writers.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str, timeout_seconds: float) -> Engine:
    """Create an engine with a bounded SQLite busy timeout and WAL mode."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout_seconds
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


def _is_lock_error(exc: OperationalError) -> bool:
    message = str(exc.orig).lower()
    return "locked" in message or "busy" in message


def retry_on_lock(fn: Callable[[], _T]) -> _T:
    """Run a write, retrying briefly while SQLite reports the DB as locked.

    Only for conditional writes whose outcome is decided by rowcount -- a
    retry after a lost race simply matches zero rows.
    """
    for attempt in range(_LOCK_RETRIES):
        try:
            return fn()
        except OperationalError as exc:
            if not _is_lock_error(exc):
                raise StoreUnavailable() from exc
            if attempt == _LOCK_RETRIES - 1:
                raise StoreTimeout() from exc
            time.sleep(_LOCK_RETRY_DELAY * (attempt + 1))
    raise StoreTimeout()


@contextmanager
def translate_store_errors() -> Iterator[None]:
    """Turn driver-level failures into the service error taxonomy."""
    try:
        yield
    except OperationalError as exc:
        if _is_lock_error(exc):
            raise StoreTimeout() from exc
        raise StoreUnavailable() from exc


def to_iso(dt: datetime) -> str:
    """Fixed-width UTC ISO 8601 so stored timestamps compare lexicographically."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))
