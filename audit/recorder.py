"""
audit/recorder.py -- Best-effort login attempt recorder.

record() must never change the outcome of the login that triggered it. The
write runs on a small worker pool and the caller waits at most
audit_timeout_seconds for it:

  - write succeeds in time       -> True
  - store raises or times out    -> warning logged, False
  - too many writes outstanding  -> warning logged, False, nothing queued
  - auditing disabled by config  -> False, nothing written

A timed-out write is abandoned, not cancelled: it may still land later and
it keeps its slot until it does. At most audit_max_pending writes are ever
queued or running, so a stalled store costs audit rows, never memory or a
login.

Log lines name the user id, never the typed email.

query() is a plain read. Store failures propagate as StoreUnavailable /
StoreTimeout so the API can answer 503 and the client can retry.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout

from audit.models import HistoryFilter, LoginAttempt, LoginHistoryPage
from audit.store import LoginHistoryStore
from core.config import Settings
from core.errors import ValidationFailed

logger = logging.getLogger("spendtracker.audit")

MAX_PAGE_SIZE = 100


class LoginAuditRecorder:
    """Writes and reads the login history."""

    def __init__(self, store: LoginHistoryStore, settings: Settings) -> None:
        self._store = store
        self._enabled = settings.audit_enabled
        self._timeout = settings.audit_timeout_seconds
        self._max_pending = settings.audit_max_pending
        self._slots = threading.BoundedSemaphore(self._max_pending)
        self._pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="audit-writer")

    def record(self, attempt: LoginAttempt) -> bool:
        """Append one attempt. Never raises; returns False if the row was dropped."""
        if not self._enabled:
            return False
        if not self._slots.acquire(blocking=False):
            logger.warning(
                "Audit backlog full (%d pending); attempt for user %s not logged",
                self._max_pending,
                attempt.user_id,
            )
            return False
        try:
            future = self._pool.submit(self._store.insert, attempt)
        except RuntimeError:
            # Pool already shut down
            self._slots.release()
            logger.warning("Audit writer closed; attempt for user %s not logged", attempt.user_id)
            return False
        future.add_done_callback(lambda _f: self._slots.release())

        try:
            future.result(timeout=self._timeout)
        except FutureTimeout:
            logger.warning(
                "Audit write timed out after %.2fs; attempt for user %s not logged",
                self._timeout,
                attempt.user_id,
            )
            return False
        except Exception:
            # Any store failure means the row is dropped.
            logger.warning("Audit write failed; attempt for user %s not logged", attempt.user_id, exc_info=True)
            return False
        return True

    def query(
        self,
        user_id: int,
        page: int = 1,
        page_size: int = 20,
        history_filter: HistoryFilter = HistoryFilter.ALL,
    ) -> LoginHistoryPage:
        if page < 1:
            raise ValidationFailed("page must be 1 or greater.")
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValidationFailed(f"limit must be between 1 and {MAX_PAGE_SIZE}.")
        return self._store.history(user_id, page=page, page_size=page_size, history_filter=history_filter)

    def close(self, wait: bool = False) -> None:
        """Stop the writer pool. wait=True blocks until queued writes finish."""
        self._pool.shutdown(wait=wait)
