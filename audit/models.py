"""
audit/models.py -- Domain dataclasses for login auditing.

Pure data containers. LoginAttempt is append-only: the store inserts it once
and never updates or deletes it.

HistoryFilter is the closed set of page-level filters the history query
accepts. audit/store.py maps each member to a WHERE clause; no free-form
filter dicts travel between layers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from core.models import DeviceInfo, GeoLocation


class HistoryFilter(str, Enum):
    ALL = "all"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class LoginAttempt:
    """One authentication try, successful or not.

    user_id is None when the typed email matched no account. failure_reason
    is set if and only if success is False. location is None whenever the
    lookup had nothing to say, which is normal.
    """

    email: str
    success: bool
    device: DeviceInfo = field(default_factory=DeviceInfo)
    ip_address: str = "unknown"
    user_id: Optional[int] = None
    failure_reason: Optional[str] = None
    location: Optional[GeoLocation] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.success and self.failure_reason is not None:
            raise ValueError("failure_reason must be empty for a successful attempt")
        if not self.success and not self.failure_reason:
            raise ValueError("failure_reason is required for a failed attempt")


@dataclass
class LoginHistoryPage:
    """One page of history plus counts.

    total_count counts the filtered set and drives pagination.
    success_count / failure_count always cover the user's whole history,
    whatever filter the page used.
    """

    records: list[LoginAttempt]
    page: int
    page_size: int
    total_count: int
    success_count: int
    failure_count: int

    @property
    def total_pages(self) -> int:
        return -(-self.total_count // self.page_size) if self.page_size else 0
