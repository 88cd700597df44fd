"""
Clock Sources

The meter stamps events with `Clock.now()`; tests swap in a ManualClock.
"""

from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Optional, Protocol


class Clock(Protocol):
    """Supplies the current UTC time."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """
    Clock that only moves when told to.

    Used for deterministic TTL tests and replays.
    """

    def __init__(self, start: Optional[datetime] = None):
        start = start or datetime(2025, 1, 1, tzinfo=timezone.utc)
        if start.tzinfo is None:
            raise ValueError("ManualClock requires a timezone-aware start time")
        self._now = start
        self._lock = Lock()

    def now(self) -> datetime:
        return self._now

    def advance(self, by: timedelta) -> datetime:
        with self._lock:
            self._now = self._now + by
            return self._now

    def set(self, value: datetime) -> None:
        if value.tzinfo is None:
            raise ValueError("ManualClock requires timezone-aware times")
        with self._lock:
            self._now = value
