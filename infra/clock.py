"""Injectable time sources. All clocks return aware UTC datetimes."""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock(ABC):
    """Single source of truth for 'now'."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current time (UTC, timezone-aware)."""


class SystemClock(Clock):
    """Wall clock for live runs."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock(Clock):
    """
    Clock that only moves when told to.

    Used by tests and replays to step through hold periods without sleeping.
    """

    def __init__(self, start: Optional[datetime] = None):
        start = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._current = start
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._current

    def set(self, value: datetime) -> None:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        with self._lock:
            self._current = value

    def advance(self, delta: Optional[timedelta] = None, *, hours: float = 0.0, minutes: float = 0.0) -> datetime:
        step = delta or timedelta(hours=hours, minutes=minutes)
        with self._lock:
            self._current = self._current + step
            return self._current


__all__ = ["Clock", "SystemClock", "ManualClock"]
