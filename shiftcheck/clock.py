"""
Injectable time source.

Services never read ``datetime.now()`` themselves: the HTTP layer hands them
the process clock through ``get_clock`` and the sweep worker builds its own
``SystemClock``. Tests pass a ``FixedClock`` and move it between sweep ticks.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    @abstractmethod
    def now_utc(self) -> datetime:
        """Current instant as a timezone-aware UTC datetime."""


class SystemClock(Clock):
    def now_utc(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Clock frozen at a given instant until moved explicitly."""

    def __init__(self, fixed_time: datetime | None = None) -> None:
        value = fixed_time or datetime(2025, 1, 6, 8, 0, tzinfo=timezone.utc)
        self._now = _as_utc(value)

    def now_utc(self) -> datetime:
        return self._now

    def set_time(self, value: datetime) -> None:
        self._now = _as_utc(value)

    def advance(self, *, minutes: int = 0, hours: int = 0, days: int = 0) -> datetime:
        self._now = self._now + timedelta(minutes=minutes, hours=hours, days=days)
        return self._now


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


_SYSTEM_CLOCK = SystemClock()


def get_clock() -> Clock:
    return _SYSTEM_CLOCK
