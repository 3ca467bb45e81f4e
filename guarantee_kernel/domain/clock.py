"""
Clock -- injectable time source.

Responsibility:
    Services never call ``datetime.now()`` or ``date.today()`` directly;
    they receive a Clock.  Elapsed guarantee days, request and approval
    timestamps and quote expiry all come from it, so every workflow run is
    reproducible under a DeterministicClock.

Architecture position:
    Kernel > Domain -- zero I/O, except SystemClock.

Failure modes:
    - DeterministicClock rejects naive datetimes with ValueError.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone


class Clock(ABC):
    """``now()`` is timezone-aware; ``today()`` is its calendar date."""

    @abstractmethod
    def now(self) -> datetime:
        ...

    def today(self) -> date:
        return self.now().date()


class SystemClock(Clock):
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock that only moves when told to.

    Defaults to 2024-01-01 12:00 UTC, the first day of the standard test
    guarantee term.
    """

    DEFAULT_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __init__(self, fixed_time: datetime | None = None):
        self._current = self.DEFAULT_TIME
        if fixed_time is not None:
            self.set_time(fixed_time)

    def now(self) -> datetime:
        return self._current

    def set_time(self, value: datetime) -> None:
        if value.tzinfo is None:
            raise ValueError("DeterministicClock requires a timezone-aware datetime")
        self._current = value

    def advance(self, seconds: int = 1) -> None:
        self._current += timedelta(seconds=seconds)

    def advance_days(self, days: int = 1) -> None:
        self._current += timedelta(days=days)
