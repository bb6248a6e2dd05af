"""
Clock abstraction for timeout logic.

Production code uses SystemClock. Tests inject MockClock to move time
forward without sleeping. Times are naive UTC datetimes, matching the
DateTime columns of the order tables.
"""
from datetime import datetime, timedelta, timezone
from typing import Protocol


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Clock(Protocol):
    def now(self) -> datetime:
        """Return the current time as a naive UTC datetime."""
        ...


class SystemClock:
    def now(self) -> datetime:
        return utcnow()


class MockClock:
    """
    Controllable clock for deterministic testing.

    Example:
        clock = MockClock(datetime(2024, 1, 1, 12, 0))
        clock.advance(minutes=16)
    """

    def __init__(self, start: datetime = None):
        self._current = start or datetime(2024, 1, 1, 12, 0, 0)

    def now(self) -> datetime:
        return self._current

    def advance(self, seconds: float = 0, minutes: float = 0) -> None:
        delta = timedelta(seconds=seconds, minutes=minutes)
        if delta < timedelta(0):
            raise ValueError(f"Cannot advance time by negative amount: {delta}")
        self._current += delta

    def set(self, value: datetime) -> None:
        self._current = value


DEFAULT_CLOCK: Clock = SystemClock()
