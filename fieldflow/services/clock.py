"""
Time sources.

All timestamps inside the workflow core are naive UTC, matching the
DateTime columns they are stored in.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """Port for reading the current time."""

    @abstractmethod
    def now(self) -> datetime:
        """Current time as naive UTC."""


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FixedClock(Clock):
    """A clock that only moves when told to. Used by tests and dry runs."""

    def __init__(self, current: datetime):
        self.current = current

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

    def set(self, current: datetime) -> None:
        self.current = current
