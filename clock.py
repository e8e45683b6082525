from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone


class Clock(ABC):
    """Supplies the calendar date the engine treats as today."""

    @abstractmethod
    def today(self) -> date:
        ...


class SystemClock(Clock):
    def today(self) -> date:
        return datetime.now(timezone.utc).date()


class FixedClock(Clock):
    """A clock that only moves when told to."""

    def __init__(self, current: date):
        self.current = current

    def today(self) -> date:
        return self.current

    def advance(self, days: int) -> date:
        self.current = self.current + timedelta(days=days)
        return self.current
