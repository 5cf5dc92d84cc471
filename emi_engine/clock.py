"""
Clock Module

Reference time for scheduling and accrual. Every component takes a Clock so
"today" is passed in rather than read from the wall clock.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .exceptions import ConfigurationError


class Clock(ABC):
    """Source of the current instant"""

    @abstractmethod
    def now(self) -> datetime:
        """Current instant"""
        pass

    def today(self) -> date:
        """Current calendar day (the midnight-normalized 'today')"""
        return self.now().date()

    def tomorrow(self) -> date:
        return self.today() + timedelta(days=1)


class SystemClock(Clock):
    """Wall clock, optionally pinned to an IANA time zone"""

    def __init__(self, tz_name: Optional[str] = None):
        self.tz = None
        if tz_name:
            try:
                self.tz = ZoneInfo(tz_name)
            except ZoneInfoNotFoundError as e:
                raise ConfigurationError(f"Unknown time zone: {tz_name}") from e

    def now(self) -> datetime:
        if self.tz is None:
            return datetime.now()
        return datetime.now(self.tz)


class FixedClock(Clock):
    """Clock that only moves when told to"""

    def __init__(self, current: Union[datetime, date]):
        self.set(current)

    def set(self, current: Union[datetime, date]) -> None:
        if not isinstance(current, datetime):
            current = datetime(current.year, current.month, current.day, 9, 0)
        self._now = current

    def advance(self, days: int = 0, **kwargs) -> datetime:
        """Move the clock forward and return the new instant"""
        self._now = self._now + timedelta(days=days, **kwargs)
        return self._now

    def now(self) -> datetime:
        return self._now
