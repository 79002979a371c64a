"""
Clock abstraction

All time-of-day and expiry logic reads time through a clock so that it can be
pinned in tests.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo


class Clock(ABC):
    """Source of the current time"""

    @abstractmethod
    def now(self) -> datetime:
        """Current time as a timezone-aware UTC datetime"""

    def local_now(self, tz: Optional[tzinfo] = None) -> datetime:
        """Current time converted to ``tz`` (UTC when omitted)"""
        return self.now().astimezone(tz or timezone.utc)


class SystemClock(Clock):
    """Wall clock"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Clock pinned to a given instant that only moves when told to"""

    def __init__(self, instant: datetime):
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        self._instant = instant
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._instant

    def set(self, instant: datetime) -> None:
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        with self._lock:
            self._instant = instant

    def advance(self, delta: Optional[timedelta] = None, **kwargs) -> datetime:
        step = delta if delta is not None else timedelta(**kwargs)
        with self._lock:
            self._instant = self._instant + step
            return self._instant


def get_timezone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def as_utc(value: datetime) -> datetime:
    """Normalise a datetime read back from storage to aware UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
