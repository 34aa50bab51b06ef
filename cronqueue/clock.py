from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional, Protocol, Union
from zoneinfo import ZoneInfo


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in a fixed zone (UTC unless told otherwise)."""

    def __init__(self, tz: Union[str, tzinfo, None] = None):
        if isinstance(tz, str):
            tz = ZoneInfo(tz)
        self.tz = tz or timezone.utc

    def now(self) -> datetime:
        return datetime.now(self.tz)


class FixedClock:
    """
    Clock that only moves when told to.

    Used to make cron evaluation, leases and backoff deterministic in tests.
    """

    def __init__(self, start: datetime):
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.current = self.current + timedelta(seconds=seconds, **kwargs)
        return self.current

    def set(self, when: datetime) -> datetime:
        if when.tzinfo is None:
            when = when.replace(tzinfo=self.current.tzinfo)
        self.current = when
        return self.current


def as_instant(value: Union[datetime, str], tz: Optional[tzinfo] = None) -> datetime:
    """
    Coerces a datetime or ISO-8601 string into an aware datetime.
    Naive values are interpreted in `tz` (UTC by default).
    """
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=tz or timezone.utc)
    return value
