"""
Time source for the scheduler.

Every component reads "now" through a Clock so tests can move time
forward explicitly instead of sleeping.
"""

from datetime import datetime, timedelta, timezone
from typing import Protocol
from zoneinfo import ZoneInfo


class Clock(Protocol):
    """Anything that can tell the current time as an aware UTC datetime."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """
    Normalize a datetime to aware UTC.

    Naive values are taken to already be UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_local_midnight(now: datetime, tz_name: str) -> datetime:
    """
    Get the first local midnight strictly after `now`.

    Args:
        now: Reference instant (aware or naive UTC)
        tz_name: IANA timezone name, e.g. "Europe/Paris"

    Returns:
        The next local midnight, as aware UTC
    """
    tz = ZoneInfo(tz_name)
    local_now = ensure_utc(now).astimezone(tz)
    next_day = local_now.date() + timedelta(days=1)
    midnight = datetime(next_day.year, next_day.month, next_day.day, tzinfo=tz)
    return midnight.astimezone(timezone.utc)


def local_date_stamp(instant: datetime, tz_name: str) -> str:
    """Format the local calendar date of an instant as YYYYMMDD."""
    return ensure_utc(instant).astimezone(ZoneInfo(tz_name)).strftime("%Y%m%d")
