from datetime import datetime
from typing import Optional

import pytz

from lonelycare.config import settings

LOCAL_TZ = pytz.timezone(settings.timezone)


def get_timezone(name: Optional[str] = None):
    """Return the pytz zone for name, or the configured local zone."""
    if name is None:
        return LOCAL_TZ
    return pytz.timezone(name)


def to_local(dt: datetime, tz=None) -> datetime:
    """Convert a naive or aware datetime to the local timezone.
    If naive, assume it's already local time.
    """
    tz = tz or LOCAL_TZ
    if dt.tzinfo is None:
        return tz.localize(dt)
    return dt.astimezone(tz)


def now_local(tz=None) -> datetime:
    """Get current time in the local timezone."""
    tz = tz or LOCAL_TZ
    return datetime.now(pytz.UTC).astimezone(tz)


def hour_start(dt: datetime, tz=None) -> datetime:
    """Start of the wall-clock hour containing dt, in the local timezone."""
    tz = tz or LOCAL_TZ
    local = to_local(dt, tz)
    return tz.localize(local.replace(tzinfo=None, minute=0, second=0, microsecond=0))


def to_utc_naive(dt: datetime) -> datetime:
    """Normalise an aware datetime for storage in a naive UTC column."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(pytz.UTC).replace(tzinfo=None)


def from_utc_naive(dt: Optional[datetime]) -> Optional[datetime]:
    """Inverse of to_utc_naive. Naive values read back from the database are UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return pytz.UTC.localize(dt)
    return dt


def in_hour_window(dt: datetime, start_hour: int, end_hour: int, tz=None) -> bool:
    """True if dt's local hour falls in [start_hour, end_hour), wrapping past midnight.
    An empty window (start == end) never matches.
    """
    if start_hour == end_hour:
        return False
    hour = to_local(dt, tz).hour
    if start_hour < end_hour:
        return start_hour <= hour < end_hour
    return hour >= start_hour or hour < end_hour
