from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DAY_MS = 24 * 60 * 60 * 1000
MINUTE_MS = 60 * 1000


def utc_now() -> datetime:
    """
    Get current UTC datetime as a timezone-aware datetime.

    Returns:
        datetime: Current UTC datetime with timezone info
    """
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Current time as a millisecond epoch timestamp"""
    return int(utc_now().timestamp() * 1000)


def to_utc(dt: datetime) -> datetime:
    """
    Convert a datetime object to UTC timezone-aware datetime.

    Args:
        dt: Datetime object to convert

    Returns:
        datetime: UTC timezone-aware datetime
    """
    if dt.tzinfo is None:
        # Assume naive datetime is in UTC
        return dt.replace(tzinfo=timezone.utc)
    else:
        return dt.astimezone(timezone.utc)


def to_ms(dt: datetime) -> int:
    """Millisecond epoch timestamp of a datetime; naive values are taken as UTC"""
    return int(to_utc(dt).timestamp() * 1000)


def from_ms(ms: int) -> datetime:
    """UTC timezone-aware datetime of a millisecond epoch timestamp"""
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def utc_offset_minutes(zone: Optional[str], at: Optional[datetime] = None) -> int:
    """
    Current UTC offset of a named timezone in minutes (east of UTC positive).

    Unknown or empty zone names yield 0.
    """
    if not zone:
        return 0
    try:
        tz = ZoneInfo(zone)
    except (ZoneInfoNotFoundError, ValueError):
        return 0
    offset = (at or utc_now()).astimezone(tz).utcoffset()
    return int(offset.total_seconds() // 60) if offset else 0


def local_day_utc_midnight_ms(ms: int) -> int:
    """
    Take the calendar date of a timestamp in the process's local timezone and
    return UTC midnight of that date.
    """
    local_date = datetime.fromtimestamp(ms / 1000).date()
    midnight = datetime(
        local_date.year, local_date.month, local_date.day, tzinfo=timezone.utc
    )
    return int(midnight.timestamp() * 1000)
