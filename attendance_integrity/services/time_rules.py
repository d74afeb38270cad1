"""
Time rules service.
Wall-clock conversions, day bounds and punch bucketing.

Punch times are stored as naive datetimes in the system timezone
(settings.tz_default), which is what the terminals report.
"""
from datetime import datetime, date, time, timedelta
from typing import Optional, Tuple
import pytz
from ..config import settings


_EPOCH = datetime(1970, 1, 1)


def now_local(timezone_str: Optional[str] = None) -> datetime:
    """Current wall-clock time in the system timezone, naive."""
    tz = pytz.timezone(timezone_str or settings.tz_default)
    return datetime.now(tz).replace(tzinfo=None)


def to_local_naive(dt: datetime, timezone_str: Optional[str] = None) -> datetime:
    """
    Normalize a punch timestamp to naive system-local time.

    Args:
        dt: Naive (assumed already local) or timezone-aware datetime
        timezone_str: Timezone string (defaults to TZ_DEFAULT)

    Returns:
        Naive local datetime
    """
    if dt.tzinfo is None:
        return dt
    tz = pytz.timezone(timezone_str or settings.tz_default)
    return dt.astimezone(tz).replace(tzinfo=None)


def local_to_utc(local_datetime: datetime, timezone_str: str) -> datetime:
    """
    Convert local datetime to UTC.

    Args:
        local_datetime: Local datetime (naive)
        timezone_str: Timezone string (e.g., "Asia/Karachi")

    Returns:
        UTC datetime (timezone-aware)
    """
    tz = pytz.timezone(timezone_str)
    if local_datetime.tzinfo is None:
        local_dt = tz.localize(local_datetime)
    else:
        local_dt = local_datetime.astimezone(tz)
    return local_dt.astimezone(pytz.UTC)


def day_bounds(day: date) -> Tuple[datetime, datetime]:
    """First and last representable instant of a local calendar day."""
    return datetime.combine(day, time.min), datetime.combine(day, time.max)


def bucket_index(dt: datetime, bucket_minutes: int) -> int:
    """Index of the fixed-width bucket a naive timestamp falls in."""
    minutes = int((dt - _EPOCH).total_seconds() // 60)
    return minutes // bucket_minutes


def hours_between(start: datetime, end: datetime) -> float:
    return round((end - start).total_seconds() / 3600, 2)


def hours_ago(dt: datetime, now: datetime) -> float:
    return (now - dt).total_seconds() / 3600


def iter_days(start: date, end: date):
    """Yield each date from start to end inclusive."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)
