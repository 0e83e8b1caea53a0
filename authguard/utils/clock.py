"""Time helpers.

All timestamps in authguard are naive UTC datetimes, matching the
DateTime columns of the SQLAlchemy models.
"""

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_epoch_ms(value: datetime) -> int:
    """Convert a naive UTC datetime to epoch milliseconds."""
    return int(value.replace(tzinfo=timezone.utc).timestamp() * 1000)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC already."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def local_hour(value: datetime, tz_name: Optional[str]) -> int:
    """Hour of a naive UTC datetime in an IANA timezone; UTC when the zone is absent or unknown."""
    if not isinstance(tz_name, str) or not tz_name:
        return value.hour
    try:
        zone = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return value.hour
    return value.replace(tzinfo=timezone.utc).astimezone(zone).hour
