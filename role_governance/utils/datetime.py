"""
Timestamp helpers shared by the governance engine.

All timestamps handled by the engine are timezone-aware UTC datetimes. Values
coming from callers or from storage backends that drop timezone information
are normalized here so comparisons never mix naive and aware datetimes.
"""

import datetime
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as dateutil_parser


class DateTimeError(ValueError):
    """Raised when a timestamp or timezone cannot be interpreted."""


def now_utc() -> datetime.datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.datetime.now(datetime.timezone.utc)


def ensure_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """
    Normalize a datetime to aware UTC.

    Naive datetimes are assumed to already be expressed in UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)


def parse_timestamp(value: Union[str, datetime.datetime, None]) -> Optional[datetime.datetime]:
    """
    Parse an ISO 8601 string (or pass through a datetime) into aware UTC.

    Raises:
        DateTimeError: If the string is not a valid ISO 8601 timestamp
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime.datetime):
        return ensure_utc(value)
    try:
        return ensure_utc(dateutil_parser.isoparse(value))
    except (ValueError, OverflowError) as exc:
        raise DateTimeError(f"Invalid timestamp: {value!r}") from exc


def get_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise DateTimeError(f"Unknown timezone: {name}") from exc


def to_isoformat(value: Optional[datetime.datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).isoformat()
