"""
Module: timeutils.py
Description: UTC timestamp helpers shared by models, stores and the worker.

All timestamps handled by the event bus are timezone-aware UTC datetimes.
They are serialized as ISO 8601 strings with a 'Z' suffix and a fixed
microsecond width, so that lexicographic order of the strings matches
chronological order (DynamoDB range-key comparisons rely on this).

Author: Event Bus Team
"""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime) -> str:
    """
    Serialize a datetime as a sortable ISO 8601 UTC string.

    Example:
        >>> to_iso(datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc))
        '2024-01-15T10:30:00.000000Z'
    """
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")

