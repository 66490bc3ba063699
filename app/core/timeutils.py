"""
UTC helpers.

Some backends (SQLite in tests) hand back naive datetimes for
DateTime(timezone=True) columns; everything stored here is UTC, so naive
values are read as UTC before comparing.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
