# -*- coding: utf-8 -*-
"""
DateTime utilities.

All pipeline timestamps are stored as naive UTC ISO-8601 strings so that
SQLite and PostgreSQL rows compare the same way.
"""

from datetime import datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    """Current UTC time as a naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_isoformat(value: Union[datetime, str, None]) -> Optional[str]:
    """
    Serialize a datetime for storage.

    Aware datetimes are converted to UTC first. Strings pass through
    unchanged and None stays None.
    """
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat()


def parse_datetime(value: Union[datetime, str, None]) -> Optional[datetime]:
    """
    Parse a stored or client-supplied timestamp.

    Accepts a trailing "Z". Raises ValueError for malformed input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
