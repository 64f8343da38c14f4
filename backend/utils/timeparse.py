"""Tolerant timestamp parsing.

Sources hand back epoch seconds, ISO-8601 strings, or human dates scraped
from a page ("March 3, 2024", "2 days ago"). Everything comes out as an
aware UTC datetime.
"""
from datetime import datetime, timezone
from typing import Optional, Union

import dateparser


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_epoch(seconds: Union[int, float, str, None]) -> Optional[datetime]:
    if seconds in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(float(seconds), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def parse_timestamp(value: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    """Best-effort parse; None when the value cannot be understood."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        return from_epoch(value)

    text = value.strip()
    if not text:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass

    parsed = dateparser.parse(text, settings={"TIMEZONE": "UTC", "RETURN_AS_TIMEZONE_AWARE": True})
    return ensure_utc(parsed) if parsed else None
