"""Timestamp helpers shared by storage and executors.

All timestamps are stored as UTC ISO 8601 strings with microsecond
precision so lexical order in SQLite matches chronological order.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import dateutil.parser

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return ensure_utc(dt).isoformat(timespec="microseconds")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a provider or database timestamp into an aware UTC datetime.

    Handles ISO 8601 ("2024-01-15T10:30:00Z") and the space-separated form
    the reviews API returns ("2024-01-15 10:30:00 +00:00").

    Returns:
        Parsed datetime, or None if the value is empty or unparseable
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    try:
        return ensure_utc(dateutil.parser.parse(str(value)))
    except (ValueError, OverflowError) as e:
        logger.debug("Failed to parse timestamp %r: %s", value, e)
        return None
