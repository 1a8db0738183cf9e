"""Datetime parsing for daemon timestamps and display formatting."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import pendulum

logger = logging.getLogger(__name__)

# Display format: YYYY-MM-DD HH:MM:SS
DISPLAY_FORMAT = "%Y-%m-%d %H:%M:%S"


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


def parse_event_time(value: str | None) -> datetime:
    """Parse an RFC 3339 event timestamp.

    The daemon emits nanosecond precision, e.g.
    ``2025-01-01T12:00:00.123456789+01:00``. An empty or unparsable value
    falls back to the current time.
    """
    if not value:
        return now_utc()
    try:
        parsed = pendulum.parse(value.strip(), strict=False)
    except (ValueError, TypeError):
        logger.debug("Unparsable event time %r, using now", value)
        return now_utc()
    if not isinstance(parsed, pendulum.DateTime):
        logger.debug("Event time %r is not a datetime, using now", value)
        return now_utc()
    return parsed


def parse_mod_time(value: str | None) -> datetime | None:
    """Parse a browse/file ``modTime``; None when absent or unparsable."""
    if not value:
        return None
    try:
        parsed = pendulum.parse(value.strip(), strict=False)
    except (ValueError, TypeError):
        return None
    return parsed if isinstance(parsed, pendulum.DateTime) else None


def format_datetime(dt: datetime | None) -> str:
    """Format a datetime in local time for display; "-" when missing."""
    if dt is None:
        return "-"
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone().strftime(DISPLAY_FORMAT)
