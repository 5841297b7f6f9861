"""Datetime helpers shared by the sync core and the CalDAV codec."""

import logging
from datetime import date, datetime, timezone

logger = logging.getLogger(__name__)

# Canonical UTC instant used for LAST-MODIFIED / DTSTAMP
ICAL_UTC_FORMAT = "%Y%m%dT%H%M%SZ"
ICAL_DATE_FORMAT = "%Y%m%d"


def utc_now() -> datetime:
    """Return the current instant as an aware UTC datetime without microseconds."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def safe_fromtimestamp(value: float | int | None) -> datetime | None:
    """
    Convert a stored Unix timestamp to an aware UTC datetime.

    Args:
        value: Unix timestamp (seconds), or None

    Returns:
        Aware datetime in UTC, or None if the value is missing or out of range
    """
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as e:
        logger.warning(f"Ignoring invalid timestamp {value!r}: {e}")
        return None


def to_timestamp(value: datetime | None) -> float | None:
    """Convert a datetime to a Unix timestamp, treating naive values as UTC."""
    if value is None:
        return None
    return ensure_utc(value).timestamp()


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive input is assumed UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_ical_utc(value: datetime) -> str:
    """Format an instant as ``YYYYMMDDTHHMMSSZ``."""
    return ensure_utc(value).strftime(ICAL_UTC_FORMAT)


def format_ical_date(value: date) -> str:
    """Format a date as ``YYYYMMDD``."""
    return value.strftime(ICAL_DATE_FORMAT)


def as_date(value: date | datetime | None) -> date | None:
    """Collapse a DATE or DATE-TIME value to a calendar date."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    return value
