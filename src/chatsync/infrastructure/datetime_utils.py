"""Datetime utilities for backend rows."""

from datetime import datetime, timezone


def normalize_to_utc(dt: datetime) -> datetime:
    """Ensure datetime is UTC and timezone-aware.

    SQLite stores datetimes without timezone info. This function:
    - Adds UTC timezone to naive datetimes (treating them as UTC).
    - Converts timezone-aware datetimes to UTC.

    Args:
        dt: datetime to process

    Returns:
        timezone-aware datetime in UTC
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse a Postgres/ISO 8601 timestamp into an aware UTC datetime.

    Accepts a trailing "Z" and the space separator Postgres uses in
    text output.

    Args:
        value: Timestamp string or datetime.

    Returns:
        timezone-aware datetime in UTC

    Raises:
        ValueError: The value is not a valid timestamp.
    """
    if isinstance(value, datetime):
        return normalize_to_utc(value)
    text = value.strip().replace(" ", "T", 1)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return normalize_to_utc(datetime.fromisoformat(text))
