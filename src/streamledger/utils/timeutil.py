"""Time helpers shared by the session pipeline."""

from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """
    Normalize a datetime to timezone-aware UTC.

    SQLite hands back naive datetimes for timezone-aware columns; those are
    stored as UTC, so a naive value is taken to be UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def optional_utc(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if value is not None else None


def duration_ms(start: datetime, end: datetime) -> int:
    """Whole milliseconds between two datetimes."""
    delta = ensure_utc(end) - ensure_utc(start)
    return delta // timedelta(milliseconds=1)


def minutes_to_ms(minutes: float) -> int:
    return int(minutes * 60_000)


def parse_date(value: str) -> datetime:
    """
    Parse an ISO-8601 date or datetime string into an aware UTC datetime.

    Accepts "2025-12-25", "2025-12-25T09:00", "2025-12-25T09:00:00Z".

    Raises:
        ValueError: If the string is not a valid ISO date/datetime
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))
