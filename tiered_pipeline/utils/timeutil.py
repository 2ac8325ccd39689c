"""
Timezone helpers. Every timestamp inside the pipeline is an aware UTC datetime.
"""

from datetime import date, datetime, time, timedelta, timezone


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp (a trailing ``Z`` is accepted).

    Raises:
        ValueError: If the string is not a valid timestamp
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """Half-open ``[start, end)`` bounds of a UTC calendar day."""
    start = start_of_day(day)
    return start, start + timedelta(days=1)


def compact(value: datetime) -> str:
    """Compact, sortable form used inside partition keys: ``20240101T050000Z``."""
    return ensure_utc(value).strftime("%Y%m%dT%H%M%SZ")
