"""Shared datetime helpers.

Every timestamp the engine writes or compares is timezone-aware UTC.
SQLite hands ``DateTime(timezone=True)`` columns back without tzinfo, so
values read from the database go through ``ensure_utc`` before they are
serialised.

utcnow:          the default clock for schedulers and services
ensure_utc:      attach / convert to UTC
isoformat_utc:   ISO-8601 string (or None) for to_dict() payloads
parse_datetime:  ISO-8601 string → aware UTC datetime, ValueError on bad input
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat_utc(value: datetime | None) -> str | None:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def parse_datetime(value: str | datetime | None) -> datetime | None:
    """Parse an ISO-format string into an aware UTC datetime.

    Accepts the trailing ``Z`` that browsers send from ``toISOString()``.
    Empty strings and None mean "no value".

    Raises:
        ValueError: if the string is not a recognisable ISO timestamp.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str):
        raise ValueError(f"Expected an ISO-8601 string, got {type(value).__name__}")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"Invalid datetime: {value!r}. Use ISO-8601, e.g. 2026-01-31T09:00:00Z") from exc
    return ensure_utc(parsed)
