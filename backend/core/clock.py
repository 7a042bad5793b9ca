"""
Timestamp helpers.

Gateway events carry unix-second timestamps, the database may hand back naive
datetimes (SQLite), and API payloads use ISO 8601. Everything that compares
instants goes through these helpers so comparisons are always between
timezone-aware UTC datetimes.
"""

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Current wall-clock instant in UTC."""
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes and normalise aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def from_unix(value: int | float | str | None) -> datetime | None:
    """Convert a unix timestamp (seconds) into an aware UTC datetime.

    Returns None for missing or unparseable values.
    """
    if value is None or value == "":
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=UTC)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO 8601 string, accepting the ``Z`` suffix."""
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except (ValueError, AttributeError):
        return None


def to_iso(value: datetime | None) -> str | None:
    """Render an instant as ISO 8601 in UTC."""
    if value is None:
        return None
    return ensure_utc(value).isoformat().replace("+00:00", "Z")
