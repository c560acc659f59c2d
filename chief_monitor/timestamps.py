"""Timestamp helpers.

Every timestamp the monitor persists goes through ``to_iso`` so that stored
values share one format (UTC, millisecond precision) and string comparison
in SQL matches chronological order.
"""

from datetime import UTC, datetime


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_iso(value: datetime) -> str:
    """Render an aware or naive (assumed UTC) datetime in the canonical format."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="milliseconds")


def parse_timestamp(value: object) -> datetime | None:
    """Parse an ISO 8601 string into an aware UTC datetime.

    Accepts a trailing ``Z``. Returns None for non-strings, blank strings,
    anything ``datetime.fromisoformat`` rejects and offsets that push the
    instant outside the years 1-9999 once shifted to UTC.
    """
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=UTC)
        return parsed.astimezone(UTC)
    except (ValueError, OverflowError):
        return None


def canonicalize(value: object) -> str | None:
    """Parse and re-render a timestamp, or None when it is not parseable."""
    parsed = parse_timestamp(value)
    return to_iso(parsed) if parsed is not None else None
