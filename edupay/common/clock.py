"""UTC time helpers.

Some drivers hand back naive datetimes for `timestamptz` columns; everything in
the service compares aware UTC values.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize a possibly-naive datetime to aware UTC."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def elapsed_ms(start: datetime | None, end: datetime | None = None) -> int:
    if start is None:
        return 0
    end = end or utcnow()
    return max(0, int((as_utc(end) - as_utc(start)).total_seconds() * 1000))
