"""Clock — timezone-aware instants for every date comparison in the core.

Invariants:
    - Domain logic only ever compares aware UTC datetimes
    - Naive datetimes (e.g. SQLite round-trips) are interpreted as UTC
"""

from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
