from datetime import date, datetime, time, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | date | None) -> datetime | None:
    """Normalise a stored timestamp to an aware UTC datetime.

    Some drivers (SQLite) hand back naive datetimes for timezone-aware
    columns; those are treated as UTC. Plain dates become midnight UTC.
    """
    if value is None:
        return None
    if not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    # Make tz-aware if naive
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def days_between(earlier: datetime | date | None, later: datetime) -> int:
    """Whole days elapsed from ``earlier`` to ``later`` (0 when unknown)."""
    start = as_utc(earlier)
    if start is None:
        return 0
    return int((as_utc(later) - start).total_seconds() // 86400)
