from datetime import datetime, timedelta, timezone
from typing import Optional


def now_utc() -> datetime:
    """Return the current time as an aware UTC datetime at millisecond precision.

    BSON datetimes only keep milliseconds, so every timestamp the messaging
    core stores goes through this helper to make sure a value read back from
    MongoDB compares equal to the value that was written.
    """
    return truncate_ms(datetime.now(timezone.utc))


def truncate_ms(dt: datetime) -> datetime:
    """Drop sub-millisecond precision and force UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    return dt.replace(microsecond=(dt.microsecond // 1000) * 1000)


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes coming out of storage as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def next_after(previous: Optional[datetime], candidate: datetime) -> datetime:
    """Return candidate, or previous + 1ms when the clock has not moved past previous."""
    if previous is not None and candidate <= previous:
        return previous + timedelta(milliseconds=1)
    return candidate


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return ensure_aware(dt).isoformat()
