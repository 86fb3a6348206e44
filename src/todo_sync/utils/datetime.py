"""Datetime utilities with consistent UTC timezone handling.

Every timestamp the sync engine compares (``updated_at``, ``base_version``,
cursors) goes through these helpers so that naive and aware datetimes never
meet in a comparison.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional


# Smallest step used to keep a task's logical clock strictly increasing
CLOCK_TICK = timedelta(microseconds=1)


def now_utc() -> datetime:
    """Return current datetime in UTC timezone."""
    return datetime.now(timezone.utc)


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure datetime is timezone-aware, assuming UTC if naive.

    Args:
        dt: Datetime to check/convert, or None

    Returns:
        Timezone-aware datetime in UTC, or None if input was None
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        # Naive datetime - assume UTC
        return dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def to_iso_string(dt: Optional[datetime]) -> Optional[str]:
    """Convert datetime to ISO string with timezone info.

    Args:
        dt: Datetime to convert, or None

    Returns:
        ISO format string with timezone, or None if input was None
    """
    if dt is None:
        return None

    return ensure_aware(dt).isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string into an aware UTC datetime.

    A trailing ``Z`` (as emitted by PostgREST and JavaScript clients) is
    accepted.
    """
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return ensure_aware(datetime.fromisoformat(value))


def next_tick(previous: Optional[datetime], candidate: Optional[datetime] = None) -> datetime:
    """Return a timestamp strictly after ``previous``.

    Uses ``candidate`` (default: now) unless the clock has not advanced past
    ``previous``, in which case ``previous`` is bumped by one tick.
    """
    candidate = ensure_aware(candidate) if candidate else now_utc()
    previous = ensure_aware(previous)
    if previous is not None and candidate <= previous:
        return previous + CLOCK_TICK
    return candidate


def max_of(*values: Optional[datetime]) -> Optional[datetime]:
    """Latest of the given datetimes, ignoring None (None if all are None)."""
    present = [ensure_aware(v) for v in values if v is not None]
    return max(present) if present else None
