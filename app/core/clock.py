"""
UTC time helpers.

All timestamps are stored in UTC. Some backends (SQLite) hand back naive
datetimes, so comparisons go through ``ensure_utc``.
"""
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def has_passed(deadline: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True when ``deadline`` is set and not after ``now``."""
    if deadline is None:
        return False
    return ensure_utc(deadline) <= ensure_utc(now or utcnow())
