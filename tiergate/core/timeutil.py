"""UTC helpers. All stored and compared timestamps are timezone-aware UTC."""

from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_now(now: Optional[Any] = None) -> datetime:
    """Default to the current time and coerce naive datetimes to UTC."""
    if now is None:
        return utc_now()
    return ensure_utc(now)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def month_start(now: Optional[datetime] = None) -> datetime:
    """First instant of the calendar month containing `now` (UTC)."""
    current = normalize_now(now)
    return current.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
