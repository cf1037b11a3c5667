from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes even for timezone=True columns."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_epoch(ts: Any) -> Optional[datetime]:
    if ts in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(ts), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def to_epoch(value: Optional[datetime]) -> Optional[int]:
    value = as_utc(value)
    return int(value.timestamp()) if value else None


def safe_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def object_id(value: Any) -> Optional[str]:
    """Stripe expandable field: either an id string or an object with an id."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None
