from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def generate_session_id(now: Optional[datetime] = None) -> str:
    """Date-prefixed id, e.g. sess_20260119_3fa85f64, sortable by creation day."""
    now = now or utcnow()
    return f"sess_{now.strftime('%Y%m%d')}_{uuid4().hex[:8]}"


def from_epoch_millis(value: Any) -> Optional[datetime]:
    """LINE webhook timestamps are epoch milliseconds."""
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def session_age_hours(start_time: datetime, now: Optional[datetime] = None) -> float:
    now = now or utcnow()
    return (now - ensure_aware(start_time)).total_seconds() / 3600
