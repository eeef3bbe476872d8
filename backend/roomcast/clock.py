"""UTC time helpers shared by the store and the schemas.

Timestamps are timezone-aware UTC everywhere in Python code and naive UTC
inside DuckDB ``TIMESTAMP`` columns.
"""
from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive values and normalise aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_storage(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return ensure_utc(value).replace(tzinfo=None)


def isoformat(value: datetime) -> str:
    return ensure_utc(value).isoformat().replace("+00:00", "Z")
