"""
UTC timezone utilities
All timestamps stored on a profile or sent to Stripe go through these helpers
"""
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

# Used whenever Stripe omits current_period_end
FALLBACK_PERIOD = timedelta(days=30)


def utcnow() -> datetime:
    """Get current UTC datetime (replaces datetime.now())"""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[Union[str, datetime]]) -> Optional[datetime]:
    """
    Ensure datetime is UTC aware.

    - If None, returns None
    - If string, parses as ISO format (handles 'Z' suffix)
    - If naive datetime, assumes it's UTC and adds timezone
    - If aware datetime, converts to UTC
    """
    if dt is None:
        return None

    if isinstance(dt, str):
        dt = datetime.fromisoformat(dt.replace("Z", "+00:00"))

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def from_unix(ts: Optional[Union[int, float, str]]) -> Optional[datetime]:
    """Convert a Stripe unix timestamp (seconds) to an aware UTC datetime"""
    if ts is None or ts == "":
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


def to_unix(dt: datetime) -> int:
    return int(ensure_utc(dt).timestamp())


def isoformat_or_none(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return ensure_utc(dt).isoformat()
