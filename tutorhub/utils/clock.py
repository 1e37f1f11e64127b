from datetime import datetime, timezone
from typing import Union


def utcnow() -> datetime:
    # MongoDB keeps millisecond precision; truncate so stored and in-memory values agree
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond - now.microsecond % 1000)


def as_utc(value: Union[datetime, str]) -> datetime:
    """Parse an ISO-8601 string (or pass a datetime through) as an aware UTC datetime."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
