"""Wall-clock helpers shared by the time-sensitive security services."""

from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Return an aware UTC datetime.

    SQLite drops tzinfo on DateTime(timezone=True) columns, so values read
    back from it are naive; they were written as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
