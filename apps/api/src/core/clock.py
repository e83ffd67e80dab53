"""
Time helpers shared by the token codec and the refresh token store.
"""
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """
    Attach UTC to naive datetimes read back from the database.

    SQLite drops timezone info on DateTime(timezone=True) columns; every value
    this service writes is UTC, so a naive value is UTC by construction.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
