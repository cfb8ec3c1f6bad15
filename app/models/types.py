"""Column types shared by the table models."""

from datetime import UTC, datetime

from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator


def ensure_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` as an aware UTC datetime. Naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class UTCDateTime(TypeDecorator):
    """Stores datetimes as naive UTC and loads them back as aware UTC.

    SQLite has no timezone support, so every bound value is converted to UTC
    before the offset is dropped. Interval comparisons inside SQL (including
    the overlap trigger) therefore compare like with like.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        return ensure_utc(value)


def utcnow() -> datetime:
    return datetime.now(UTC)
