"""
Shared column types and mixins for ORM models.

All timestamps are stored in UTC. SQLite drops tzinfo on the way back,
so UTCDateTime re-attaches it and model code can always compare aware
datetimes.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise a datetime to an aware UTC value."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware DateTime that always round-trips as UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return as_utc(value)

    def process_result_value(self, value, dialect):
        return as_utc(value)


class TimestampMixin:
    """Adds created_at / updated_at columns maintained by the ORM."""

    created_at = Column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        comment="Row creation time (UTC)"
    )

    updated_at = Column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        comment="Last modification time (UTC)"
    )
