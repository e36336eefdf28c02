"""
Cross-database column types.

Production runs on PostgreSQL (native UUID, JSONB, timestamptz); unit tests
run the same models on SQLite. These types keep values consistent between
the two.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, TypeDecorator
from sqlalchemy.dialects.postgresql import JSONB

# JSON on every backend, JSONB on PostgreSQL
JSONType = JSON().with_variant(JSONB(), 'postgresql')


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coerce_uuid(value: Any) -> uuid.UUID:
    """Accept UUID objects or their string form."""
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime stored as UTC.

    SQLite drops tzinfo on the way in and returns naive values; this type
    normalises binds to UTC and re-attaches UTC on results so comparisons
    with datetime.now(timezone.utc) work on both backends.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
