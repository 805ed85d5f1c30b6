"""Database column types shared across models."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy.types import DateTime, TypeDecorator

from report_dispatch.db.time import as_utc

__all__ = ["UTCDateTime"]


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that normalizes values to UTC.

    SQLite drops the offset on storage; values are re-tagged as UTC on the
    way out so comparisons against ``utcnow()`` never mix naive and aware.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any):
        if isinstance(value, datetime):
            return as_utc(value)
        return value

    def process_result_value(self, value: Any, dialect: Any):
        if isinstance(value, datetime):
            return as_utc(value)
        return value
