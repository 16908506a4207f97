from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator

from ..core.timeutils import ensure_utc


class UTCDateTime(TypeDecorator):
    """Stores instants as naive UTC and hands them back timezone-aware.

    SQLite drops offsets, so normalizing at the column keeps comparisons
    consistent between the test and production databases.
    """
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return ensure_utc(value)
