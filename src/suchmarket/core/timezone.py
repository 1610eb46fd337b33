"""UTC timezone enforcement and helpers.

Importing this module sets the TZ environment variable to UTC. All timestamps
written by the sync engine are timezone-aware UTC; values read back from
stores that drop tzinfo (SQLite) are normalized with ``as_utc``.
"""

import os
from datetime import UTC, datetime

os.environ["TZ"] = "UTC"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
