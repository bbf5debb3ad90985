"""
pulse.engine.clock — UTC helpers
=================================

All timestamps are stored and compared in UTC.  SQLite (used in tests)
returns naive datetimes, so anything read back from the store goes through
:func:`as_utc` before arithmetic.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
