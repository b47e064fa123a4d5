"""
housecup.engine.clock — Time Provider
======================================

Every time-dependent component takes a :class:`Clock` so tests can drive
grace windows and reset boundaries with a fake clock instead of sleeping.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Protocol


class Clock(Protocol):
    """Supplies the current instant as a timezone-aware UTC datetime."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock implementation used by the running bot."""

    def now(self) -> datetime:
        return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime.

    Naive values are assumed to already be UTC (SQLite drops tzinfo on
    round-trip; PostgreSQL does not).
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
