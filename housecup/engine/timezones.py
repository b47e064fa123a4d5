"""
housecup.engine.timezones — Local Calendar Boundaries
======================================================

Daily counters reset at each member's *local* midnight.  These helpers turn
an IANA zone name plus two instants into the "has this user crossed a day
boundary since the last reset?" decision the reset scheduler needs.

Unknown or empty zone names fall back to UTC rather than raising: a bad
timezone must never block a reset.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from housecup.constants import DEFAULT_TIMEZONE
from housecup.engine.clock import as_utc

logger = logging.getLogger(__name__)

UTC_ZONE = ZoneInfo("UTC")


def is_valid_timezone(name: str | None) -> bool:
    """True if *name* is a loadable IANA zone."""
    if not name or not isinstance(name, str):
        return False
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


@lru_cache(maxsize=512)
def resolve_timezone(name: str | None) -> ZoneInfo:
    """Load *name*, falling back to UTC for missing or invalid zones."""
    if not is_valid_timezone(name):
        if name and name != DEFAULT_TIMEZONE:
            logger.warning("Unknown timezone %r, falling back to UTC", name)
        return UTC_ZONE
    return ZoneInfo(name)


def local_day(instant: datetime, tz: ZoneInfo) -> date:
    """Calendar date of *instant* as seen in *tz*."""
    return as_utc(instant).astimezone(tz).date()


def needs_daily_reset(
    now: datetime, last_reset: datetime | None, timezone_name: str | None,
) -> bool:
    """Has the user's local calendar day changed since *last_reset*?

    A user who was never reset is always due.
    """
    if last_reset is None:
        return True
    tz = resolve_timezone(timezone_name)
    return local_day(now, tz) != local_day(last_reset, tz)


def start_of_utc_month(instant: datetime) -> datetime:
    """00:00 UTC on the first day of *instant*'s UTC month."""
    utc = as_utc(instant)
    return utc.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
