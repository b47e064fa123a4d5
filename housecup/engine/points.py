"""
housecup.engine.points — Voice Time → Points
=============================================

Points are a function of a member's *daily* voice total:

* the first hour of the day is worth ``FIRST_HOUR_POINTS``;
* each further hour is worth ``REST_HOURS_POINTS``;
* hours beyond ``MAX_HOURS_PER_DAY`` earn nothing (time is still recorded).

An hour counts once the total is within ``HOUR_ROUNDING_TOLERANCE_SECONDS``
of it, so 55 minutes earns the first-hour bonus.

A closed session is credited the *difference* between the points at the new
and old daily totals.  That makes crediting additive: splitting a session
in two credits exactly what one session would have.
"""

from __future__ import annotations

from housecup.constants import (
    FIRST_HOUR_POINTS,
    HOUR_ROUNDING_TOLERANCE_SECONDS,
    MAX_HOURS_PER_DAY,
    REST_HOURS_POINTS,
)

ONE_HOUR = 60 * 60


def counted_hours(daily_seconds: int) -> int:
    """Whole hours that count toward points, after rounding and the cap."""
    if daily_seconds <= 0:
        return 0
    hours = (daily_seconds + HOUR_ROUNDING_TOLERANCE_SECONDS) // ONE_HOUR
    return min(hours, MAX_HOURS_PER_DAY)


def points_for_daily_seconds(daily_seconds: int) -> int:
    """Total points a member has earned for *daily_seconds* of voice today."""
    hours = counted_hours(daily_seconds)
    if hours < 1:
        return 0
    return FIRST_HOUR_POINTS + REST_HOURS_POINTS * (hours - 1)


def points_between(old_daily_seconds: int, new_daily_seconds: int) -> int:
    """Points earned by moving the daily total from *old* to *new*."""
    earned = points_for_daily_seconds(new_daily_seconds) - points_for_daily_seconds(
        old_daily_seconds
    )
    return max(0, earned)
