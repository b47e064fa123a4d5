"""
housecup.services.reset_service — Daily & Monthly Counter Resets
=================================================================

Two recurring jobs, both ``discord.ext.tasks`` loops owned by
:class:`ResetScheduler`:

- **dailyReset** — minute 0 of every UTC hour.  Members are reset when
  their *local* calendar day differs from the local day of their last
  reset, so each timezone is handled as its own midnight passes.
- **monthlyReset** — 00:00 UTC daily; resets only members whose last
  monthly reset predates the current UTC month, so it acts once per month
  and still catches up after downtime on the 1st.

Daily reset, in one transaction:

    1. Load every user's timezone and last-reset stamp.
    2. Select users whose local day has changed.
    3. Split each selected user's open voice session at the reset instant,
       crediting the time so far to the day that is ending.  Members in
       their grace period are closed at their grace start instead; their
       continuation still joins at the reset instant.
    4. Zero daily points and voice time; stamp ``last_daily_reset``.
    5. Zero the streak unless it was credited today; clear the flag.

Any exception rolls the whole transaction back, so a user is never zeroed
without also being stamped.  The tracker's in-memory sessions are rebound
to the continuation rows only after the commit.

Both jobs fire at 00:00 UTC on the 1st.  They share one lock so their
transactions never overlap, and each selects its users ``FOR UPDATE`` so a
concurrent session close waits for the reset to commit.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, time
from enum import StrEnum

from discord.ext import tasks
from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from housecup.constants import DAILY_RESET_JOB, MONTHLY_RESET_JOB
from housecup.database.engine import get_session, run_db
from housecup.database.models import HousePoints, User
from housecup.engine.clock import Clock, SystemClock, as_utc
from housecup.engine.timezones import needs_daily_reset, start_of_utc_month
from housecup.services.alerting import AlertingWrapper
from housecup.services.metrics import RESET_DURATION
from housecup.services.session_tracker import SessionTracker, SplitPoint
from housecup.services.voice_service import SessionCredit, split_session_row

logger = logging.getLogger(__name__)

# minute 0 of every hour, UTC  ("0 * * * *")
HOURLY_UTC = [time(hour=h, tzinfo=UTC) for h in range(24)]
MIDNIGHT_UTC = time(hour=0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class Reopened:
    """A session split by the daily reset: old row id → continuation id."""

    old_session_id: int
    new_session_id: int
    at: datetime


@dataclass(slots=True)
class DailyResetResult:
    reset_at: datetime
    user_ids: list[int] = field(default_factory=list)
    reopened: dict[int, Reopened] = field(default_factory=dict)
    credits: list[SessionCredit] = field(default_factory=list)
    streaks_broken: int = 0


# ---------------------------------------------------------------------------
# Transactional bodies — call via run_db()
# ---------------------------------------------------------------------------
def _apply_streak_rule(user: User) -> bool:
    """Zero the streak unless it was credited today.  Returns True if zeroed."""
    broken = not user.is_streak_updated_today and (user.streak or 0) > 0
    if not user.is_streak_updated_today:
        user.streak = 0
    user.is_streak_updated_today = False
    return broken


def select_daily_reset_users(session: Session, now: datetime) -> list[User]:
    """Users whose local calendar day differs from that of their last reset."""
    users = session.scalars(
        select(User).order_by(User.id).with_for_update()
    ).all()
    return [
        user for user in users
        if needs_daily_reset(
            now,
            as_utc(user.last_daily_reset) if user.last_daily_reset else None,
            user.timezone,
        )
    ]


def apply_daily_reset(
    engine: Engine,
    now: datetime,
    split_points: Mapping[int, SplitPoint] | None = None,
) -> DailyResetResult:
    """Run the daily reset for every due user as one transaction."""
    split_points = split_points or {}
    result = DailyResetResult(reset_at=now)

    with get_session(engine) as session:
        due = select_daily_reset_users(session, now)
        if not due:
            return result

        # Flush voice time into the ending day before the counters go to 0.
        for user in due:
            point = split_points.get(user.id)
            if point is None:
                continue
            credit, new_id = split_session_row(
                session, point.session_id, point.at, point.reopen_at,
            )
            if new_id is not None:
                result.reopened[user.id] = Reopened(point.session_id, new_id, point.reopen_at)
            if credit is not None:
                result.credits.append(credit)

        for user in due:
            user.daily_points = 0
            user.daily_voice_seconds = 0
            user.last_daily_reset = now
            if _apply_streak_rule(user):
                result.streaks_broken += 1
            result.user_ids.append(user.id)

    return result


def apply_monthly_reset(engine: Engine, now: datetime) -> int:
    """Zero monthly counters for users not yet reset this UTC month.

    House monthly standings are zeroed alongside.  Returns the number of
    users reset.
    """
    month_start = start_of_utc_month(now)
    with get_session(engine) as session:
        users = session.scalars(
            select(User).order_by(User.id).with_for_update()
        ).all()
        due = [
            user for user in users
            if user.last_monthly_reset is None or as_utc(user.last_monthly_reset) < month_start
        ]
        for user in due:
            user.monthly_points = 0
            user.monthly_voice_seconds = 0
            user.last_monthly_reset = now

        houses = session.scalars(
            select(HousePoints).order_by(HousePoints.name).with_for_update()
        )
        for house in houses.all():
            if house.last_monthly_reset is None or as_utc(house.last_monthly_reset) < month_start:
                house.monthly_points = 0
                house.last_monthly_reset = now

    return len(due)


# ---------------------------------------------------------------------------
# Scheduler service
# ---------------------------------------------------------------------------
class JobState(StrEnum):
    SCHEDULED = "scheduled"
    STOPPED = "stopped"


@dataclass(slots=True)
class ScheduledJob:
    """A named recurring job and its loop handle."""

    name: str
    cadence: str
    loop: tasks.Loop

    @property
    def state(self) -> JobState:
        return JobState.SCHEDULED if self.loop.is_running() else JobState.STOPPED


class ResetScheduler:
    """Owns the daily and monthly reset jobs.

    Parameters
    ----------
    engine:
        SQLAlchemy engine for the user rows.
    tracker:
        Session tracker whose open sessions are split around resets.
    alerting:
        Wrapper that absorbs and reports job failures.
    clock:
        Time provider; a fake clock in tests.
    """

    def __init__(
        self,
        engine: Engine,
        tracker: SessionTracker,
        alerting: AlertingWrapper,
        clock: Clock | None = None,
    ) -> None:
        self.engine = engine
        self.tracker = tracker
        self.alerting = alerting
        self.clock = clock or SystemClock()
        self.jobs: dict[str, ScheduledJob] = {}
        # Both jobs fire at 00:00 UTC; one run at a time.
        self._lock = asyncio.Lock()

    # -----------------------------------------------------------------------
    # Job bodies
    # -----------------------------------------------------------------------
    async def _daily_reset(self) -> DailyResetResult:
        # Expired grace periods close at their grace start, before the split.
        await self.tracker.reconcile_grace_periods()

        now = self.clock.now()
        result = await run_db(
            apply_daily_reset, self.engine, now, self.tracker.split_points(now),
        )

        for user_id, reopened in result.reopened.items():
            await self.tracker.force_close_and_reopen(
                user_id,
                reopened.at,
                reopened_session_id=reopened.new_session_id,
                expected_session_id=reopened.old_session_id,
            )

        if result.user_ids:
            logger.info(
                "Daily reset: %d user(s) reset, %d session(s) split, %d streak(s) broken",
                len(result.user_ids), len(result.reopened), result.streaks_broken,
            )
        else:
            logger.debug("No users need a daily reset at this time")
        return result

    async def _monthly_reset(self) -> int:
        count = await run_db(apply_monthly_reset, self.engine, self.clock.now())
        if count:
            logger.info("Monthly reset: %d user(s) reset", count)
        return count

    async def run_daily_reset(self):
        """Run the daily reset under the alerting wrapper."""
        async with self._lock:
            with RESET_DURATION.labels(action="daily").time():
                return await self.alerting.wrap_with_alerting(
                    self._daily_reset, DAILY_RESET_JOB,
                )

    async def run_monthly_reset(self):
        """Run the monthly reset under the alerting wrapper."""
        async with self._lock:
            with RESET_DURATION.labels(action="monthly").time():
                return await self.alerting.wrap_with_alerting(
                    self._monthly_reset, MONTHLY_RESET_JOB,
                )

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------
    def start(self) -> None:
        """Schedule both jobs (needs a running event loop).  Idempotent."""
        if not self.jobs:
            self.jobs[DAILY_RESET_JOB] = ScheduledJob(
                name=DAILY_RESET_JOB,
                cadence="0 * * * * (UTC)",
                loop=tasks.loop(time=HOURLY_UTC)(self.run_daily_reset),
            )
            self.jobs[MONTHLY_RESET_JOB] = ScheduledJob(
                name=MONTHLY_RESET_JOB,
                cadence="0 0 * * * (UTC, acts once per month)",
                loop=tasks.loop(time=MIDNIGHT_UTC)(self.run_monthly_reset),
            )

        for job in self.jobs.values():
            if not job.loop.is_running():
                job.loop.start()
        logger.info("Reset scheduler started: %s", ", ".join(self.jobs))

    async def stop(self) -> None:
        """Cancel both jobs."""
        for job in self.jobs.values():
            job.loop.cancel()
        logger.info("Reset scheduler stopped")

    @property
    def is_running(self) -> bool:
        return any(job.loop.is_running() for job in self.jobs.values())
