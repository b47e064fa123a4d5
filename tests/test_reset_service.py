"""
tests/test_reset_service.py — Daily & Monthly Resets
=====================================================

Tests per-timezone user selection, the streak rule, session splitting at
the reset instant, monthly rollover, rollback on failure and the job
lifecycle of the ResetScheduler.
"""

from __future__ import annotations

import asyncio
import time
from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from housecup.constants import DAILY_RESET_JOB, MONTHLY_RESET_JOB
from housecup.database.models import House, HousePoints, User, VoiceSession
from housecup.engine.clock import as_utc
from housecup.services import reset_service
from housecup.services.alerting import FAILED, AlertingWrapper
from housecup.services.reset_service import (
    JobState,
    ResetScheduler,
    apply_daily_reset,
    apply_monthly_reset,
)
from housecup.services.session_tracker import SessionTracker, SplitPoint

# 2026-03-11 00:10 in Tokyo
NOW = datetime(2026, 3, 10, 15, 10, tzinfo=UTC)


# Helper to run async tests without pytest-asyncio
def run_async(coro):
    """Run an async coroutine in a new event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _add_user(engine, user_id: int, **overrides) -> None:
    values = dict(
        id=user_id,
        username=f"user{user_id}",
        timezone="UTC",
        daily_points=10,
        monthly_points=40,
        total_points=100,
        daily_voice_seconds=3600,
        monthly_voice_seconds=7200,
        total_voice_seconds=36000,
        streak=0,
        is_streak_updated_today=False,
        last_daily_reset=NOW - timedelta(days=1),
        last_monthly_reset=NOW - timedelta(days=1),
    )
    values.update(overrides)
    with Session(engine) as session:
        session.add(User(**values))
        session.commit()


def _update_user(engine, user_id: int, **values) -> None:
    with Session(engine) as session:
        user = session.get(User, user_id)
        for key, value in values.items():
            setattr(user, key, value)
        session.commit()


def _user(engine, user_id: int) -> User:
    with Session(engine) as session:
        return session.get(User, user_id)


def _rows(engine, user_id: int) -> list[VoiceSession]:
    with Session(engine) as session:
        return list(
            session.scalars(
                select(VoiceSession)
                .where(VoiceSession.user_id == user_id)
                .order_by(VoiceSession.id)
            ).all()
        )


def _scheduler(db_engine, clock, alerts=None) -> ResetScheduler:
    async def notifier(label, error):
        alerts.append((label, error))

    tracker = SessionTracker(db_engine, clock, grace_period=timedelta(minutes=5))
    alerting = AlertingWrapper(notifier if alerts is not None else None)
    return ResetScheduler(db_engine, tracker, alerting, clock)


# ---------------------------------------------------------------------------
# apply_daily_reset
# ---------------------------------------------------------------------------
class TestDailyResetSelection:
    def test_only_users_past_local_midnight(self, db_engine):
        _add_user(db_engine, 1, timezone="Asia/Tokyo",
                  last_daily_reset=datetime(2026, 3, 9, 15, 5, tzinfo=UTC))
        _add_user(db_engine, 2, timezone="UTC",
                  last_daily_reset=datetime(2026, 3, 10, 0, 5, tzinfo=UTC))
        _add_user(db_engine, 3, timezone="America/New_York",
                  last_daily_reset=datetime(2026, 3, 10, 4, 30, tzinfo=UTC))

        result = apply_daily_reset(db_engine, NOW)

        assert result.user_ids == [1]
        assert _user(db_engine, 2).daily_points == 10
        assert _user(db_engine, 3).daily_points == 10

    def test_zeroes_daily_counters_only(self, db_engine):
        _add_user(db_engine, 1)

        apply_daily_reset(db_engine, NOW)

        user = _user(db_engine, 1)
        assert user.daily_points == 0
        assert user.daily_voice_seconds == 0
        assert user.monthly_points == 40
        assert user.monthly_voice_seconds == 7200
        assert user.total_points == 100
        assert as_utc(user.last_daily_reset) == NOW

    def test_second_run_is_noop(self, db_engine):
        _add_user(db_engine, 1)
        apply_daily_reset(db_engine, NOW)
        _update_user(db_engine, 1, daily_points=3)

        result = apply_daily_reset(db_engine, NOW + timedelta(minutes=10))

        assert result.user_ids == []
        assert _user(db_engine, 1).daily_points == 3

    def test_never_reset_user_is_selected(self, db_engine):
        _add_user(db_engine, 1, last_daily_reset=None)
        assert apply_daily_reset(db_engine, NOW).user_ids == [1]

    def test_invalid_timezone_uses_utc(self, db_engine):
        _add_user(db_engine, 1, timezone="Not/AZone",
                  last_daily_reset=datetime(2026, 3, 9, 23, 0, tzinfo=UTC))
        assert apply_daily_reset(db_engine, NOW).user_ids == [1]


class TestStreakRule:
    def test_streak_kept_when_credited_today(self, db_engine):
        _add_user(db_engine, 1, streak=5, is_streak_updated_today=True)

        result = apply_daily_reset(db_engine, NOW)

        user = _user(db_engine, 1)
        assert user.streak == 5
        assert user.is_streak_updated_today is False
        assert result.streaks_broken == 0

    def test_streak_broken_when_not_credited(self, db_engine):
        _add_user(db_engine, 1, streak=3, is_streak_updated_today=False)

        result = apply_daily_reset(db_engine, NOW)

        user = _user(db_engine, 1)
        assert user.streak == 0
        assert user.is_streak_updated_today is False
        assert result.streaks_broken == 1


# ---------------------------------------------------------------------------
# apply_monthly_reset
# ---------------------------------------------------------------------------
class TestMonthlyReset:
    MONTH_START = datetime(2026, 4, 1, 0, 0, tzinfo=UTC)

    def test_zeroes_monthly_counters_only(self, db_engine):
        _add_user(db_engine, 1)
        with Session(db_engine) as session:
            session.get(HousePoints, House.HUFFLEPUFF.value).monthly_points = 50
            session.get(HousePoints, House.HUFFLEPUFF.value).total_points = 80
            session.commit()

        assert apply_monthly_reset(db_engine, self.MONTH_START) == 1

        user = _user(db_engine, 1)
        assert user.monthly_points == 0
        assert user.monthly_voice_seconds == 0
        assert user.daily_points == 10
        assert user.total_points == 100
        assert as_utc(user.last_monthly_reset) == self.MONTH_START

        with Session(db_engine) as session:
            house = session.get(HousePoints, House.HUFFLEPUFF.value)
            assert house.monthly_points == 0
            assert house.total_points == 80

    def test_once_per_month(self, db_engine):
        _add_user(db_engine, 1)
        apply_monthly_reset(db_engine, self.MONTH_START)
        _update_user(db_engine, 1, monthly_points=6)

        assert apply_monthly_reset(db_engine, self.MONTH_START + timedelta(days=1)) == 0
        assert _user(db_engine, 1).monthly_points == 6

    def test_same_month_users_untouched(self, db_engine):
        _add_user(db_engine, 1, last_monthly_reset=datetime(2026, 3, 1, 0, 0, tzinfo=UTC))
        assert apply_monthly_reset(db_engine, NOW) == 0
        assert _user(db_engine, 1).monthly_points == 40


# ---------------------------------------------------------------------------
# ResetScheduler
# ---------------------------------------------------------------------------
class TestDailyResetWithOpenSession:
    def test_session_split_at_local_midnight(self, db_engine, clock):
        """Tokyo member in voice for 3h across their midnight."""
        clock.set(NOW - timedelta(hours=3))
        scheduler = _scheduler(db_engine, clock)
        entry = run_async(scheduler.tracker.start_session(1, "kenji", 10))
        old_session_id = entry.session_id
        _update_user(
            db_engine, 1,
            timezone="Asia/Tokyo",
            last_daily_reset=datetime(2026, 3, 9, 15, 5, tzinfo=UTC),
        )
        clock.set(NOW)

        result = run_async(scheduler.run_daily_reset())

        assert result.user_ids == [1]
        assert result.reopened[1].old_session_id == old_session_id

        old, new = _rows(db_engine, 1)
        assert old.duration_seconds == 3 * 3600
        assert as_utc(old.left_at) == NOW
        assert new.left_at is None
        assert as_utc(new.joined_at) == NOW

        rebound = scheduler.tracker.get(1)
        assert rebound.session_id == new.id
        assert rebound.joined_at == NOW

        user = _user(db_engine, 1)
        assert user.daily_points == 0
        assert user.daily_voice_seconds == 0
        assert user.monthly_voice_seconds == 3 * 3600
        assert user.monthly_points == 9
        # 3h today earned the streak before the day closed
        assert user.streak == 1
        assert user.is_streak_updated_today is False

    def test_expired_grace_closed_before_reset(self, db_engine, clock):
        clock.set(NOW - timedelta(hours=1))
        scheduler = _scheduler(db_engine, clock)
        run_async(scheduler.tracker.start_session(1, "alice", 10))
        clock.advance(minutes=30)
        scheduler.tracker.end_session(1)
        clock.set(NOW)

        result = run_async(scheduler.run_daily_reset())

        assert result.reopened == {}
        [row] = _rows(db_engine, 1)
        assert row.duration_seconds == 30 * 60
        assert not scheduler.tracker.is_tracking(1)

    def test_member_in_grace_rejoins_after_reset(self, db_engine, clock):
        clock.set(NOW - timedelta(hours=1))
        scheduler = _scheduler(db_engine, clock)
        run_async(scheduler.tracker.start_session(1, "alice", 10))
        _update_user(db_engine, 1, last_daily_reset=NOW - timedelta(days=1))
        clock.set(NOW - timedelta(minutes=2))
        grace_start = scheduler.tracker.end_session(1).grace_start
        clock.set(NOW)

        result = run_async(scheduler.run_daily_reset())

        assert result.reopened[1].at == NOW
        assert scheduler.tracker.in_grace(1)

        clock.advance(minutes=1)
        run_async(scheduler.tracker.start_session(1, "alice", 10))
        clock.advance(minutes=30)
        scheduler.tracker.end_session(1)
        clock.advance(minutes=5)
        run_async(scheduler.tracker.reconcile_grace_periods())

        old, new = _rows(db_engine, 1)
        assert as_utc(old.left_at) == grace_start
        assert old.duration_seconds == 58 * 60
        assert as_utc(new.joined_at) == NOW
        assert new.duration_seconds == 31 * 60
        # the two minutes away before midnight belong to neither day
        assert _user(db_engine, 1).daily_voice_seconds == 31 * 60


class TestResetsAtMonthStart:
    """Daily and monthly resets both fall due at 00:00 UTC on the 1st."""

    MONTH_START = datetime(2026, 3, 1, 0, 0, tzinfo=UTC)

    def _add_member_in_voice(self, db_engine) -> int:
        _add_user(
            db_engine, 1,
            daily_points=0,
            daily_voice_seconds=0,
            monthly_points=400,
            monthly_voice_seconds=99000,
            last_daily_reset=datetime(2026, 2, 28, 0, 0, tzinfo=UTC),
            last_monthly_reset=datetime(2026, 2, 1, 0, 0, tzinfo=UTC),
        )
        joined = self.MONTH_START - timedelta(hours=1)
        with Session(db_engine) as session:
            row = VoiceSession(user_id=1, channel_id=10, joined_at=joined, last_seen_at=joined)
            session.add(row)
            session.commit()
            return row.id

    def test_monthly_reset_during_daily_split_is_not_overwritten(self, db_engine, monkeypatch):
        session_id = self._add_member_in_voice(db_engine)
        real_split = reset_service.split_session_row

        def split_after_monthly_reset(session, *args):
            # the daily transaction already holds the user row it selected
            apply_monthly_reset(db_engine, self.MONTH_START)
            return real_split(session, *args)

        monkeypatch.setattr(reset_service, "split_session_row", split_after_monthly_reset)

        point = SplitPoint(session_id, self.MONTH_START, self.MONTH_START)
        result = apply_daily_reset(db_engine, self.MONTH_START, {1: point})

        assert result.user_ids == [1]
        user = _user(db_engine, 1)
        # only the hour before midnight survives into the new month
        assert user.monthly_points == 5
        assert user.monthly_voice_seconds == 3600
        assert as_utc(user.last_monthly_reset) == self.MONTH_START
        assert user.daily_points == 0

    def test_scheduler_runs_one_reset_at_a_time(self, db_engine, clock, monkeypatch):
        clock.set(self.MONTH_START)
        scheduler = _scheduler(db_engine, clock)
        events: list[str] = []

        def fake_daily(engine, now, split_points=None):
            events.append("daily-start")
            time.sleep(0.05)
            events.append("daily-end")
            return reset_service.DailyResetResult(reset_at=now)

        def fake_monthly(engine, now):
            events.append("monthly-start")
            time.sleep(0.05)
            events.append("monthly-end")
            return 0

        monkeypatch.setattr(reset_service, "apply_daily_reset", fake_daily)
        monkeypatch.setattr(reset_service, "apply_monthly_reset", fake_monthly)

        async def scenario():
            await asyncio.gather(scheduler.run_daily_reset(), scheduler.run_monthly_reset())

        run_async(scenario())

        assert events == ["daily-start", "daily-end", "monthly-start", "monthly-end"]


class TestDailyResetFailure:
    def test_failure_rolls_back_alerts_and_keeps_job(self, db_engine, clock, monkeypatch):
        alerts: list = []
        clock.set(NOW - timedelta(hours=2))
        scheduler = _scheduler(db_engine, clock, alerts)
        entry = run_async(scheduler.tracker.start_session(1, "alice", 10))
        stamp = datetime(2026, 3, 9, 12, 0, tzinfo=UTC)
        _update_user(db_engine, 1, daily_points=10, daily_voice_seconds=1800,
                     last_daily_reset=stamp)
        clock.set(NOW)

        def boom(user):
            raise RuntimeError("streak table locked")

        monkeypatch.setattr(reset_service, "_apply_streak_rule", boom)

        async def scenario():
            scheduler.start()
            outcome = await scheduler.run_daily_reset()
            state = scheduler.jobs[DAILY_RESET_JOB].state
            await scheduler.stop()
            await asyncio.sleep(0.05)
            return outcome, state

        outcome, state = run_async(scenario())

        assert outcome is FAILED
        assert state == JobState.SCHEDULED

        user = _user(db_engine, 1)
        assert user.daily_points == 10
        assert user.daily_voice_seconds == 1800
        assert as_utc(user.last_daily_reset) == stamp

        # the split was rolled back with everything else
        [row] = _rows(db_engine, 1)
        assert row.left_at is None
        assert scheduler.tracker.get(1).session_id == entry.session_id

        [(label, error)] = alerts
        assert label == DAILY_RESET_JOB
        assert isinstance(error, RuntimeError)


class TestSchedulerLifecycle:
    def test_start_and_stop(self, db_engine, clock):
        scheduler = _scheduler(db_engine, clock)

        async def scenario():
            scheduler.start()
            states = {name: job.state for name, job in scheduler.jobs.items()}
            await scheduler.stop()
            await asyncio.sleep(0.05)
            return states

        states = run_async(scenario())

        assert states == {
            DAILY_RESET_JOB: JobState.SCHEDULED,
            MONTHLY_RESET_JOB: JobState.SCHEDULED,
        }
        assert not scheduler.is_running
        assert all(job.state == JobState.STOPPED for job in scheduler.jobs.values())

    def test_monthly_job_runs_under_alerting(self, db_engine, clock):
        _add_user(db_engine, 1, last_monthly_reset=datetime(2026, 2, 1, tzinfo=UTC))
        scheduler = _scheduler(db_engine, clock)
        assert run_async(scheduler.run_monthly_reset()) == 1
