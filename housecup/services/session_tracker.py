"""
housecup.services.session_tracker — Open Sessions & Grace Periods
==================================================================

The tracker is the authoritative owner of every *open* voice session and
every pending grace period.  The database holds the row for each open
session (so crashes can be recovered) but the tracker decides when that row
closes.

Lifecycle of one member::

    join ──► open ──leave──► grace ──rejoin within window──► open (same session)
                               │
                               └──window expires──► closed at grace start

Memory mutations are synchronous, so they are atomic with respect to other
coroutines on the event loop.  Store writes happen afterwards via
``run_db`` and may interleave with other events.

The tracker also owns two ``discord.ext.tasks`` loops: grace-period
reconciliation and the heartbeat that records ``last_seen_at`` for crash
recovery.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from discord.ext import tasks
from sqlalchemy import Engine

from housecup.constants import (
    DEFAULT_GRACE_PERIOD,
    GRACE_RECONCILE_SECONDS,
    HEARTBEAT_MINUTES,
)
from housecup.database.engine import run_db
from housecup.engine.clock import Clock, SystemClock
from housecup.services import voice_service
from housecup.services.voice_service import SessionCredit

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class OpenSession:
    """A voice session the tracker currently owns."""

    user_id: int
    joined_at: datetime
    channel_id: int | None = None
    username: str = ""
    # None until the row insert completes
    session_id: int | None = None


@dataclass(frozen=True, slots=True)
class GracePeriodEntry:
    """A member who left voice but may still rejoin into the same session."""

    user_id: int
    grace_start: datetime


@dataclass(frozen=True, slots=True)
class SplitPoint:
    """Where the reset scheduler should split one open session.

    The old row closes at ``at``; the continuation joins at ``reopen_at``.
    """

    session_id: int
    at: datetime
    reopen_at: datetime


class SessionTracker:
    """In-memory authority for open voice sessions and grace periods.

    Parameters
    ----------
    engine:
        SQLAlchemy engine for the session rows.
    clock:
        Time provider; a fake clock in tests.
    grace_period:
        How long after a leave a rejoin still continues the same session.
    """

    def __init__(
        self,
        engine: Engine,
        clock: Clock | None = None,
        grace_period: timedelta = DEFAULT_GRACE_PERIOD,
    ) -> None:
        self.engine = engine
        self.clock = clock or SystemClock()
        self.grace_period = grace_period
        self._sessions: dict[int, OpenSession] = {}
        self._grace: dict[int, GracePeriodEntry] = {}
        self._grace_loop: tasks.Loop | None = None
        self._heartbeat_loop: tasks.Loop | None = None

    # -----------------------------------------------------------------------
    # Read-only views
    # -----------------------------------------------------------------------
    def get(self, user_id: int) -> OpenSession | None:
        return self._sessions.get(user_id)

    def grace_entry(self, user_id: int) -> GracePeriodEntry | None:
        return self._grace.get(user_id)

    def is_tracking(self, user_id: int) -> bool:
        return user_id in self._sessions

    def in_grace(self, user_id: int) -> bool:
        return user_id in self._grace

    @property
    def open_count(self) -> int:
        return len(self._sessions)

    def tracked_user_ids(self) -> list[int]:
        return list(self._sessions)

    def split_points(self, at: datetime) -> dict[int, SplitPoint]:
        """Where each persisted open session would be split at *at*.

        Members in their grace period are closed at their grace start, since
        they have not been in voice since then.  Every continuation joins at
        *at*, so a grace member who rejoins is not credited for the gap.
        """
        points: dict[int, SplitPoint] = {}
        for user_id, entry in self._sessions.items():
            if entry.session_id is None:
                continue
            grace = self._grace.get(user_id)
            split_at = min(grace.grace_start, at) if grace else at
            if split_at > entry.joined_at:
                points[user_id] = SplitPoint(entry.session_id, split_at, at)
        return points

    # -----------------------------------------------------------------------
    # Gateway-driven operations
    # -----------------------------------------------------------------------
    async def start_session(
        self,
        user_id: int,
        username: str = "",
        channel_id: int | None = None,
        house: str | None = None,
    ) -> OpenSession | None:
        """Open a session for *user_id*, or resume it inside the grace window.

        Returns the open session, or ``None`` if the row could not be
        written.
        """
        now = self.clock.now()
        grace = self._grace.get(user_id)
        if grace is not None:
            entry = self._sessions.get(user_id)
            # An entry whose insert is still in flight cannot be finalized yet.
            in_window = now - grace.grace_start < self.grace_period
            if entry is not None and (in_window or entry.session_id is None):
                del self._grace[user_id]
                if channel_id is not None:
                    entry.channel_id = channel_id
                logger.info(
                    "%s rejoined within grace period, resuming session %s",
                    username or user_id, entry.session_id,
                )
                return entry
            # Expired but not yet reconciled: finalize before starting fresh.
            await self._finalize(user_id)

        existing = self._sessions.get(user_id)
        if existing is not None:
            logger.warning(
                "Voice session already open for %s, ignoring start", username or user_id,
            )
            return existing

        entry = OpenSession(
            user_id=user_id, joined_at=now, channel_id=channel_id, username=username,
        )
        self._sessions[user_id] = entry
        self._grace.pop(user_id, None)

        try:
            entry.session_id = await run_db(
                voice_service.open_voice_session,
                self.engine, user_id, username, channel_id, now, house,
            )
        except Exception:
            logger.exception("Failed to persist voice session start for %s", user_id)
            if self._sessions.get(user_id) is entry:
                del self._sessions[user_id]
                self._grace.pop(user_id, None)
            return None

        logger.info("Voice session %d started for %s", entry.session_id, username or user_id)
        return entry

    def end_session(self, user_id: int) -> GracePeriodEntry | None:
        """Move an open session into its grace period.

        Nothing is persisted here; the session closes when the grace period
        expires (see :meth:`reconcile_grace_periods`).
        """
        if user_id not in self._sessions:
            logger.debug("No open voice session for %s, ignoring leave", user_id)
            return None
        if user_id in self._grace:
            return self._grace[user_id]

        entry = GracePeriodEntry(user_id=user_id, grace_start=self.clock.now())
        self._grace[user_id] = entry
        logger.debug("%s left voice, grace period started", user_id)
        return entry

    def update_channel(self, user_id: int, channel_id: int) -> None:
        """Record a move between two counted channels."""
        entry = self._sessions.get(user_id)
        if entry is not None:
            entry.channel_id = channel_id

    # -----------------------------------------------------------------------
    # Timer-driven operations
    # -----------------------------------------------------------------------
    async def reconcile_grace_periods(self) -> list[SessionCredit]:
        """Close every session whose grace period has expired.

        Each expired session is closed at its grace start.  A session whose
        close fails is put back so the next pass retries it.
        """
        now = self.clock.now()
        expired = [
            user_id
            for user_id, grace in self._grace.items()
            if now - grace.grace_start >= self.grace_period
        ]
        credits: list[SessionCredit] = []
        for user_id in expired:
            credit = await self._finalize(user_id)
            if credit is not None:
                credits.append(credit)

        closed = sum(1 for user_id in expired if user_id not in self._sessions)
        if closed:
            logger.info("Grace reconciliation closed %d session(s)", closed)
        return credits

    async def _finalize(self, user_id: int) -> SessionCredit | None:
        grace = self._grace.get(user_id)
        entry = self._sessions.get(user_id)
        if entry is None:
            self._grace.pop(user_id, None)
            return None
        if grace is None:
            return None
        if entry.session_id is None:
            logger.debug("Voice session for %s is still being persisted, deferring close", user_id)
            return None
        del self._grace[user_id]
        del self._sessions[user_id]

        try:
            return await run_db(
                voice_service.close_voice_session,
                self.engine, entry.session_id, grace.grace_start,
            )
        except Exception:
            logger.exception("Failed to close voice session %d, will retry", entry.session_id)
            self._sessions.setdefault(user_id, entry)
            self._grace.setdefault(user_id, grace)
            return None

    async def force_close_and_reopen(
        self,
        user_id: int,
        at: datetime | None = None,
        *,
        reopened_session_id: int | None = None,
        expected_session_id: int | None = None,
    ) -> OpenSession | None:
        """Split the open session of *user_id* at *at*.

        Time up to *at* is credited to the closed half; the continuation
        starts at *at* and keeps any pending grace period.  A member in their
        grace period is closed at their grace start instead.  Calling this
        twice for the same instant is a no-op the second time.

        When the caller has already split the row inside its own transaction
        it passes *reopened_session_id* (and the *expected_session_id* it
        split) and only the in-memory rebinding happens here.
        """
        at = at or self.clock.now()
        entry = self._sessions.get(user_id)

        if reopened_session_id is not None:
            if entry is None or entry.session_id != expected_session_id:
                # The session changed while the caller's transaction ran.
                logger.warning(
                    "Session for %s changed during split, discarding continuation %d",
                    user_id, reopened_session_id,
                )
                await run_db(
                    voice_service.discard_voice_session,
                    self.engine, reopened_session_id, at,
                )
                return entry
            entry.session_id = reopened_session_id
            entry.joined_at = at
            return entry

        if entry is None or entry.session_id is None:
            return None
        if at <= entry.joined_at:
            return entry

        grace = self._grace.get(user_id)
        close_at = min(grace.grace_start, at) if grace else at
        credit, new_id = await run_db(
            voice_service.split_voice_session,
            self.engine, entry.session_id, max(close_at, entry.joined_at), at,
        )
        if new_id is None:
            logger.warning("Voice session %d was already closed, not reopening", entry.session_id)
            return entry

        entry.session_id = new_id
        entry.joined_at = at
        logger.info(
            "Split voice session for %s at %s (+%ds credited)",
            user_id, at.isoformat(), credit.seconds if credit else 0,
        )
        return entry

    async def save_heartbeats(self) -> int:
        """Persist the last-known presence instant of every open session."""
        now = self.clock.now()
        last_seen: dict[int, datetime] = {}
        for user_id, entry in self._sessions.items():
            if entry.session_id is None:
                continue
            grace = self._grace.get(user_id)
            last_seen[entry.session_id] = grace.grace_start if grace else now
        if not last_seen:
            return 0
        return await run_db(voice_service.record_heartbeats, self.engine, last_seen)

    async def close_all(self, note: str = "shutdown") -> int:
        """Close every open session (graceful shutdown).

        Members in voice are closed at now; members in their grace period at
        their grace start.  Failures are logged per session and do not stop
        the rest.
        """
        now = self.clock.now()
        sessions = list(self._sessions.values())
        grace = dict(self._grace)
        self._sessions.clear()
        self._grace.clear()

        closed = 0
        for entry in sessions:
            if entry.session_id is None:
                continue
            entry_grace = grace.get(entry.user_id)
            left_at = entry_grace.grace_start if entry_grace else now
            try:
                await run_db(
                    voice_service.close_voice_session,
                    self.engine, entry.session_id, left_at, note,
                )
                closed += 1
            except Exception:
                logger.exception("Failed to close voice session %d on shutdown", entry.session_id)

        logger.info("Closed %d/%d open voice sessions", closed, len(sessions))
        return closed

    # -----------------------------------------------------------------------
    # Loop lifecycle
    # -----------------------------------------------------------------------
    async def _grace_tick(self) -> None:
        try:
            await self.reconcile_grace_periods()
        except Exception:
            logger.exception("Grace reconciliation failed", extra={"task": "grace"})

    async def _heartbeat_tick(self) -> None:
        try:
            await self.save_heartbeats()
        except Exception:
            logger.exception("Heartbeat write failed", extra={"task": "heartbeat"})

    def start(self) -> None:
        """Start the reconciliation and heartbeat loops (needs a running loop)."""
        if self._grace_loop is None:
            self._grace_loop = tasks.loop(seconds=GRACE_RECONCILE_SECONDS)(self._grace_tick)
            self._heartbeat_loop = tasks.loop(minutes=HEARTBEAT_MINUTES)(self._heartbeat_tick)
        if not self._grace_loop.is_running():
            self._grace_loop.start()
        if not self._heartbeat_loop.is_running():
            self._heartbeat_loop.start()
        logger.info("Session tracker loops started")

    def stop(self) -> None:
        """Cancel the tracker loops."""
        for loop in (self._grace_loop, self._heartbeat_loop):
            if loop is not None:
                loop.cancel()
        logger.info("Session tracker loops stopped")

    @property
    def is_running(self) -> bool:
        return self._grace_loop is not None and self._grace_loop.is_running()
