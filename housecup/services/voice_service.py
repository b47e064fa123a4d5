"""
housecup.services.voice_service — Voice Session Persistence & Crediting
========================================================================

Synchronous store operations for voice sessions.  The public ``*_voice_session``
functions each run as one transaction and are meant to be called through
``await run_db(...)``.  The ``*_row`` helpers take an open ORM session so the
reset scheduler can compose them into its own transaction.

Crediting a closed session updates, in the same transaction:

1. The session row (``left_at``, ``duration_seconds``, ``is_credited``).
2. The user's daily / monthly / total voice time.
3. The user's daily / monthly / total points (see :mod:`housecup.engine.points`).
4. The streak, once the day's voice time reaches the streak threshold.
5. The user's house standings, if they have a house.

Closing an already-closed row is a no-op.  Closers run in worker threads
(grace reconciliation, the daily reset, shutdown), so a close takes row
locks in a fixed order (user, then session row, then house) and re-reads
each row under its lock before deciding anything.  A second closer blocks
until the first commits and then sees the row already closed and the
counters already credited.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from housecup.constants import MIN_DAILY_SECONDS_FOR_STREAK
from housecup.database.engine import get_session
from housecup.database.models import HousePoints, User, VoiceSession
from housecup.engine.clock import as_utc
from housecup.engine.points import points_between
from housecup.services.metrics import SESSION_DURATION

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SessionCredit:
    """What closing one session added to a user's counters."""

    user_id: int
    session_id: int
    seconds: int
    points: int
    streak_credited: bool = False


def _locked(session: Session, model, ident):
    """Row *ident* of *model* under ``FOR UPDATE``, re-read from the database."""
    return session.get(model, ident, with_for_update=True, populate_existing=True)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
def get_or_create_user(
    session: Session,
    user_id: int,
    username: str,
    now: datetime,
    house: str | None = None,
) -> User:
    """Return the user row, creating it with fresh reset stamps if missing.

    New users start with both reset stamps at *now* so the next hourly tick
    does not zero the time they are about to earn.
    """
    user = session.get(User, user_id)
    if user is None:
        user = User(
            id=user_id,
            username=username,
            house=house,
            timezone="UTC",
            daily_points=0,
            monthly_points=0,
            total_points=0,
            daily_voice_seconds=0,
            monthly_voice_seconds=0,
            total_voice_seconds=0,
            streak=0,
            is_streak_updated_today=False,
            last_daily_reset=now,
            last_monthly_reset=now,
        )
        session.add(user)
        session.flush()
        logger.info("Created user %s (%s)", user_id, username)
        return user

    if username and user.username != username:
        user.username = username
    if house and user.house != house:
        user.house = house
    return user


def _credit_voice_time(session: Session, user: User, seconds: int) -> tuple[int, bool]:
    """Add *seconds* of voice time to *user* and award the resulting points.

    Returns ``(points, streak_credited)``.
    """
    old_daily = user.daily_voice_seconds or 0
    new_daily = old_daily + seconds
    points = points_between(old_daily, new_daily)

    user.daily_voice_seconds = new_daily
    user.monthly_voice_seconds = (user.monthly_voice_seconds or 0) + seconds
    user.total_voice_seconds = (user.total_voice_seconds or 0) + seconds

    if points:
        user.daily_points = (user.daily_points or 0) + points
        user.monthly_points = (user.monthly_points or 0) + points
        user.total_points = (user.total_points or 0) + points

        if user.house:
            house_row = _locked(session, HousePoints, user.house)
            if house_row is None:
                logger.warning("House %r has no standings row, skipping", user.house)
            else:
                house_row.monthly_points += points
                house_row.total_points += points

    streak_credited = False
    if new_daily >= MIN_DAILY_SECONDS_FOR_STREAK and not user.is_streak_updated_today:
        user.streak = (user.streak or 0) + 1
        user.is_streak_updated_today = True
        streak_credited = True

    return points, streak_credited


# ---------------------------------------------------------------------------
# Row-level helpers (caller owns the transaction)
# ---------------------------------------------------------------------------
def close_session_row(
    session: Session,
    row: VoiceSession,
    left_at: datetime,
    *,
    credit: bool = True,
    note: str | None = None,
) -> SessionCredit | None:
    """Close *row* at *left_at* and optionally credit its duration.

    Returns ``None`` when the row was already closed.
    """
    session.flush()
    user = _locked(session, User, row.user_id)
    if _locked(session, VoiceSession, row.id) is None or row.left_at is not None:
        logger.debug("Voice session %d already closed, skipping", row.id)
        return None

    joined_at = as_utc(row.joined_at)
    left_at = max(as_utc(left_at), joined_at)
    seconds = int((left_at - joined_at).total_seconds())

    row.left_at = left_at
    row.duration_seconds = seconds
    row.recovery_note = note

    if not credit:
        row.is_credited = False
        return SessionCredit(row.user_id, row.id, seconds, 0)

    if user is None:
        logger.error("Voice session %d belongs to missing user %d", row.id, row.user_id)
        return None

    points, streak_credited = _credit_voice_time(session, user, seconds)
    SESSION_DURATION.observe(seconds)
    row.is_credited = True
    return SessionCredit(row.user_id, row.id, seconds, points, streak_credited)


def split_session_row(
    session: Session,
    session_id: int,
    at: datetime,
    reopen_at: datetime | None = None,
) -> tuple[SessionCredit | None, int | None]:
    """Close session *session_id* at *at* and open its continuation.

    The continuation joins at *reopen_at* (default *at*).  Returns
    ``(credit, new_session_id)``; both are ``None`` if the row is missing
    or already closed.
    """
    session.flush()
    row = session.get(VoiceSession, session_id)
    if row is None:
        return None, None
    _locked(session, User, row.user_id)
    if _locked(session, VoiceSession, session_id) is None or row.left_at is not None:
        return None, None

    credit = close_session_row(session, row, at)
    session.flush()  # old row must be closed before the continuation opens
    reopen_at = as_utc(reopen_at or at)
    continuation = VoiceSession(
        user_id=row.user_id,
        channel_id=row.channel_id,
        joined_at=reopen_at,
        last_seen_at=reopen_at,
    )
    session.add(continuation)
    session.flush()
    return credit, continuation.id


# ---------------------------------------------------------------------------
# Transactional operations — call via run_db()
# ---------------------------------------------------------------------------
def open_voice_session(
    engine: Engine,
    user_id: int,
    username: str,
    channel_id: int | None,
    joined_at: datetime,
    house: str | None = None,
) -> int:
    """Insert an open session row and return its id.

    Any other open row for the user is a leftover and is closed uncredited,
    keeping at most one open row per user.
    """
    with get_session(engine) as session:
        get_or_create_user(session, user_id, username, joined_at, house)

        leftovers = session.scalars(
            select(VoiceSession).where(
                VoiceSession.user_id == user_id,
                VoiceSession.left_at.is_(None),
            )
        ).all()
        for row in leftovers:
            logger.warning(
                "User %s already had open voice session %d, closing it uncredited",
                user_id, row.id,
            )
            close_session_row(session, row, joined_at, credit=False, note="superseded")
        session.flush()

        row = VoiceSession(
            user_id=user_id,
            channel_id=channel_id,
            joined_at=as_utc(joined_at),
            last_seen_at=as_utc(joined_at),
        )
        session.add(row)
        session.flush()
        return row.id


def close_voice_session(
    engine: Engine,
    session_id: int,
    left_at: datetime,
    note: str | None = None,
) -> SessionCredit | None:
    """Close and credit one session.  No-op if it is already closed."""
    with get_session(engine) as session:
        row = session.get(VoiceSession, session_id)
        if row is None:
            logger.warning("Voice session %d not found, nothing to close", session_id)
            return None
        credit = close_session_row(session, row, left_at, note=note)

    if credit is not None:
        logger.info(
            "Voice session %d closed for %d: %ds, +%d points",
            session_id, credit.user_id, credit.seconds, credit.points,
        )
    return credit


def split_voice_session(
    engine: Engine,
    session_id: int,
    at: datetime,
    reopen_at: datetime | None = None,
) -> tuple[SessionCredit | None, int | None]:
    """Transactional wrapper around :func:`split_session_row`."""
    with get_session(engine) as session:
        return split_session_row(session, session_id, at, reopen_at)


def discard_voice_session(engine: Engine, session_id: int, at: datetime) -> None:
    """Close a session at *at* without crediting it."""
    with get_session(engine) as session:
        row = session.get(VoiceSession, session_id)
        if row is not None:
            close_session_row(session, row, at, credit=False, note="discarded")


def record_heartbeats(engine: Engine, last_seen: dict[int, datetime]) -> int:
    """Stamp ``last_seen_at`` on each still-open session in *last_seen*.

    Returns the number of rows updated.
    """
    if not last_seen:
        return 0
    updated = 0
    with get_session(engine) as session:
        rows = session.scalars(
            select(VoiceSession).where(
                VoiceSession.id.in_(list(last_seen)),
                VoiceSession.left_at.is_(None),
            )
        ).all()
        for row in rows:
            row.last_seen_at = as_utc(last_seen[row.id])
            updated += 1
    return updated
