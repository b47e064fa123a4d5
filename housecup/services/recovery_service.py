"""
housecup.services.recovery_service — Crash Recovery of Open Sessions
=====================================================================

After a graceful shutdown no session rows are left open.  After a crash,
every session that was open (including members who were in their grace
period; grace entries are never persisted) still has ``left_at IS NULL``.

On startup, before the gateway connects, :func:`recover_open_sessions`
closes each such row at its last-known instant:

* ``last_seen_at`` (the tracker's heartbeat) if present, else ``joined_at``;
* never later than *now*;
* rows that joined more than ``RECOVERY_MAX_SESSION_AGE`` ago are closed
  without credit.

Sessions are never resumed: members still in voice get a fresh session from
the startup voice scan.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import Engine, select

from housecup.constants import RECOVERY_MAX_SESSION_AGE
from housecup.database.engine import get_session
from housecup.database.models import VoiceSession
from housecup.engine.clock import as_utc
from housecup.services.voice_service import close_session_row

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RecoveryResult:
    recovered: int = 0
    stale: int = 0
    credited_seconds: int = 0


def recover_open_sessions(
    engine: Engine,
    now: datetime,
    max_age: timedelta = RECOVERY_MAX_SESSION_AGE,
) -> RecoveryResult:
    """Close every open session row left behind by a crash."""
    result = RecoveryResult()
    now = as_utc(now)

    with get_session(engine) as session:
        rows = session.scalars(
            select(VoiceSession)
            .where(VoiceSession.left_at.is_(None))
            .order_by(VoiceSession.joined_at)
        ).all()

        for row in rows:
            joined_at = as_utc(row.joined_at)
            last_known = as_utc(row.last_seen_at) if row.last_seen_at else joined_at
            last_known = min(last_known, now)

            if now - joined_at > max_age:
                close_session_row(session, row, last_known, credit=False, note="stale")
                result.stale += 1
                continue

            credit = close_session_row(session, row, last_known, note="recovered")
            result.recovered += 1
            if credit is not None:
                result.credited_seconds += credit.seconds

    if result.recovered or result.stale:
        logger.warning(
            "Recovered %d open voice session(s) after unclean shutdown "
            "(%ds credited, %d stale closed uncredited)",
            result.recovered, result.credited_seconds, result.stale,
        )
    else:
        logger.info("No open voice sessions to recover")
    return result
