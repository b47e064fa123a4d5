"""
housecup.database.engine — Database Connection & Async Helper
==============================================================

Discord bots run on an ``asyncio`` event loop while SQLAlchemy + psycopg2
is **synchronous**.  Every store call therefore goes through
:func:`run_db`, which ships a plain synchronous function to a worker
thread with ``asyncio.to_thread()``:

    1. A voice event or scheduled job fires (async world).
    2. The service calls ``await run_db(some_function, engine, ...)``.
    3. The function opens a :func:`get_session` block, does its work and
       commits (or rolls back) as one transaction.
    4. The result is awaited back on the event loop.

Usage::

    from housecup.database.engine import create_db_engine, init_db, run_db

    engine = create_db_engine()          # reads DATABASE_URL from .env
    init_db(engine)                      # CREATE TABLE IF NOT EXISTS …

    session_id = await run_db(open_voice_session, engine, user_id, ...)
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from contextlib import contextmanager
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session

from housecup.database.models import Base

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(url: str | None = None) -> Engine:
    """Build a SQLAlchemy :class:`Engine` from *url* or ``DATABASE_URL``.

    The pool is sized for a single-guild bot: five persistent connections,
    ten overflow, a 10 s checkout timeout and hourly recycling.

    Raises
    ------
    RuntimeError
        If no URL is given and ``DATABASE_URL`` is not set.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )

    engine = create_engine(
        url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,   # Reconnect stale connections automatically
        pool_timeout=10,      # Fail after 10s instead of hanging forever
        pool_recycle=3600,
    )
    logger.info("Database engine created → %s", engine.url.host)
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> None:
    """Create all tables and seed the house rows.

    Safe to call on every startup.  In production the schema is managed by
    Alembic (``alembic upgrade head``); ``create_all`` is the safety net for
    dev environments where migrations have not run.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")

    from housecup.database.seed import seed_houses

    seed_houses(engine)


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine):
    """Yield a :class:`Session` that commits on success and rolls back on
    exception.

    Usage::

        with get_session(engine) as session:
            user = session.get(User, 123)
            user.daily_points = 0
            # commit happens automatically on block exit
    """
    session = Session(engine, expire_on_commit=False)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a **synchronous** database function on a background thread.

    Every store call from the tracker, scheduler and cogs goes through this
    wrapper so the gateway event loop is never blocked::

        credit = await run_db(close_voice_session, engine, session_id, left_at)
    """
    return await asyncio.to_thread(func, *args, **kwargs)
