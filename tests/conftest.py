"""
tests/conftest.py — Shared Test Fixtures
=========================================

Every test gets a fresh in-memory SQLite database with the House Cup schema
and the four house rows, plus a manually advanced clock.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import BigInteger, Engine, create_engine
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.pool import StaticPool

from housecup.database.models import Base
from housecup.database.seed import seed_houses


# ---------------------------------------------------------------------------
# Map BigInteger → INTEGER on SQLite so autoincrement and rowid aliasing work.
# ---------------------------------------------------------------------------
@compiles(BigInteger, "sqlite")
def _compile_bigint_as_integer(type_, compiler, **kw):
    return "INTEGER"


class FakeClock:
    """UTC clock that only moves when a test moves it."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

    def set(self, value: datetime) -> datetime:
        self.current = value
        return self.current


@pytest.fixture
def db_engine() -> Engine:
    """In-memory SQLite engine with all House Cup tables and seeded houses.

    Uses StaticPool so every thread shares the same in-memory database
    (required by ``asyncio.to_thread`` inside ``run_db``).
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    seed_houses(engine)
    return engine


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 10, 12, 0, tzinfo=UTC))
