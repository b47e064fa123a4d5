"""
housecup.database.models — SQLAlchemy 2.0 Data Models
======================================================

Tables:
- users          — Community member profiles, counters and streak state
- voice_session  — One row per voice session (open while ``left_at`` is NULL)
- house_points   — Monthly and lifetime standings per house

All timestamps are stored in UTC.  SQLite (used by the test-suite) hands
them back naive, so readers normalise with :func:`housecup.engine.clock.as_utc`.
"""

from __future__ import annotations

import enum
from datetime import datetime, timedelta

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all House Cup ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class House(enum.StrEnum):
    """The four houses a member can belong to."""
    GRYFFINDOR = "Gryffindor"
    HUFFLEPUFF = "Hufflepuff"
    RAVENCLAW = "Ravenclaw"
    SLYTHERIN = "Slytherin"


# ---------------------------------------------------------------------------
# Users — one row per Discord member
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    username: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    house: Mapped[str | None] = mapped_column(String(50), default=None)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")

    daily_points: Mapped[int] = mapped_column(Integer, default=0)
    monthly_points: Mapped[int] = mapped_column(Integer, default=0)
    total_points: Mapped[int] = mapped_column(Integer, default=0)

    # Accumulators in seconds
    daily_voice_seconds: Mapped[int] = mapped_column(Integer, default=0)
    monthly_voice_seconds: Mapped[int] = mapped_column(Integer, default=0)
    total_voice_seconds: Mapped[int] = mapped_column(Integer, default=0)

    streak: Mapped[int] = mapped_column(Integer, default=0)
    is_streak_updated_today: Mapped[bool] = mapped_column(Boolean, default=False)

    last_daily_reset: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    last_monthly_reset: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    voice_sessions: Mapped[list[VoiceSession]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_users_monthly_points_desc", "monthly_points"),
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} name={self.username!r} house={self.house}>"


# ---------------------------------------------------------------------------
# VoiceSession — open while left_at IS NULL
# ---------------------------------------------------------------------------
class VoiceSession(Base):
    __tablename__ = "voice_session"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    channel_id: Mapped[int | None] = mapped_column(BigInteger, default=None)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    left_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    duration_seconds: Mapped[int] = mapped_column(Integer, default=0)
    is_credited: Mapped[bool] = mapped_column(Boolean, default=False)
    last_seen_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    recovery_note: Mapped[str | None] = mapped_column(String(50), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    user: Mapped[User] = relationship(back_populates="voice_sessions")

    __table_args__ = (
        Index("ix_voice_session_user_left", "user_id", "left_at"),
        # At most one open session per user
        Index(
            "uq_voice_session_one_open",
            "user_id",
            unique=True,
            postgresql_where=text("left_at IS NULL"),
            sqlite_where=text("left_at IS NULL"),
        ),
    )

    @property
    def is_open(self) -> bool:
        return self.left_at is None

    @property
    def duration(self) -> timedelta | None:
        """``left_at - joined_at``; only meaningful once the session is closed."""
        if self.left_at is None:
            return None
        return self.left_at - self.joined_at

    def __repr__(self) -> str:
        return (
            f"<VoiceSession id={self.id} user={self.user_id} "
            f"open={self.is_open} secs={self.duration_seconds}>"
        )


# ---------------------------------------------------------------------------
# HousePoints — one row per house
# ---------------------------------------------------------------------------
class HousePoints(Base):
    __tablename__ = "house_points"

    name: Mapped[str] = mapped_column(String(50), primary_key=True)
    monthly_points: Mapped[int] = mapped_column(Integer, default=0)
    total_points: Mapped[int] = mapped_column(Integer, default=0)
    last_monthly_reset: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )

    def __repr__(self) -> str:
        return f"<HousePoints {self.name} month={self.monthly_points}>"
