"""Create users, voice_session and house_points tables

Revision ID: 5c2e9a71b4d0
Revises:
Create Date: 2026-10-17 09:12:31.418202

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '5c2e9a71b4d0'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

HOUSES = ("Gryffindor", "Hufflepuff", "Ravenclaw", "Slytherin")


def upgrade() -> None:
    """Create the voice-tracking schema and seed one row per house."""

    # --- users ---
    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger, primary_key=True),
        sa.Column("username", sa.String(100), nullable=False, server_default=""),
        sa.Column("house", sa.String(50), nullable=True),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        sa.Column("daily_points", sa.Integer, nullable=False, server_default="0"),
        sa.Column("monthly_points", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_points", sa.Integer, nullable=False, server_default="0"),
        sa.Column("daily_voice_seconds", sa.Integer, nullable=False, server_default="0"),
        sa.Column("monthly_voice_seconds", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_voice_seconds", sa.Integer, nullable=False, server_default="0"),
        sa.Column("streak", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "is_streak_updated_today", sa.Boolean, nullable=False, server_default=sa.false(),
        ),
        sa.Column("last_daily_reset", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_monthly_reset", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "daily_points >= 0 AND monthly_points >= 0 AND total_points >= 0",
            name="ck_users_points_non_negative",
        ),
    )
    op.create_index("ix_users_monthly_points_desc", "users", ["monthly_points"])

    # --- voice_session ---
    op.create_table(
        "voice_session",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.BigInteger,
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("channel_id", sa.BigInteger, nullable=True),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("left_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_seconds", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_credited", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recovery_note", sa.String(50), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_voice_session_user_left", "voice_session", ["user_id", "left_at"])
    # At most one open session per user
    op.create_index(
        "uq_voice_session_one_open", "voice_session", ["user_id"],
        unique=True,
        postgresql_where=sa.text("left_at IS NULL"),
    )

    # --- house_points ---
    house_points = op.create_table(
        "house_points",
        sa.Column("name", sa.String(50), primary_key=True),
        sa.Column("monthly_points", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_points", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_monthly_reset", sa.DateTime(timezone=True), nullable=True),
    )
    op.bulk_insert(house_points, [{"name": name} for name in HOUSES])


def downgrade() -> None:
    """Drop the voice-tracking schema."""
    op.drop_table("house_points")
    op.drop_index("uq_voice_session_one_open", table_name="voice_session")
    op.drop_index("ix_voice_session_user_left", table_name="voice_session")
    op.drop_table("voice_session")
    op.drop_index("ix_users_monthly_points_desc", table_name="users")
    op.drop_table("users")
