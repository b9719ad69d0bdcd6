"""Initial KamiAnime schema

Revision ID: 5e0c1a7b9d21
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "5e0c1a7b9d21"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "user_profiles",
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("display_name", sa.String(100), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("avatar_url", sa.String(500), nullable=True),
        sa.Column("is_admin", sa.Boolean(), nullable=True),
        sa.Column("is_premium", sa.Boolean(), nullable=True),
        sa.Column("xp", sa.Integer(), nullable=True),
        sa.Column("streak", sa.Integer(), nullable=True),
        sa.Column("max_streak", sa.Integer(), nullable=True),
        sa.Column("last_active_date", sa.Date(), nullable=True),
        sa.Column("episodes_watched", sa.Integer(), nullable=True),
        sa.Column("chapters_read", sa.Integer(), nullable=True),
        sa.Column("weekend_episodes", sa.Integer(), nullable=True),
        sa.Column("genres_seen", postgresql.JSONB(), nullable=True),
        sa.Column("discord_id", sa.BigInteger(), nullable=True, unique=True),
        sa.Column("discord_username", sa.String(100), nullable=True),
        sa.Column("linked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sync_enabled", sa.Boolean(), nullable=True),
        sa.Column("sync_version", sa.Integer(), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_user_profiles_xp", "user_profiles", [sa.text("xp DESC")])

    op.create_table(
        "user_badges",
        sa.Column(
            "user_id", sa.String(128),
            sa.ForeignKey("user_profiles.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("badge_id", sa.String(50), primary_key=True),
        sa.Column("unlocked_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "library_entries",
        sa.Column(
            "user_id", sa.String(128),
            sa.ForeignKey("user_profiles.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("kind", sa.String(10), primary_key=True),
        sa.Column("content_id", sa.String(64), primary_key=True),
        sa.Column("title", sa.String(300), nullable=True),
        sa.Column("added_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "linking_codes",
        sa.Column("code", sa.String(6), primary_key=True),
        sa.Column(
            "user_id", sa.String(128),
            sa.ForeignKey("user_profiles.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("redeemed_by", sa.BigInteger(), nullable=True),
    )
    op.create_index("ix_linking_codes_user", "linking_codes", ["user_id"])

    op.create_table(
        "processed_webhooks",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("idempotency_key", sa.String(128), nullable=False),
        sa.Column("event_type", sa.String(40), nullable=False),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("source", sa.String(20), nullable=False),
        sa.Column("xp_delta", sa.Integer(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("idempotency_key", name="uq_processed_webhooks_key"),
    )

    op.create_table(
        "activity_log",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.String(128),
            sa.ForeignKey("user_profiles.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("action", sa.String(40), nullable=False),
        sa.Column("platform", sa.String(20), nullable=False),
        sa.Column("xp_delta", sa.Integer(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_activity_log_user_ts", "activity_log", ["user_id", sa.text("timestamp DESC")],
    )

    op.create_table(
        "quest_progress",
        sa.Column(
            "user_id", sa.String(128),
            sa.ForeignKey("user_profiles.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("quest_id", sa.String(64), primary_key=True),
        sa.Column("progress", sa.Integer(), nullable=True),
        sa.Column("target", sa.Integer(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "guild_settings",
        sa.Column("guild_id", sa.BigInteger(), primary_key=True),
        sa.Column("airing_notifications", sa.Boolean(), nullable=True),
        sa.Column("notification_channel_id", sa.BigInteger(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "rate_limit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("scope", sa.String(32), nullable=False),
        sa.Column("key", sa.String(128), nullable=False),
        sa.Column(
            "timestamp", sa.DateTime(timezone=True),
            nullable=False, server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_rate_limit_scope_key_ts", "rate_limit_events",
        ["scope", "key", sa.text("timestamp DESC")],
    )
    op.create_index("ix_rate_limit_ts", "rate_limit_events", ["timestamp"])


def downgrade() -> None:
    op.drop_index("ix_rate_limit_ts", table_name="rate_limit_events")
    op.drop_index("ix_rate_limit_scope_key_ts", table_name="rate_limit_events")
    op.drop_table("rate_limit_events")
    op.drop_table("guild_settings")
    op.drop_table("quest_progress")
    op.drop_index("ix_activity_log_user_ts", table_name="activity_log")
    op.drop_table("activity_log")
    op.drop_table("processed_webhooks")
    op.drop_index("ix_linking_codes_user", table_name="linking_codes")
    op.drop_table("linking_codes")
    op.drop_table("library_entries")
    op.drop_table("user_badges")
    op.drop_index("ix_user_profiles_xp", table_name="user_profiles")
    op.drop_table("user_profiles")
