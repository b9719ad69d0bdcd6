"""
kamianime.database.models — SQLAlchemy 2.0 Data Models
=======================================================

Tables:
- user_profiles      — One row per website user; progression + sync metadata
- user_badges        — Owned badges (never removed)
- library_entries    — Watchlist (anime) and reading list (manga)
- linking_codes      — Short-lived website → Discord linking codes
- processed_webhooks — Idempotency ledger for webhook deliveries
- activity_log       — Append-only journal of applied actions
- quest_progress     — Per-user quest counters
- guild_settings     — Per-guild airing notification subscription
- rate_limit_events  — Sliding-window limiter state

``UserProfile.sync_version`` doubles as SQLAlchemy's optimistic-concurrency
column: every UPDATE is issued as ``... WHERE sync_version = :old`` and a
concurrent writer surfaces as :class:`sqlalchemy.orm.exc.StaleDataError`.
"""

from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from kamianime.engine.progression import level_for_xp


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all KamiAnime ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class LibraryKind(enum.StrEnum):
    ANIME = "anime"
    MANGA = "manga"


class ActivityAction(enum.StrEnum):
    """Every action that can be journaled in ``activity_log``."""
    XP_GAIN = "XP_GAIN"
    WATCH_EPISODE = "WATCH_EPISODE"
    READ_CHAPTER = "READ_CHAPTER"
    LOGIN = "LOGIN"
    WATCHLIST_ADD = "WATCHLIST_ADD"
    READINGLIST_ADD = "READINGLIST_ADD"
    QUEST_PROGRESS = "QUEST_PROGRESS"
    BADGE_UNLOCK = "BADGE_UNLOCK"
    LEVEL_UP = "LEVEL_UP"
    PROFILE_UPDATE = "PROFILE_UPDATE"
    DISCORD_JOIN = "DISCORD_JOIN"
    DISCORD_LINK = "DISCORD_LINK"
    DISCORD_UNLINK = "DISCORD_UNLINK"
    ADMIN_TOGGLE = "ADMIN_TOGGLE"


# ---------------------------------------------------------------------------
# UserProfile
# ---------------------------------------------------------------------------
class UserProfile(Base):
    __tablename__ = "user_profiles"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), default=None)
    avatar_url: Mapped[str | None] = mapped_column(String(500), default=None)

    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    is_premium: Mapped[bool] = mapped_column(Boolean, default=False)

    xp: Mapped[int] = mapped_column(Integer, default=0)
    streak: Mapped[int] = mapped_column(Integer, default=0)
    max_streak: Mapped[int] = mapped_column(Integer, default=0)
    last_active_date: Mapped[date | None] = mapped_column(Date, default=None)

    episodes_watched: Mapped[int] = mapped_column(Integer, default=0)
    chapters_read: Mapped[int] = mapped_column(Integer, default=0)
    weekend_episodes: Mapped[int] = mapped_column(Integer, default=0)
    genres_seen: Mapped[list | None] = mapped_column(JSONB, default=None)

    discord_id: Mapped[int | None] = mapped_column(BigInteger, default=None, unique=True)
    discord_username: Mapped[str | None] = mapped_column(String(100), default=None)
    linked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)

    sync_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    sync_version: Mapped[int] = mapped_column(Integer, nullable=False)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    badges: Mapped[list[UserBadge]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
    library: Mapped[list[LibraryEntry]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    __mapper_args__ = {"version_id_col": sync_version}

    __table_args__ = (
        Index("ix_user_profiles_xp", xp.desc()),
    )

    @property
    def level(self) -> int:
        return level_for_xp(self.xp or 0)

    @property
    def badge_ids(self) -> set[str]:
        return {b.badge_id for b in self.badges}

    def __repr__(self) -> str:
        return f"<UserProfile id={self.id!r} xp={self.xp} v{self.sync_version}>"


# ---------------------------------------------------------------------------
# UserBadge
# ---------------------------------------------------------------------------
class UserBadge(Base):
    __tablename__ = "user_badges"

    user_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("user_profiles.id", ondelete="CASCADE"), primary_key=True
    )
    badge_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    unlocked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    user: Mapped[UserProfile] = relationship(back_populates="badges")

    def __repr__(self) -> str:
        return f"<UserBadge user={self.user_id!r} badge={self.badge_id!r}>"


# ---------------------------------------------------------------------------
# LibraryEntry — watchlist / reading list
# ---------------------------------------------------------------------------
class LibraryEntry(Base):
    __tablename__ = "library_entries"

    user_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("user_profiles.id", ondelete="CASCADE"), primary_key=True
    )
    kind: Mapped[str] = mapped_column(String(10), primary_key=True)
    content_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str | None] = mapped_column(String(300), default=None)
    added_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    user: Mapped[UserProfile] = relationship(back_populates="library")


# ---------------------------------------------------------------------------
# LinkingCode
# ---------------------------------------------------------------------------
class LinkingCode(Base):
    """A one-shot code shown on the website and typed into ``/link``.

    Expiry is enforced at redemption (``created_at + ttl``), not by a sweep.
    """

    __tablename__ = "linking_codes"

    code: Mapped[str] = mapped_column(String(6), primary_key=True)
    user_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("user_profiles.id", ondelete="CASCADE"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    redeemed_by: Mapped[int | None] = mapped_column(BigInteger, default=None)

    __table_args__ = (
        Index("ix_linking_codes_user", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<LinkingCode {self.code} user={self.user_id!r} used={self.used_at is not None}>"


# ---------------------------------------------------------------------------
# ProcessedWebhook — idempotency ledger
# ---------------------------------------------------------------------------
class ProcessedWebhook(Base):
    __tablename__ = "processed_webhooks"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False)
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    xp_delta: Mapped[int] = mapped_column(Integer, default=0)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_processed_webhooks_key"),
    )


# ---------------------------------------------------------------------------
# ActivityLog — append-only journal
# ---------------------------------------------------------------------------
class ActivityLog(Base):
    __tablename__ = "activity_log"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("user_profiles.id", ondelete="CASCADE"), nullable=False
    )
    action: Mapped[str] = mapped_column(String(40), nullable=False)
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    xp_delta: Mapped[int] = mapped_column(Integer, default=0)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_activity_log_user_ts", "user_id", timestamp.desc()),
    )

    def __repr__(self) -> str:
        return f"<ActivityLog {self.action} user={self.user_id!r} xp={self.xp_delta}>"


# ---------------------------------------------------------------------------
# QuestProgress
# ---------------------------------------------------------------------------
class UserQuest(Base):
    __tablename__ = "quest_progress"

    user_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("user_profiles.id", ondelete="CASCADE"), primary_key=True
    )
    quest_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    target: Mapped[int] = mapped_column(Integer, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)

    @property
    def completed(self) -> bool:
        return self.completed_at is not None


# ---------------------------------------------------------------------------
# GuildSettings — airing notification subscription
# ---------------------------------------------------------------------------
class GuildSettings(Base):
    __tablename__ = "guild_settings"

    guild_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    airing_notifications: Mapped[bool] = mapped_column(Boolean, default=False)
    notification_channel_id: Mapped[int | None] = mapped_column(BigInteger, default=None)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return (
            f"<GuildSettings guild={self.guild_id} airing={self.airing_notifications} "
            f"channel={self.notification_channel_id}>"
        )


# ---------------------------------------------------------------------------
# RateLimitEvent — sliding-window limiter state
# ---------------------------------------------------------------------------
class RateLimitEvent(Base):
    __tablename__ = "rate_limit_events"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    scope: Mapped[str] = mapped_column(String(32), nullable=False)
    key: Mapped[str] = mapped_column(String(128), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_rate_limit_scope_key_ts", "scope", "key", timestamp.desc()),
        Index("ix_rate_limit_ts", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<RateLimitEvent {self.scope}:{self.key} ts={self.timestamp}>"
