"""
kamianime.engine.events — SyncEvent Variants
=============================================

The closed set of events the sync bridge publishes to a platform's event
bus after a profile mutation.  Every variant carries the envelope fields:

* ``user_id`` — the profile (website user id)
* ``version`` — the profile's ``sync_version`` *after* the mutation; a
  consumer that has already seen a higher version drops the event
* ``source`` / ``target`` — originating and receiving platform
* ``timestamp``

One mutation can yield several events (``xp_update`` + ``level_up`` +
``badge_unlock``…); they all share the same version.
"""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, ClassVar

__all__ = [
    "AccountLinked",
    "AccountUnlinked",
    "BadgeUnlock",
    "LevelUp",
    "Platform",
    "ProfileUpdate",
    "QuestProgress",
    "StreakUpdate",
    "SyncEvent",
    "SyncEventType",
    "XpUpdate",
]


class Platform(enum.StrEnum):
    WEBSITE = "website"
    DISCORD = "discord"

    @property
    def other(self) -> Platform:
        return Platform.DISCORD if self is Platform.WEBSITE else Platform.WEBSITE


class SyncEventType(enum.StrEnum):
    XP_UPDATE = "xp_update"
    LEVEL_UP = "level_up"
    BADGE_UNLOCK = "badge_unlock"
    STREAK_UPDATE = "streak_update"
    QUEST_PROGRESS = "quest_progress"
    ACCOUNT_LINKED = "account_linked"
    ACCOUNT_UNLINKED = "account_unlinked"
    PROFILE_UPDATE = "profile_update"


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True, kw_only=True)
class SyncEvent:
    """Base envelope.  Only the concrete subclasses below are ever published."""

    type: ClassVar[SyncEventType]

    user_id: str
    version: int
    source: Platform
    target: Platform
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["source"] = self.source.value
        data["target"] = self.target.value
        data["timestamp"] = self.timestamp.isoformat()
        return data


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True, kw_only=True)
class XpUpdate(SyncEvent):
    type: ClassVar[SyncEventType] = SyncEventType.XP_UPDATE

    xp: int
    delta: int
    level: int
    reason: str = ""


@dataclass(frozen=True, slots=True, kw_only=True)
class LevelUp(SyncEvent):
    type: ClassVar[SyncEventType] = SyncEventType.LEVEL_UP

    old_level: int
    new_level: int


@dataclass(frozen=True, slots=True, kw_only=True)
class BadgeUnlock(SyncEvent):
    type: ClassVar[SyncEventType] = SyncEventType.BADGE_UNLOCK

    badge_id: str
    xp_reward: int


@dataclass(frozen=True, slots=True, kw_only=True)
class StreakUpdate(SyncEvent):
    type: ClassVar[SyncEventType] = SyncEventType.STREAK_UPDATE

    streak: int
    max_streak: int


@dataclass(frozen=True, slots=True, kw_only=True)
class QuestProgress(SyncEvent):
    type: ClassVar[SyncEventType] = SyncEventType.QUEST_PROGRESS

    quest_id: str
    progress: int
    target_value: int
    completed: bool


@dataclass(frozen=True, slots=True, kw_only=True)
class AccountLinked(SyncEvent):
    type: ClassVar[SyncEventType] = SyncEventType.ACCOUNT_LINKED

    discord_id: int
    discord_username: str | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class AccountUnlinked(SyncEvent):
    type: ClassVar[SyncEventType] = SyncEventType.ACCOUNT_UNLINKED

    discord_id: int


@dataclass(frozen=True, slots=True, kw_only=True)
class ProfileUpdate(SyncEvent):
    """Full snapshot; used by force-sync and profile edits."""

    type: ClassVar[SyncEventType] = SyncEventType.PROFILE_UPDATE

    snapshot: dict[str, Any]
