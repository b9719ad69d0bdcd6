"""
kamianime.engine.badges — Badge Rule Table & Evaluator
=======================================================

The badge catalogue is static and lives in code: it is loaded once at
import and never mutated.  Evaluation is pure — it receives a stats
snapshot plus the set of already-owned badge ids and returns the ids that
are newly earned.  Awarding (and the XP that comes with it) is done by
:mod:`kamianime.services.profile_service` inside the profile transaction.

Condition kinds:

* threshold kinds compare one stat against ``threshold``
  (``episodes_watched``, ``chapters_read``, ``streak_days``, ``xp_earned``);
* ``special`` badges name an *action*; they are granted only when the
  caller reports that action as satisfied for the event being applied.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Collection, Iterable
from dataclasses import dataclass
from datetime import datetime

from kamianime.errors import ValidationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class BadgeCategory(enum.StrEnum):
    ANIME = "anime"
    MANGA = "manga"
    COMMUNITY = "community"
    SPECIAL = "special"
    STREAK = "streak"


class BadgeRarity(enum.StrEnum):
    COMMON = "common"
    RARE = "rare"
    EPIC = "epic"
    LEGENDARY = "legendary"


class ConditionKind(enum.StrEnum):
    EPISODES_WATCHED = "episodes_watched"
    CHAPTERS_READ = "chapters_read"
    STREAK_DAYS = "streak_days"
    XP_EARNED = "xp_earned"
    SPECIAL = "special"


class SpecialAction(enum.StrEnum):
    DISCORD_JOIN = "discord_join"
    NIGHT_WATCH = "night_watch"
    MORNING_WATCH = "morning_watch"
    WEEKEND_BINGE = "weekend_binge"
    GENRE_DIVERSITY = "genre_diversity"


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Badge:
    id: str
    name: str
    description: str
    icon: str
    category: BadgeCategory
    rarity: BadgeRarity
    condition: ConditionKind
    xp_reward: int
    threshold: int | None = None
    action: SpecialAction | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "category": self.category.value,
            "rarity": self.rarity.value,
            "condition": {
                "type": self.condition.value,
                "value": self.threshold,
                "action": self.action.value if self.action else None,
            },
            "xp_reward": self.xp_reward,
        }


@dataclass(frozen=True, slots=True)
class ProfileStats:
    """Snapshot of the counters badge conditions look at."""

    xp: int = 0
    episodes_watched: int = 0
    chapters_read: int = 0
    streak: int = 0

    def value_for(self, kind: ConditionKind) -> int:
        return {
            ConditionKind.EPISODES_WATCHED: self.episodes_watched,
            ConditionKind.CHAPTERS_READ: self.chapters_read,
            ConditionKind.STREAK_DAYS: self.streak,
            ConditionKind.XP_EARNED: self.xp,
        }[kind]


def _threshold(
    id: str, name: str, description: str, icon: str,
    category: BadgeCategory, rarity: BadgeRarity,
    kind: ConditionKind, value: int, xp: int,
) -> Badge:
    return Badge(id, name, description, icon, category, rarity, kind, xp, threshold=value)


def _special(
    id: str, name: str, description: str, icon: str,
    category: BadgeCategory, rarity: BadgeRarity,
    action: SpecialAction, xp: int,
) -> Badge:
    return Badge(
        id, name, description, icon, category, rarity,
        ConditionKind.SPECIAL, xp, action=action,
    )


_A, _M, _C, _S, _K = (
    BadgeCategory.ANIME, BadgeCategory.MANGA, BadgeCategory.COMMUNITY,
    BadgeCategory.SPECIAL, BadgeCategory.STREAK,
)
_COMMON, _RARE, _EPIC, _LEGENDARY = (
    BadgeRarity.COMMON, BadgeRarity.RARE, BadgeRarity.EPIC, BadgeRarity.LEGENDARY,
)
_EP, _CH, _ST, _XP = (
    ConditionKind.EPISODES_WATCHED, ConditionKind.CHAPTERS_READ,
    ConditionKind.STREAK_DAYS, ConditionKind.XP_EARNED,
)


# ---------------------------------------------------------------------------
# The catalogue
# ---------------------------------------------------------------------------
BADGES: tuple[Badge, ...] = (
    # Anime
    _threshold("first_episode", "First Steps", "Watch your first episode",
               "🎬", _A, _COMMON, _EP, 1, 50),
    _threshold("anime_explorer", "Anime Explorer", "Watch 10 episodes",
               "🗺️", _A, _COMMON, _EP, 10, 100),
    _threshold("binge_watcher", "Binge Watcher", "Watch 50 episodes",
               "📺", _A, _RARE, _EP, 50, 250),
    _threshold("anime_addict", "Anime Addict", "Watch 100 episodes",
               "🎭", _A, _EPIC, _EP, 100, 500),
    _threshold("otaku_master", "Otaku Master", "Watch 500 episodes",
               "👑", _A, _LEGENDARY, _EP, 500, 1000),
    # Manga
    _threshold("first_chapter", "Page Turner", "Read your first manga chapter",
               "📖", _M, _COMMON, _CH, 1, 50),
    _threshold("manga_reader", "Manga Reader", "Read 25 chapters",
               "📚", _M, _COMMON, _CH, 25, 100),
    _threshold("bookworm", "Bookworm", "Read 100 chapters",
               "🐛", _M, _RARE, _CH, 100, 250),
    _threshold("manga_master", "Manga Master", "Read 500 chapters",
               "📜", _M, _EPIC, _CH, 500, 500),
    # Streak
    _threshold("daily_visitor", "Daily Visitor", "Visit KamiAnime for 3 consecutive days",
               "🔥", _K, _COMMON, _ST, 3, 75),
    _threshold("week_warrior", "Week Warrior", "Maintain a 7-day streak",
               "⚡", _K, _RARE, _ST, 7, 200),
    _threshold("month_master", "Month Master", "Maintain a 30-day streak",
               "🌟", _K, _EPIC, _ST, 30, 750),
    _threshold("streak_legend", "Streak Legend", "Maintain a 100-day streak",
               "💎", _K, _LEGENDARY, _ST, 100, 2000),
    # XP
    _threshold("xp_collector", "XP Collector", "Earn 1,000 XP",
               "⭐", _S, _COMMON, _XP, 1000, 100),
    _threshold("xp_hunter", "XP Hunter", "Earn 5,000 XP",
               "🎯", _S, _RARE, _XP, 5000, 250),
    _threshold("xp_master", "XP Master", "Earn 25,000 XP",
               "🏆", _S, _EPIC, _XP, 25000, 1000),
    # Community / special
    _special("community_helper", "Community Helper", "Join the Discord server",
             "🤝", _C, _COMMON, SpecialAction.DISCORD_JOIN, 100),
    _special("night_owl", "Night Owl", "Watch anime between 12 AM - 6 AM",
             "🦉", _S, _RARE, SpecialAction.NIGHT_WATCH, 150),
    _special("early_bird", "Early Bird", "Watch anime between 5 AM - 8 AM",
             "🐦", _S, _RARE, SpecialAction.MORNING_WATCH, 150),
    _special("weekend_warrior", "Weekend Warrior", "Watch 10 episodes on weekends",
             "⚔️", _S, _RARE, SpecialAction.WEEKEND_BINGE, 200),
    _special("genre_explorer", "Genre Explorer", "Watch anime from 5 different genres",
             "🌈", _A, _RARE, SpecialAction.GENRE_DIVERSITY, 300),
)

BADGES_BY_ID: dict[str, Badge] = {b.id: b for b in BADGES}

if len(BADGES_BY_ID) != len(BADGES):  # pragma: no cover
    raise RuntimeError("Duplicate badge id in BADGES")

WEEKEND_BINGE_EPISODES: int = 10
GENRE_DIVERSITY_COUNT: int = 5


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------
def get_badge(badge_id: str) -> Badge:
    try:
        return BADGES_BY_ID[badge_id]
    except KeyError:
        raise ValidationError(f"Unknown badge: {badge_id}", reason="unknown_badge") from None


def badges_by_category(category: BadgeCategory | str) -> list[Badge]:
    return [b for b in BADGES if b.category == category]


def badges_by_rarity(rarity: BadgeRarity | str) -> list[Badge]:
    return [b for b in BADGES if b.rarity == rarity]


# ---------------------------------------------------------------------------
# Special-action predicates
# ---------------------------------------------------------------------------
def watch_time_actions(watched_at: datetime) -> set[SpecialAction]:
    """Time-of-day actions satisfied by a watch at local time *watched_at*.

    Night owl covers hours 0–5, early bird hours 5–7; 5 AM satisfies both.
    """
    hour = watched_at.hour
    actions: set[SpecialAction] = set()
    if 0 <= hour < 6:
        actions.add(SpecialAction.NIGHT_WATCH)
    if 5 <= hour < 8:
        actions.add(SpecialAction.MORNING_WATCH)
    return actions


def collection_actions(weekend_episodes: int, genres_seen: Iterable[str]) -> set[SpecialAction]:
    """Actions derived from accumulated counters rather than a single event."""
    actions: set[SpecialAction] = set()
    if weekend_episodes >= WEEKEND_BINGE_EPISODES:
        actions.add(SpecialAction.WEEKEND_BINGE)
    if len(set(genres_seen)) >= GENRE_DIVERSITY_COUNT:
        actions.add(SpecialAction.GENRE_DIVERSITY)
    return actions


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------
def eligible_badges(
    stats: ProfileStats,
    owned: Collection[str],
    special_actions: Collection[str] = (),
) -> list[Badge]:
    """Return badges newly earned by *stats*, in catalogue order.

    Owned badges are never returned again.  Special badges are returned only
    when their action appears in *special_actions*.
    """
    earned: list[Badge] = []
    for badge in BADGES:
        if badge.id in owned:
            continue
        if badge.condition is ConditionKind.SPECIAL:
            if badge.action in special_actions:
                earned.append(badge)
            continue
        if badge.threshold is not None and stats.value_for(badge.condition) >= badge.threshold:
            earned.append(badge)

    if earned:
        logger.debug("Eligible badges: %s", [b.id for b in earned])
    return earned
