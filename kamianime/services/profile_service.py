"""
kamianime.services.profile_service — Transactional Profile Mutations
=====================================================================

Shared service module callable by both the bot and the web API.

Every XP/streak/badge change is an atomic read-modify-write keyed by user
id.  :func:`mutate_profile` runs the caller's *change* function against a
freshly loaded profile, evaluates badges (granting their XP in the same
transaction), bumps ``sync_version`` and commits.  If another writer
committed in between, SQLAlchemy's version check raises
:class:`~sqlalchemy.orm.exc.StaleDataError`; the whole compute step is then
re-run against the new state.

When an idempotency key is supplied, the ledger row in
``processed_webhooks`` is written in the same transaction, so a replayed
delivery finds the key and changes nothing.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from kamianime.constants import (
    MAX_CAS_ATTEMPTS,
    XP_DAILY_LOGIN,
    XP_DISCORD_JOIN,
    XP_READ_CHAPTER,
    XP_READINGLIST_ADD,
    XP_WATCH_EPISODE,
    XP_WATCHLIST_ADD,
)
from kamianime.database.models import (
    ActivityAction,
    ActivityLog,
    LibraryEntry,
    LibraryKind,
    ProcessedWebhook,
    UserBadge,
    UserProfile,
    UserQuest,
)
from kamianime.engine.badges import (
    Badge,
    ProfileStats,
    SpecialAction,
    collection_actions,
    eligible_badges,
    get_badge,
    watch_time_actions,
)
from kamianime.engine.events import (
    AccountLinked,
    AccountUnlinked,
    BadgeUnlock,
    LevelUp,
    Platform,
    ProfileUpdate,
    QuestProgress,
    StreakUpdate,
    SyncEvent,
    XpUpdate,
)
from kamianime.engine.progression import level_for_xp, progress_fraction, xp_to_next_level
from kamianime.engine.streak import StreakTransition, advance_streak
from kamianime.errors import ConflictError, NotFoundError, ValidationError

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Result of one mutation
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class QuestState:
    quest_id: str
    progress: int
    target: int
    completed: bool


@dataclass
class ProfileChange:
    """What one transaction did to a profile.

    Populated by the change function and by :func:`mutate_profile`; turned
    into :class:`SyncEvent` instances by :meth:`to_events`.
    """

    user_id: str
    platform: Platform
    old_xp: int
    new_xp: int = 0
    version: int = 0
    reason: str = ""
    badges: list[Badge] = field(default_factory=list)
    streak: StreakTransition | None = None
    max_streak: int = 0
    quest: QuestState | None = None
    profile_changed: bool = False
    special_actions: set[str] = field(default_factory=set)
    sync_enabled: bool = True
    linked_discord: tuple[int, str | None] | None = None
    unlinked_discord: int | None = None
    snapshot: dict[str, Any] = field(default_factory=dict)

    @property
    def xp_delta(self) -> int:
        return self.new_xp - self.old_xp

    @property
    def old_level(self) -> int:
        return level_for_xp(self.old_xp)

    @property
    def new_level(self) -> int:
        return level_for_xp(self.new_xp)

    @property
    def leveled_up(self) -> bool:
        return self.new_level > self.old_level

    def to_events(self, target: Platform) -> list[SyncEvent]:
        """Normalized events for *target*, in the order consumers expect."""
        env = {
            "user_id": self.user_id,
            "version": self.version,
            "source": self.platform,
            "target": target,
        }
        events: list[SyncEvent] = []
        if self.xp_delta:
            events.append(XpUpdate(
                **env, xp=self.new_xp, delta=self.xp_delta,
                level=self.new_level, reason=self.reason,
            ))
        if self.leveled_up:
            events.append(LevelUp(**env, old_level=self.old_level, new_level=self.new_level))
        for badge in self.badges:
            events.append(BadgeUnlock(**env, badge_id=badge.id, xp_reward=badge.xp_reward))
        if self.streak is not None and self.streak.changed:
            events.append(StreakUpdate(
                **env, streak=self.streak.streak, max_streak=self.max_streak,
            ))
        if self.quest is not None:
            events.append(QuestProgress(
                **env, quest_id=self.quest.quest_id, progress=self.quest.progress,
                target_value=self.quest.target, completed=self.quest.completed,
            ))
        if self.linked_discord is not None:
            discord_id, username = self.linked_discord
            events.append(AccountLinked(**env, discord_id=discord_id, discord_username=username))
        if self.unlinked_discord is not None:
            events.append(AccountUnlinked(**env, discord_id=self.unlinked_discord))
        if (events or self.profile_changed) and self.snapshot:
            # Closing snapshot carries the counters the events above do not.
            events.append(ProfileUpdate(**env, snapshot=dict(self.snapshot)))
        return events


@dataclass(frozen=True, slots=True)
class IdempotencyRecord:
    key: str
    event_type: str
    source: Platform


ChangeFn = Callable[[Session, UserProfile, ProfileChange], None]


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_profile(session: Session, user_id: str) -> UserProfile:
    profile = session.get(UserProfile, user_id)
    if profile is None:
        raise NotFoundError(f"Unknown user: {user_id}", reason="unknown_user")
    return profile


def get_profile_by_discord(session: Session, discord_id: int) -> UserProfile | None:
    return session.scalar(select(UserProfile).where(UserProfile.discord_id == discord_id))


def owned_badge_ids(session: Session, user_id: str) -> set[str]:
    rows = session.scalars(
        select(UserBadge.badge_id).where(UserBadge.user_id == user_id)
    ).all()
    return set(rows)


def library_ids(session: Session, user_id: str, kind: LibraryKind) -> list[str]:
    rows = session.scalars(
        select(LibraryEntry.content_id)
        .where(LibraryEntry.user_id == user_id, LibraryEntry.kind == kind.value)
        .order_by(LibraryEntry.added_at, LibraryEntry.content_id)
    ).all()
    return list(rows)


def profile_snapshot(session: Session, profile: UserProfile) -> dict[str, Any]:
    """Plain-dict view shared by the API, the bot and :class:`ProfileView`."""
    return {
        "user_id": profile.id,
        "display_name": profile.display_name,
        "avatar_url": profile.avatar_url,
        "is_admin": profile.is_admin,
        "is_premium": profile.is_premium,
        "xp": profile.xp,
        "level": profile.level,
        "xp_to_next_level": xp_to_next_level(profile.xp),
        "progress": progress_fraction(profile.xp),
        "streak": profile.streak,
        "max_streak": profile.max_streak,
        "last_active_date": (
            profile.last_active_date.isoformat() if profile.last_active_date else None
        ),
        "episodes_watched": profile.episodes_watched,
        "chapters_read": profile.chapters_read,
        "badges": sorted(owned_badge_ids(session, profile.id)),
        "watchlist": library_ids(session, profile.id, LibraryKind.ANIME),
        "manga_library": library_ids(session, profile.id, LibraryKind.MANGA),
        "discord_id": profile.discord_id,
        "discord_username": profile.discord_username,
        "sync_enabled": profile.sync_enabled,
        "sync_version": profile.sync_version,
    }


# Keys of profile_snapshot() that unauthenticated readers may see.
PUBLIC_PROFILE_FIELDS: tuple[str, ...] = (
    "user_id", "display_name", "avatar_url", "is_premium",
    "xp", "level", "xp_to_next_level", "progress",
    "streak", "max_streak", "last_active_date",
    "episodes_watched", "chapters_read", "badges",
    "watchlist", "manga_library",
)


def public_profile(snapshot: dict[str, Any]) -> dict[str, Any]:
    """Allowlisted subset of *snapshot* safe to serve without auth."""
    return {key: snapshot[key] for key in PUBLIC_PROFILE_FIELDS if key in snapshot}


def load_snapshot(engine: Engine, user_id: str) -> dict[str, Any]:
    with Session(engine) as session:
        return profile_snapshot(session, get_profile(session, user_id))


def get_leaderboard(engine: Engine, *, page: int = 1, page_size: int = 20) -> dict[str, Any]:
    """XP-ordered leaderboard page."""
    page = max(1, page)
    page_size = max(1, min(page_size, 100))
    with Session(engine) as session:
        total = session.scalar(select(func.count()).select_from(UserProfile)) or 0
        rows = session.scalars(
            select(UserProfile)
            .order_by(UserProfile.xp.desc(), UserProfile.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).all()
        return {
            "page": page,
            "page_size": page_size,
            "total": total,
            "entries": [
                {
                    "rank": (page - 1) * page_size + i + 1,
                    "user_id": p.id,
                    "display_name": p.display_name,
                    "xp": p.xp,
                    "level": p.level,
                    "streak": p.streak,
                }
                for i, p in enumerate(rows)
            ],
        }


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------
def get_or_create_profile(
    engine: Engine,
    user_id: str,
    display_name: str,
    *,
    email: str | None = None,
    avatar_url: str | None = None,
) -> dict[str, Any]:
    """Create the profile on first authentication; return its snapshot."""
    with Session(engine) as session:
        profile = session.get(UserProfile, user_id)
        if profile is None:
            profile = UserProfile(
                id=user_id,
                display_name=display_name,
                email=email,
                avatar_url=avatar_url,
            )
            session.add(profile)
            try:
                session.flush()
            except IntegrityError:
                # Created concurrently by the other platform.
                session.rollback()
                profile = get_profile(session, user_id)
            else:
                logger.info("Created profile %s (%s)", user_id, display_name)
        snapshot = profile_snapshot(session, profile)
        session.commit()
        return snapshot


# ---------------------------------------------------------------------------
# Core read-modify-write
# ---------------------------------------------------------------------------
def _journal(
    session: Session,
    profile: UserProfile,
    change: ProfileChange,
    action: ActivityAction,
    xp_delta: int = 0,
    metadata: dict | None = None,
) -> None:
    session.add(ActivityLog(
        user_id=profile.id,
        action=action.value,
        platform=change.platform.value,
        xp_delta=xp_delta,
        metadata_=metadata,
    ))


def grant_xp(
    session: Session,
    profile: UserProfile,
    change: ProfileChange,
    amount: int,
    action: ActivityAction,
    metadata: dict | None = None,
) -> None:
    """Add *amount* XP to *profile* inside the caller's transaction."""
    if amount < 0:
        raise ValidationError("XP amount must be non-negative", reason="negative_xp")
    profile.xp += amount
    _journal(session, profile, change, action, amount, metadata)


def touch_streak(profile: UserProfile, change: ProfileChange, today: date) -> None:
    transition = advance_streak(profile.last_active_date, profile.streak, today)
    profile.streak = transition.streak
    profile.last_active_date = transition.last_active_date
    profile.max_streak = max(profile.max_streak, profile.streak)
    change.streak = transition
    change.max_streak = profile.max_streak


def _award_badges(session: Session, profile: UserProfile, change: ProfileChange) -> None:
    """Grant every newly eligible badge plus its XP, until nothing new unlocks."""
    owned = owned_badge_ids(session, profile.id) | {b.id for b in change.badges}
    actions = set(change.special_actions)
    actions |= collection_actions(profile.weekend_episodes, profile.genres_seen or ())

    while True:
        stats = ProfileStats(
            xp=profile.xp,
            episodes_watched=profile.episodes_watched,
            chapters_read=profile.chapters_read,
            streak=profile.streak,
        )
        new_badges = eligible_badges(stats, owned, actions)
        if not new_badges:
            return
        for badge in new_badges:
            session.add(UserBadge(user_id=profile.id, badge_id=badge.id))
            owned.add(badge.id)
            grant_xp(
                session, profile, change, badge.xp_reward,
                ActivityAction.BADGE_UNLOCK, {"badge_id": badge.id},
            )
            change.badges.append(badge)
            logger.info("Badge %s unlocked for %s (+%d XP)", badge.id, profile.id, badge.xp_reward)


def mutate_profile(
    engine: Engine,
    user_id: str,
    apply: ChangeFn,
    *,
    platform: Platform,
    reason: str = "",
    idempotency: IdempotencyRecord | None = None,
) -> ProfileChange | None:
    """Run *apply* as one atomic read-modify-write on *user_id*'s profile.

    Returns the resulting :class:`ProfileChange`, or ``None`` when the
    idempotency key was already processed (nothing changed).

    Raises
    ------
    NotFoundError
        Unknown user.
    ValidationError
        Raised by *apply*; nothing is written.
    ConflictError
        The profile kept changing underneath us for ``MAX_CAS_ATTEMPTS``.
    """
    for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
        with Session(engine) as session:
            if idempotency is not None and _already_processed(session, idempotency.key):
                logger.info("Duplicate delivery %s for %s ignored", idempotency.key, user_id)
                return None

            profile = get_profile(session, user_id)
            change = ProfileChange(
                user_id=user_id, platform=platform, old_xp=profile.xp, reason=reason,
            )
            # Queries inside the compute step must not flush the half-built
            # UPDATE; the version check belongs to the explicit flush below.
            with session.no_autoflush:
                apply(session, profile, change)
                _award_badges(session, profile, change)

            if profile.xp < 0:
                raise ValidationError("XP cannot become negative", reason="negative_xp")

            # Always UPDATE the row so sync_version advances and the version
            # check guards against concurrent writers.
            profile.last_synced_at = _utcnow()

            if change.leveled_up:
                _journal(
                    session, profile, change, ActivityAction.LEVEL_UP,
                    metadata={"old_level": change.old_level, "new_level": change.new_level},
                )

            if idempotency is not None:
                session.add(ProcessedWebhook(
                    idempotency_key=idempotency.key,
                    event_type=idempotency.event_type,
                    user_id=user_id,
                    source=idempotency.source.value,
                    xp_delta=profile.xp - change.old_xp,
                ))

            try:
                session.flush()
            except StaleDataError:
                session.rollback()
                logger.info(
                    "Concurrent update on %s, recomputing (attempt %d/%d)",
                    user_id, attempt, MAX_CAS_ATTEMPTS,
                )
                continue
            except IntegrityError:
                session.rollback()
                if idempotency is not None and _already_processed(session, idempotency.key):
                    logger.info("Duplicate delivery %s raced and lost", idempotency.key)
                    return None
                raise

            change.new_xp = profile.xp
            change.version = profile.sync_version
            change.sync_enabled = profile.sync_enabled
            change.snapshot = profile_snapshot(session, profile)
            session.commit()

        if change.xp_delta or change.badges:
            logger.info(
                "%s: %+d XP → %d (level %d) via %s [v%d]",
                user_id, change.xp_delta, change.new_xp, change.new_level,
                platform, change.version,
            )
        return change

    raise ConflictError(
        f"Profile {user_id} is being updated concurrently; try again",
        reason="concurrent_update",
    )


def _already_processed(session: Session, key: str) -> bool:
    return session.scalar(
        select(ProcessedWebhook.id).where(ProcessedWebhook.idempotency_key == key)
    ) is not None


# ---------------------------------------------------------------------------
# Change functions — one per user action
# ---------------------------------------------------------------------------
def xp_gain(amount: int, source_action: str = "") -> ChangeFn:
    if amount < 0:
        raise ValidationError("XP amount must be non-negative", reason="negative_xp")

    def _apply(session: Session, profile: UserProfile, change: ProfileChange) -> None:
        grant_xp(
            session, profile, change, amount, ActivityAction.XP_GAIN,
            {"action": source_action} if source_action else None,
        )
    return _apply


def episode_watch(
    anime_id: str,
    episode: int | None,
    *,
    today: date,
    local_time: datetime,
    genres: Collection[str] = (),
    title: str | None = None,
) -> ChangeFn:
    """One watched episode.  *local_time* is in the streak timezone."""

    def _apply(session: Session, profile: UserProfile, change: ProfileChange) -> None:
        profile.episodes_watched += 1
        if local_time.weekday() >= 5:
            profile.weekend_episodes += 1
        if genres:
            seen = set(profile.genres_seen or ())
            merged = sorted(seen | {g.lower() for g in genres})
            if len(merged) != len(seen):
                profile.genres_seen = merged
        change.special_actions |= {a.value for a in watch_time_actions(local_time)}
        touch_streak(profile, change, today)
        grant_xp(
            session, profile, change, XP_WATCH_EPISODE, ActivityAction.WATCH_EPISODE,
            {"anime_id": anime_id, "episode": episode, "title": title},
        )
    return _apply


def chapter_read(
    manga_id: str,
    chapter: str | None,
    *,
    today: date,
    title: str | None = None,
) -> ChangeFn:
    def _apply(session: Session, profile: UserProfile, change: ProfileChange) -> None:
        profile.chapters_read += 1
        touch_streak(profile, change, today)
        grant_xp(
            session, profile, change, XP_READ_CHAPTER, ActivityAction.READ_CHAPTER,
            {"manga_id": manga_id, "chapter": chapter, "title": title},
        )
    return _apply


def daily_login(*, today: date) -> ChangeFn:
    """Streak check-in.  Login XP is granted once per calendar day."""

    def _apply(session: Session, profile: UserProfile, change: ProfileChange) -> None:
        touch_streak(profile, change, today)
        if change.streak is not None and change.streak.changed:
            grant_xp(session, profile, change, XP_DAILY_LOGIN, ActivityAction.LOGIN)
    return _apply


def library_add(
    kind: LibraryKind,
    content_id: str,
    *,
    today: date,
    title: str | None = None,
) -> ChangeFn:
    """Add to watchlist / reading list.  Re-adding is a no-op with no XP."""
    xp = XP_WATCHLIST_ADD if kind is LibraryKind.ANIME else XP_READINGLIST_ADD
    action = (
        ActivityAction.WATCHLIST_ADD if kind is LibraryKind.ANIME
        else ActivityAction.READINGLIST_ADD
    )

    def _apply(session: Session, profile: UserProfile, change: ProfileChange) -> None:
        existing = session.get(LibraryEntry, (profile.id, kind.value, content_id))
        if existing is not None:
            return
        session.add(LibraryEntry(
            user_id=profile.id, kind=kind.value, content_id=content_id, title=title,
        ))
        touch_streak(profile, change, today)
        grant_xp(session, profile, change, xp, action, {"content_id": content_id})
        change.profile_changed = True
    return _apply


def quest_progress(
    quest_id: str,
    *,
    increment: int = 1,
    target: int = 1,
    xp_reward: int = 0,
) -> ChangeFn:
    """Advance a quest counter; completing it grants *xp_reward* once."""
    if increment < 0 or target < 1 or xp_reward < 0:
        raise ValidationError("Invalid quest progress values", reason="invalid_quest")

    def _apply(session: Session, profile: UserProfile, change: ProfileChange) -> None:
        row = session.get(UserQuest, (profile.id, quest_id))
        if row is None:
            row = UserQuest(user_id=profile.id, quest_id=quest_id, progress=0, target=target)
            session.add(row)
        if row.completed_at is None:
            row.progress = min(row.target, row.progress + increment)
            _journal(
                session, profile, change, ActivityAction.QUEST_PROGRESS,
                metadata={"quest_id": quest_id, "progress": row.progress},
            )
            if row.progress >= row.target:
                row.completed_at = _utcnow()
                if xp_reward:
                    grant_xp(
                        session, profile, change, xp_reward, ActivityAction.QUEST_PROGRESS,
                        {"quest_id": quest_id, "completed": True},
                    )
        change.quest = QuestState(
            quest_id=quest_id,
            progress=row.progress,
            target=row.target,
            completed=row.completed_at is not None,
        )
    return _apply


def discord_join() -> ChangeFn:
    """The linked user joined the Discord server."""

    def _apply(session: Session, profile: UserProfile, change: ProfileChange) -> None:
        already = session.scalar(
            select(ActivityLog.id).where(
                ActivityLog.user_id == profile.id,
                ActivityLog.action == ActivityAction.DISCORD_JOIN.value,
            ).limit(1)
        )
        change.special_actions.add(SpecialAction.DISCORD_JOIN.value)
        if already is None:
            grant_xp(session, profile, change, XP_DISCORD_JOIN, ActivityAction.DISCORD_JOIN)
    return _apply


def badge_grant(badge_id: str) -> ChangeFn:
    """Grant one badge by id.

    Special badges go through the evaluator with their action marked
    satisfied; threshold badges are inserted directly.
    """
    badge = get_badge(badge_id)

    def _apply(session: Session, profile: UserProfile, change: ProfileChange) -> None:
        if badge.action is not None:
            change.special_actions.add(badge.action.value)
            return
        if badge.id in owned_badge_ids(session, profile.id):
            return
        session.add(UserBadge(user_id=profile.id, badge_id=badge.id))
        grant_xp(
            session, profile, change, badge.xp_reward,
            ActivityAction.BADGE_UNLOCK, {"badge_id": badge.id},
        )
        change.badges.append(badge)
    return _apply


def profile_edit(
    *,
    display_name: str | None = None,
    avatar_url: str | None = None,
    sync_enabled: bool | None = None,
) -> ChangeFn:
    def _apply(session: Session, profile: UserProfile, change: ProfileChange) -> None:
        if display_name is not None:
            if not display_name.strip():
                raise ValidationError("display_name cannot be blank", reason="invalid_name")
            profile.display_name = display_name.strip()
        if avatar_url is not None:
            profile.avatar_url = avatar_url
        if sync_enabled is not None:
            profile.sync_enabled = sync_enabled
        _journal(session, profile, change, ActivityAction.PROFILE_UPDATE)
        change.profile_changed = True
    return _apply


def flag_toggle(*, is_admin: bool | None = None, is_premium: bool | None = None) -> ChangeFn:
    def _apply(session: Session, profile: UserProfile, change: ProfileChange) -> None:
        before = {"is_admin": profile.is_admin, "is_premium": profile.is_premium}
        if is_admin is not None:
            profile.is_admin = is_admin
        if is_premium is not None:
            profile.is_premium = is_premium
        _journal(
            session, profile, change, ActivityAction.ADMIN_TOGGLE,
            metadata={
                "before": before,
                "after": {"is_admin": profile.is_admin, "is_premium": profile.is_premium},
            },
        )
        change.profile_changed = True
    return _apply
