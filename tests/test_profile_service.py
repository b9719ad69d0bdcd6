"""
tests/test_profile_service.py — Transactional Profile Mutation Tests
=====================================================================

Exercises :func:`mutate_profile` and the per-action change functions
against an in-memory SQLite database.  The optimistic-concurrency retry
uses a file-backed database so two sessions really hold separate
connections.
"""

from __future__ import annotations

from datetime import date, datetime

import pytest
from conftest import make_profile
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from kamianime.database.models import (
    ActivityAction,
    ActivityLog,
    Base,
    LibraryKind,
    ProcessedWebhook,
)
from kamianime.engine.events import (
    BadgeUnlock,
    LevelUp,
    Platform,
    ProfileUpdate,
    StreakUpdate,
    XpUpdate,
)
from kamianime.errors import ConflictError, NotFoundError, ValidationError
from kamianime.services.profile_service import (
    IdempotencyRecord,
    daily_login,
    discord_join,
    episode_watch,
    flag_toggle,
    get_leaderboard,
    get_or_create_profile,
    grant_xp,
    library_add,
    load_snapshot,
    mutate_profile,
    profile_edit,
    quest_progress,
    xp_gain,
)

WEB = Platform.WEBSITE
WEDNESDAY = date(2026, 10, 14)
WEDNESDAY_NOON = datetime(2026, 10, 14, 12, 0)


def _watch(anime_id: str = "21", **kw):
    kw.setdefault("today", WEDNESDAY)
    kw.setdefault("local_time", WEDNESDAY_NOON)
    return episode_watch(anime_id, 1, **kw)


# ---------------------------------------------------------------------------
# Creation & reads
# ---------------------------------------------------------------------------
class TestGetOrCreate:
    def test_creates_once(self, db_engine):
        first = get_or_create_profile(db_engine, "user-1", "Mika", email="m@example.com")
        again = get_or_create_profile(db_engine, "user-1", "Someone Else")
        assert first["display_name"] == "Mika"
        assert again["display_name"] == "Mika"
        assert first["xp"] == 0 and first["level"] == 1
        assert first["sync_version"] == 1

    def test_unknown_user(self, db_engine):
        with pytest.raises(NotFoundError):
            load_snapshot(db_engine, "ghost")

    def test_leaderboard_order_and_ranks(self, db_engine):
        make_profile(db_engine, "a", "A", xp=300)
        make_profile(db_engine, "b", "B", xp=900)
        make_profile(db_engine, "c", "C", xp=10)

        board = get_leaderboard(db_engine, page=1, page_size=2)
        assert board["total"] == 3
        assert [(e["rank"], e["user_id"]) for e in board["entries"]] == [(1, "b"), (2, "a")]

        page2 = get_leaderboard(db_engine, page=2, page_size=2)
        assert [(e["rank"], e["user_id"]) for e in page2["entries"]] == [(3, "c")]


# ---------------------------------------------------------------------------
# mutate_profile
# ---------------------------------------------------------------------------
class TestMutateProfile:
    def test_xp_gain_bumps_version(self, db_engine):
        make_profile(db_engine)
        change = mutate_profile(db_engine, "user-1", xp_gain(40), platform=WEB)
        assert change.xp_delta == 40
        assert change.version == 2
        assert load_snapshot(db_engine, "user-1")["xp"] == 40

    def test_unknown_user(self, db_engine):
        with pytest.raises(NotFoundError):
            mutate_profile(db_engine, "ghost", xp_gain(1), platform=WEB)

    def test_negative_amount_rejected(self):
        with pytest.raises(ValidationError):
            xp_gain(-1)

    def test_validation_error_writes_nothing(self, db_engine):
        make_profile(db_engine)
        with pytest.raises(ValidationError):
            mutate_profile(db_engine, "user-1", profile_edit(display_name="   "), platform=WEB)
        snap = load_snapshot(db_engine, "user-1")
        assert snap["display_name"] == "Mika"
        assert snap["sync_version"] == 1

    def test_idempotency_key_applies_once(self, db_engine):
        make_profile(db_engine)
        record = IdempotencyRecord(key="evt:1", event_type="xp_gain", source=WEB)

        first = mutate_profile(db_engine, "user-1", xp_gain(25), platform=WEB, idempotency=record)
        second = mutate_profile(db_engine, "user-1", xp_gain(25), platform=WEB, idempotency=record)

        assert first is not None
        assert second is None
        assert load_snapshot(db_engine, "user-1")["xp"] == 25
        with Session(db_engine) as session:
            rows = session.scalars(select(ProcessedWebhook)).all()
            assert [(r.idempotency_key, r.xp_delta) for r in rows] == [("evt:1", 25)]

    def test_level_up_events(self, db_engine):
        make_profile(db_engine, xp=995, badges=("first_episode", "xp_collector"))
        change = mutate_profile(db_engine, "user-1", _watch(), platform=WEB)

        assert (change.old_xp, change.new_xp) == (995, 1005)
        assert change.leveled_up
        events = change.to_events(Platform.DISCORD)
        assert [type(e) for e in events] == [XpUpdate, LevelUp, StreakUpdate, ProfileUpdate]
        assert all(e.version == change.version for e in events)
        assert all(e.target is Platform.DISCORD for e in events)

        with Session(db_engine) as session:
            actions = session.scalars(select(ActivityLog.action)).all()
            assert ActivityAction.LEVEL_UP.value in actions


class TestConcurrentUpdate:
    def test_stale_write_is_recomputed(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'cas.db'}")
        Base.metadata.create_all(engine)
        make_profile(engine, xp=100)
        seen: list[int] = []

        def racing(session, profile, change):
            seen.append(profile.xp)
            if len(seen) == 1:
                # Another writer commits between our read and our write.
                mutate_profile(engine, "user-1", xp_gain(50), platform=Platform.DISCORD)
            grant_xp(session, profile, change, 10, ActivityAction.XP_GAIN)

        change = mutate_profile(engine, "user-1", racing, platform=WEB)

        assert seen == [100, 150]
        assert change.new_xp == 160
        assert change.xp_delta == 10
        snap = load_snapshot(engine, "user-1")
        assert snap["xp"] == 160
        assert snap["sync_version"] == 3
        engine.dispose()

    def test_gives_up_after_max_attempts(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'cas.db'}")
        Base.metadata.create_all(engine)
        make_profile(engine)

        def always_racing(session, profile, change):
            mutate_profile(engine, "user-1", xp_gain(1), platform=Platform.DISCORD)
            grant_xp(session, profile, change, 10, ActivityAction.XP_GAIN)

        with pytest.raises(ConflictError) as exc:
            mutate_profile(engine, "user-1", always_racing, platform=WEB)
        assert exc.value.reason == "concurrent_update"
        engine.dispose()


# ---------------------------------------------------------------------------
# Badges
# ---------------------------------------------------------------------------
class TestBadgeAwarding:
    def test_first_episode(self, db_engine):
        make_profile(db_engine)
        change = mutate_profile(db_engine, "user-1", _watch(), platform=WEB)
        assert [b.id for b in change.badges] == ["first_episode"]
        assert change.new_xp == 10 + 50
        assert load_snapshot(db_engine, "user-1")["badges"] == ["first_episode"]

    def test_badge_xp_can_unlock_more_badges(self, db_engine):
        # 950 + 10 (watch) + 50 (first_episode) crosses 1000 → xp_collector.
        make_profile(db_engine, xp=950)
        change = mutate_profile(db_engine, "user-1", _watch(), platform=WEB)
        assert [b.id for b in change.badges] == ["first_episode", "xp_collector"]
        assert change.new_xp == 950 + 10 + 50 + 100
        unlocks = [e for e in change.to_events(Platform.DISCORD) if isinstance(e, BadgeUnlock)]
        assert [e.badge_id for e in unlocks] == ["first_episode", "xp_collector"]

    def test_badges_never_granted_twice(self, db_engine):
        make_profile(db_engine)
        mutate_profile(db_engine, "user-1", _watch("1"), platform=WEB)
        change = mutate_profile(db_engine, "user-1", _watch("2"), platform=WEB)
        assert change.badges == []
        assert change.xp_delta == 10

    def test_night_watch_unlocks_night_owl(self, db_engine):
        make_profile(db_engine, badges=("first_episode",))
        change = mutate_profile(
            db_engine, "user-1",
            _watch(local_time=datetime(2026, 10, 14, 2, 0)),
            platform=WEB,
        )
        assert [b.id for b in change.badges] == ["night_owl"]

    def test_genre_diversity(self, db_engine):
        make_profile(db_engine, badges=("first_episode",), genres_seen=["action", "drama"])
        change = mutate_profile(
            db_engine, "user-1",
            _watch(genres=["Comedy", "Romance", "Horror"]),
            platform=WEB,
        )
        assert "genre_explorer" in [b.id for b in change.badges]


# ---------------------------------------------------------------------------
# Individual actions
# ---------------------------------------------------------------------------
class TestActions:
    def test_streak_increments_on_consecutive_days(self, db_engine):
        make_profile(db_engine, streak=2, max_streak=2, last_active_date=date(2026, 10, 13))
        change = mutate_profile(db_engine, "user-1", daily_login(today=WEDNESDAY), platform=WEB)
        assert change.streak.streak == 3
        assert change.max_streak == 3
        assert "daily_visitor" in [b.id for b in change.badges]

    def test_daily_login_xp_once_per_day(self, db_engine):
        make_profile(db_engine)
        first = mutate_profile(db_engine, "user-1", daily_login(today=WEDNESDAY), platform=WEB)
        second = mutate_profile(db_engine, "user-1", daily_login(today=WEDNESDAY), platform=WEB)
        assert first.xp_delta == 5
        assert second.xp_delta == 0
        assert second.to_events(Platform.DISCORD) == []

    def test_library_add_is_idempotent(self, db_engine):
        make_profile(db_engine)
        add = library_add(LibraryKind.ANIME, "21", today=WEDNESDAY, title="One Piece")
        first = mutate_profile(db_engine, "user-1", add, platform=WEB)
        second = mutate_profile(db_engine, "user-1", add, platform=WEB)
        assert first.xp_delta == 5
        assert first.profile_changed
        assert second.xp_delta == 0
        assert load_snapshot(db_engine, "user-1")["watchlist"] == ["21"]

    def test_quest_completion_pays_once(self, db_engine):
        make_profile(db_engine)
        step = quest_progress("weekly-3", increment=2, target=3, xp_reward=200)

        first = mutate_profile(db_engine, "user-1", step, platform=WEB)
        assert (first.quest.progress, first.quest.completed) == (2, False)
        assert first.xp_delta == 0

        second = mutate_profile(db_engine, "user-1", step, platform=WEB)
        assert (second.quest.progress, second.quest.completed) == (3, True)
        assert second.xp_delta == 200

        third = mutate_profile(db_engine, "user-1", step, platform=WEB)
        assert third.quest.completed
        assert third.xp_delta == 0

    def test_discord_join_once(self, db_engine):
        make_profile(db_engine)
        first = mutate_profile(db_engine, "user-1", discord_join(), platform=Platform.DISCORD)
        second = mutate_profile(db_engine, "user-1", discord_join(), platform=Platform.DISCORD)
        assert first.xp_delta == 50 + 100
        assert [b.id for b in first.badges] == ["community_helper"]
        assert second.xp_delta == 0
        assert second.badges == []

    def test_flag_toggle(self, db_engine):
        make_profile(db_engine)
        change = mutate_profile(db_engine, "user-1", flag_toggle(is_premium=True), platform=WEB)
        assert change.snapshot["is_premium"] is True
        assert change.snapshot["is_admin"] is False
        assert change.profile_changed
