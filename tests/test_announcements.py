"""
tests/test_announcements.py — Unit Tests for Announcement Service
==================================================================

Tests the Discord-side bus consumer: channel resolution, linked-user
gating, embed contents and failure isolation.
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import discord
from conftest import make_profile, run_async

from kamianime.engine.badges import get_badge
from kamianime.engine.bus import EventBus
from kamianime.engine.events import BadgeUnlock, LevelUp, Platform
from kamianime.services.announcement_service import DiscordAnnouncer
from kamianime.services.embeds import build_badge_embed, build_level_up_embed
from kamianime.services.throttle import AnnouncementThrottle

ENV = {"user_id": "user-1", "source": Platform.WEBSITE, "target": Platform.DISCORD}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _make_bot(engine, *, channel_id: int | None = 100, channels: dict | None = None) -> MagicMock:
    """Create a lightweight mock KamiBot."""
    bot = MagicMock()
    bot.cfg = SimpleNamespace(announce_channel_id=channel_id)
    bot.engine = engine

    def _get_channel(ch_id):
        return (channels or {}).get(ch_id)

    bot.get_channel = _get_channel
    return bot


def _make_messageable(channel_id: int = 100) -> MagicMock:
    ch = MagicMock(spec=discord.TextChannel)
    ch.id = channel_id
    ch.send = AsyncMock()
    return ch


def _announcer(bot) -> DiscordAnnouncer:
    # Roomy window so nothing is queued behind the drain task.
    return DiscordAnnouncer(bot, throttle=AnnouncementThrottle(max_per_window=10))


# ---------------------------------------------------------------------------
# Channel resolution
# ---------------------------------------------------------------------------
class TestResolveChannel:
    def test_configured_channel(self, db_engine):
        ch = _make_messageable()
        announcer = _announcer(_make_bot(db_engine, channels={100: ch}))
        assert announcer.resolve_channel() is ch

    def test_unconfigured(self, db_engine):
        announcer = _announcer(_make_bot(db_engine, channel_id=None))
        assert announcer.resolve_channel() is None

    def test_missing_channel(self, db_engine):
        announcer = _announcer(_make_bot(db_engine, channels={}))
        assert announcer.resolve_channel() is None


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------
class TestHandlers:
    def test_level_up_for_linked_user(self, db_engine):
        make_profile(db_engine, xp=1005, discord_id=42)
        ch = _make_messageable()
        announcer = _announcer(_make_bot(db_engine, channels={100: ch}))

        run_async(announcer.on_level_up(LevelUp(**ENV, version=2, old_level=1, new_level=2)))

        ch.send.assert_awaited_once()
        embed = ch.send.call_args.kwargs["embed"]
        assert "<@42>" in embed.description
        assert "2" in embed.description

    def test_unlinked_user_is_silent(self, db_engine):
        make_profile(db_engine, xp=1005)
        ch = _make_messageable()
        announcer = _announcer(_make_bot(db_engine, channels={100: ch}))

        run_async(announcer.on_level_up(LevelUp(**ENV, version=2, old_level=1, new_level=2)))
        ch.send.assert_not_awaited()

    def test_badge_unlock(self, db_engine):
        make_profile(db_engine, discord_id=42)
        ch = _make_messageable()
        announcer = _announcer(_make_bot(db_engine, channels={100: ch}))

        run_async(announcer.on_badge_unlock(
            BadgeUnlock(**ENV, version=3, badge_id="night_owl", xp_reward=150),
        ))
        embed = ch.send.call_args.kwargs["embed"]
        assert "Night Owl" in (embed.title or "") + (embed.description or "")

    def test_send_failure_is_contained(self, db_engine):
        make_profile(db_engine, discord_id=42)
        ch = _make_messageable()
        ch.send = AsyncMock(side_effect=discord.HTTPException(MagicMock(status=500), "boom"))
        announcer = _announcer(_make_bot(db_engine, channels={100: ch}))

        run_async(announcer.on_level_up(LevelUp(**ENV, version=2, old_level=1, new_level=2)))
        ch.send.assert_awaited_once()

    def test_attach_routes_bus_events(self, db_engine):
        make_profile(db_engine, discord_id=42)
        ch = _make_messageable()
        announcer = _announcer(_make_bot(db_engine, channels={100: ch}))
        bus = EventBus(Platform.DISCORD)

        async def _inner():
            announcer.attach(bus)
            try:
                await bus.publish(LevelUp(**ENV, version=2, old_level=1, new_level=2))
            finally:
                announcer.detach()
            await asyncio.sleep(0)
            await bus.publish(LevelUp(**ENV, version=3, old_level=2, new_level=3))

        run_async(_inner())
        assert ch.send.await_count == 1
        assert bus.handler_count() == 0
        assert bus.handler_count(LevelUp.type) == 0


# ---------------------------------------------------------------------------
# Embed builders
# ---------------------------------------------------------------------------
class TestEmbeds:
    def test_level_up_embed(self):
        embed = build_level_up_embed(7, 3, 2500)
        assert isinstance(embed, discord.Embed)
        assert "<@7>" in embed.description

    def test_badge_embed(self):
        embed = build_badge_embed(7, get_badge("first_episode"))
        assert isinstance(embed, discord.Embed)
        assert embed.fields or embed.description
