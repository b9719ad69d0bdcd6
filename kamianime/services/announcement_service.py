"""
kamianime.services.announcement_service — Discord-side event consumer
======================================================================

Subscribes to the Discord platform's :class:`EventBus` and turns
website-originated progression events into public celebrations:

* ``level_up``     → level-up embed
* ``badge_unlock`` → badge embed

Only users with a linked Discord account are announced; delivery goes
through the per-channel :class:`AnnouncementThrottle`.  Send failures are
logged and never propagate back into the bridge.

Embed construction lives in :mod:`kamianime.services.embeds`.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from discord.abc import Messageable
from sqlalchemy.orm import Session

from kamianime.database.engine import run_db
from kamianime.database.models import UserProfile
from kamianime.engine.badges import BADGES_BY_ID
from kamianime.engine.events import BadgeUnlock, LevelUp, SyncEvent, SyncEventType
from kamianime.services.embeds import build_badge_embed, build_level_up_embed
from kamianime.services.throttle import AnnouncementThrottle

if TYPE_CHECKING:
    import discord

    from kamianime.bot.core import KamiBot
    from kamianime.engine.bus import EventBus

logger = logging.getLogger(__name__)


def _linked_member(engine, user_id: str) -> tuple[int, int] | None:
    """``(discord_id, xp)`` for a linked user, else ``None``."""
    with Session(engine) as session:
        profile = session.get(UserProfile, user_id)
        if profile is None or profile.discord_id is None:
            return None
        return profile.discord_id, profile.xp


class DiscordAnnouncer:
    """Bus subscriber that posts celebrations to the announce channel."""

    def __init__(self, bot: KamiBot, throttle: AnnouncementThrottle | None = None) -> None:
        self.bot = bot
        self.throttle = throttle or AnnouncementThrottle()
        self._unsubscribers: list = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def attach(self, bus: EventBus) -> None:
        self._unsubscribers.append(bus.subscribe(self.on_level_up, SyncEventType.LEVEL_UP))
        self._unsubscribers.append(bus.subscribe(self.on_badge_unlock, SyncEventType.BADGE_UNLOCK))
        self.throttle.start()

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self.throttle.stop()

    # ------------------------------------------------------------------
    # Channel resolution
    # ------------------------------------------------------------------
    def resolve_channel(self) -> Messageable | None:
        channel_id = self.bot.cfg.announce_channel_id
        if not channel_id:
            return None
        channel = self.bot.get_channel(channel_id)
        if channel is not None and isinstance(channel, Messageable):
            return channel
        logger.warning("Announce channel %d not found or not messageable", channel_id)
        return None

    async def _deliver(self, embed: discord.Embed) -> None:
        channel = self.resolve_channel()
        if channel is None:
            return
        try:
            await self.throttle.send(channel, embed)
        except Exception:
            logger.exception("Failed to send announcement to channel %s", getattr(channel, "id", "?"))

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    async def on_level_up(self, event: SyncEvent) -> None:
        assert isinstance(event, LevelUp)
        member = await run_db(_linked_member, self.bot.engine, event.user_id)
        if member is None:
            return
        discord_id, xp = member
        logger.info("Announcing level %d for %s", event.new_level, event.user_id)
        await self._deliver(build_level_up_embed(discord_id, event.new_level, xp))

    async def on_badge_unlock(self, event: SyncEvent) -> None:
        assert isinstance(event, BadgeUnlock)
        badge = BADGES_BY_ID.get(event.badge_id)
        if badge is None:
            return
        member = await run_db(_linked_member, self.bot.engine, event.user_id)
        if member is None:
            return
        await self._deliver(build_badge_embed(member[0], badge))
