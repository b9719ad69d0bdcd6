"""
kamianime.bot.cogs.tasks — Periodic Background Tasks
=====================================================

- **Airing notifier** — every ``airing_poll_hours`` (6 by default) fetch
  the AniList airing schedule for the look-ahead window and post one embed
  per episode to every subscribed guild channel.

Sends go through the announcer's throttle, so a large schedule drains over
a few minutes instead of tripping Discord's rate limits.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx
from discord.ext import commands, tasks

from kamianime.database.engine import run_db
from kamianime.services.airing_service import (
    AiringEntry,
    FanOutReport,
    fan_out,
    fetch_airing_schedule,
    subscribed_channels,
)
from kamianime.services.embeds import build_airing_embed

if TYPE_CHECKING:
    from kamianime.bot.core import KamiBot

logger = logging.getLogger(__name__)

HTTP_TIMEOUT_SECONDS = 15.0


class PeriodicTasks(commands.Cog):
    """Cog for scheduled background tasks."""

    def __init__(self, bot: KamiBot) -> None:
        self.bot = bot

    async def cog_load(self) -> None:
        self.airing_loop.change_interval(hours=self.bot.cfg.airing_poll_hours)
        self.airing_loop.start()

    async def cog_unload(self) -> None:
        self.airing_loop.cancel()

    async def _send_airing(self, channel_id: int, entry: AiringEntry) -> None:
        channel = self.bot.get_channel(channel_id) or await self.bot.fetch_channel(channel_id)
        await self.bot.announcer.throttle.send(channel, build_airing_embed(entry))

    async def run_airing_cycle(self, client: httpx.AsyncClient) -> FanOutReport:
        entries = await fetch_airing_schedule(
            client, window_seconds=self.bot.cfg.airing_lookahead_seconds,
        )
        channels = await run_db(subscribed_channels, self.bot.engine)
        return await fan_out(entries, [cid for _, cid in channels], self._send_airing)

    # -------------------------------------------------------------------
    # Airing notifier
    # -------------------------------------------------------------------
    @tasks.loop(hours=6)
    async def airing_loop(self):
        try:
            async with httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS) as client:
                await self.run_airing_cycle(client)
        except Exception:
            logger.exception("Airing notification task failed", extra={"task": "airing"})

    @airing_loop.before_loop
    async def _wait_airing(self):
        await self.bot.wait_until_ready()


async def setup(bot: KamiBot) -> None:
    await bot.add_cog(PeriodicTasks(bot))
