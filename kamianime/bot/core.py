"""
kamianime.bot.core — Bot Instance & Cog Loader
===============================================

Defines :class:`KamiBot`, the ``commands.Bot`` subclass that carries the
shared state every cog reads through ``self.bot``:

* ``bot.cfg``          — parsed :class:`KamiConfig`
* ``bot.engine``       — SQLAlchemy engine
* ``bot.bridge``       — the :class:`SyncBridge` (shared with the embedded API)
* ``bot.discord_view`` — :class:`ProfileView` fed by the Discord bus
* ``bot.announcer``    — posts website-originated level-ups and badges

The bridge owns both event buses.  Webhooks arriving through the API are
published on the Discord bus, which this process consumes.
"""

from __future__ import annotations

import logging
import os

import discord
from discord.ext import commands
from sqlalchemy import Engine

from kamianime.config import KamiConfig
from kamianime.engine.bus import ProfileView
from kamianime.engine.events import Platform
from kamianime.services.announcement_service import DiscordAnnouncer
from kamianime.services.sync_service import SyncBridge

logger = logging.getLogger(__name__)

# Cog modules to load on startup.
EXTENSIONS: list[str] = [
    "kamianime.bot.cogs.link",
    "kamianime.bot.cogs.profile",
    "kamianime.bot.cogs.membership",
    "kamianime.bot.cogs.admin",
    "kamianime.bot.cogs.tasks",
]


class KamiBot(commands.Bot):
    """Custom Bot subclass that carries project-wide state.

    Parameters
    ----------
    cfg:
        The parsed :class:`KamiConfig` from ``config.yaml``.
    engine:
        A SQLAlchemy :class:`Engine`.
    bridge:
        The process-wide :class:`SyncBridge`.
    """

    def __init__(self, cfg: KamiConfig, engine: Engine, bridge: SyncBridge) -> None:
        intents = discord.Intents.default()
        intents.members = True            # Privileged: on_member_join
        intents.presences = False

        super().__init__(
            command_prefix=cfg.bot_prefix,
            intents=intents,
            description=f"{cfg.community_name} companion bot",
        )

        self.cfg = cfg
        self.engine = engine
        self.bridge = bridge
        self.discord_view = ProfileView(bridge.buses[Platform.DISCORD])
        self.announcer = DiscordAnnouncer(self)

    # -----------------------------------------------------------------------
    # Lifecycle hooks
    # -----------------------------------------------------------------------
    async def setup_hook(self) -> None:
        """Load cogs and attach the announcer before connecting.

        One broken cog is logged and skipped.
        """
        for ext in EXTENSIONS:
            try:
                await self.load_extension(ext)
                logger.info("Loaded extension: %s", ext)
            except Exception as exc:
                logger.error("Failed to load extension %s: %s", ext, exc)

        self.announcer.attach(self.bridge.buses[Platform.DISCORD])
        logger.info("Announcer attached to the Discord bus")

    async def on_ready(self) -> None:
        assert self.user is not None
        logger.info("Logged in as %s (ID: %s)", self.user.name, self.user.id)

        dev_guild_id = os.getenv("DEV_GUILD_ID")
        if dev_guild_id:
            guild = discord.Object(id=int(dev_guild_id))
            self.tree.copy_global_to(guild=guild)
            synced = await self.tree.sync(guild=guild)
            logger.info("Synced %d commands to dev guild %s", len(synced), dev_guild_id)
        else:
            synced = await self.tree.sync()
            logger.info("Synced %d commands globally", len(synced))

    async def close(self) -> None:
        """Finish in-flight deliveries, stop the throttle, disconnect."""
        logger.info("Bot shutting down…")
        await self.bridge.drain()
        self.announcer.detach()
        self.discord_view.close()
        await super().close()
