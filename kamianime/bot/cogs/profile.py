"""
kamianime.bot.cogs.profile — Profile & Leaderboard Commands
============================================================

- /me          — XP, level, streak and counters
- /streak      — current and best daily streak
- /badges      — unlocked badges
- /leaderboard — top members by XP

Profiles are read from the bot's :class:`ProfileView`.  A user the view has
never seen (or has only partial data for) is force-synced to Discord first,
which fills the view from the store.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import discord
from discord import app_commands
from discord.ext import commands

from kamianime.bot.cogs.link import error_message
from kamianime.database.engine import run_db
from kamianime.engine.events import Platform
from kamianime.errors import KamiError
from kamianime.services.embeds import (
    build_badges_embed,
    build_leaderboard_embed,
    build_profile_embed,
    build_streak_embed,
)
from kamianime.services.profile_service import get_leaderboard

if TYPE_CHECKING:
    from kamianime.bot.core import KamiBot


class Profile(commands.Cog, name="Profile"):
    """Read-only views of a linked member's progression."""

    def __init__(self, bot: KamiBot) -> None:
        self.bot = bot

    async def _snapshot_for(self, discord_id: int) -> dict[str, Any]:
        user_id = await self.bot.bridge.resolve_discord_user(discord_id)
        snapshot = self.bot.discord_view.get(user_id)
        if snapshot is None or "display_name" not in snapshot:
            snapshot = await self.bot.bridge.force_sync(
                user_id, Platform.DISCORD, source=Platform.DISCORD,
            )
        return snapshot

    async def _reply(self, interaction: discord.Interaction, build) -> None:
        try:
            snapshot = await self._snapshot_for(interaction.user.id)
        except KamiError as exc:
            await interaction.response.send_message(error_message(exc), ephemeral=True)
            return
        await interaction.response.send_message(embed=build(snapshot))

    # -------------------------------------------------------------------
    # /me
    # -------------------------------------------------------------------
    @app_commands.command(name="me", description="Show your KamiAnime profile.")
    async def me(self, interaction: discord.Interaction) -> None:
        avatar = interaction.user.display_avatar.url
        await self._reply(
            interaction,
            lambda snap: build_profile_embed(snap, snap.get("avatar_url") or avatar),
        )

    @app_commands.command(name="streak", description="Show your daily streak.")
    async def streak(self, interaction: discord.Interaction) -> None:
        await self._reply(interaction, build_streak_embed)

    @app_commands.command(name="badges", description="Show the badges you've unlocked.")
    async def badges(self, interaction: discord.Interaction) -> None:
        await self._reply(
            interaction,
            lambda snap: build_badges_embed(snap["display_name"], snap.get("badges", [])),
        )

    # -------------------------------------------------------------------
    # /leaderboard
    # -------------------------------------------------------------------
    @app_commands.command(name="leaderboard", description="Top members by XP.")
    @app_commands.describe(page="Page number (10 members per page)")
    async def leaderboard(
        self,
        interaction: discord.Interaction,
        page: app_commands.Range[int, 1, 100] = 1,
    ) -> None:
        data = await run_db(get_leaderboard, self.bot.engine, page=page, page_size=10)
        await interaction.response.send_message(embed=build_leaderboard_embed(data))


async def setup(bot: KamiBot) -> None:
    await bot.add_cog(Profile(bot))
