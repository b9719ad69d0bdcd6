"""
kamianime.bot.cogs.link — Account Linking Commands
===================================================

- /link <code> — redeem a code generated on the website
- /unlink      — remove the Discord link

Replies are ephemeral.  Domain errors become a one-line explanation.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord
from discord import app_commands
from discord.ext import commands

from kamianime.errors import KamiError
from kamianime.services.embeds import build_link_success_embed

if TYPE_CHECKING:
    from kamianime.bot.core import KamiBot

logger = logging.getLogger(__name__)

_REASON_MESSAGES: dict[str, str] = {
    "invalid_code": "That doesn't look like a linking code. Codes are 6 letters or digits.",
    "not_found": "That code doesn't exist. Generate a new one on the website.",
    "expired": "That code has expired. Generate a new one on the website.",
    "already_used": "That code has already been used.",
    "already_linked": "This account is already linked.",
    "not_linked": "Your Discord account isn't linked to a KamiAnime profile.",
}


def error_message(exc: KamiError) -> str:
    """User-facing text for a domain error."""
    return "❌ " + _REASON_MESSAGES.get(exc.reason, exc.message)


class Link(commands.Cog, name="Link"):
    """Website ↔ Discord account linking."""

    def __init__(self, bot: KamiBot) -> None:
        self.bot = bot

    @app_commands.command(name="link", description="Link your KamiAnime account.")
    @app_commands.describe(code="The 6-character code shown on the website")
    async def link(self, interaction: discord.Interaction, code: str) -> None:
        await interaction.response.defer(ephemeral=True, thinking=True)
        try:
            result = await self.bot.bridge.redeem_linking_code(
                code, interaction.user.id, interaction.user.name,
            )
        except KamiError as exc:
            logger.info("Link attempt by %s rejected: %s", interaction.user.id, exc.reason)
            await interaction.followup.send(error_message(exc), ephemeral=True)
            return

        display_name = result.change.snapshot.get("display_name", interaction.user.display_name)
        await interaction.followup.send(
            embed=build_link_success_embed(display_name, result.xp_awarded),
            ephemeral=True,
        )

    @app_commands.command(name="unlink", description="Unlink your KamiAnime account.")
    async def unlink(self, interaction: discord.Interaction) -> None:
        await interaction.response.defer(ephemeral=True)
        try:
            await self.bot.bridge.unlink(discord_id=interaction.user.id)
        except KamiError as exc:
            await interaction.followup.send(error_message(exc), ephemeral=True)
            return
        await interaction.followup.send("✅ Your account has been unlinked.", ephemeral=True)


async def setup(bot: KamiBot) -> None:
    await bot.add_cog(Link(bot))
