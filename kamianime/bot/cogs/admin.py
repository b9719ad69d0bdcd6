"""
kamianime.bot.cogs.admin — Admin Slash Commands
================================================

- /airing-notify — switch airing-schedule notifications on or off for
  this server and choose the channel they go to.

Requires the configured ``admin_role_id``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord
from discord import app_commands
from discord.ext import commands

from kamianime.bot.cogs.link import error_message
from kamianime.database.engine import run_db
from kamianime.errors import KamiError
from kamianime.services.airing_service import set_airing_notifications

if TYPE_CHECKING:
    from kamianime.bot.core import KamiBot

logger = logging.getLogger(__name__)


def is_admin():
    """Check that the invoking member holds the configured admin role."""
    async def predicate(interaction: discord.Interaction) -> bool:
        bot: KamiBot = interaction.client  # type: ignore[assignment]
        if not interaction.user or not hasattr(interaction.user, "roles"):
            return False
        admin_role_id = bot.cfg.admin_role_id
        return any(role.id == admin_role_id for role in interaction.user.roles)
    return app_commands.check(predicate)


class Admin(commands.Cog, name="Admin"):
    def __init__(self, bot: KamiBot) -> None:
        self.bot = bot

    @app_commands.command(
        name="airing-notify",
        description="Toggle airing-schedule notifications for this server.",
    )
    @app_commands.describe(
        enabled="Turn notifications on or off",
        channel="Channel to post airing notices in (required when enabling)",
    )
    @app_commands.guild_only()
    @is_admin()
    async def airing_notify(
        self,
        interaction: discord.Interaction,
        enabled: bool,
        channel: discord.TextChannel | None = None,
    ) -> None:
        assert interaction.guild_id is not None
        try:
            settings = await run_db(
                set_airing_notifications,
                self.bot.engine,
                interaction.guild_id,
                enabled,
                channel.id if channel else None,
            )
        except KamiError as exc:
            await interaction.response.send_message(error_message(exc), ephemeral=True)
            return

        if settings["airing_notifications"]:
            msg = f"✅ Airing notifications will be posted in <#{settings['notification_channel_id']}>."
        else:
            msg = "✅ Airing notifications are off."
        logger.info(
            "%s set airing notifications=%s in guild %d",
            interaction.user, enabled, interaction.guild_id,
        )
        await interaction.response.send_message(msg, ephemeral=True)

    async def cog_app_command_error(
        self,
        interaction: discord.Interaction,
        error: app_commands.AppCommandError,
    ) -> None:
        if isinstance(error, app_commands.CheckFailure):
            await interaction.response.send_message(
                "❌ You need the admin role to use this command.", ephemeral=True,
            )
            return
        logger.error("Admin command failed: %s", error, exc_info=error)


async def setup(bot: KamiBot) -> None:
    await bot.add_cog(Admin(bot))
