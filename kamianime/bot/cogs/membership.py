"""
kamianime.bot.cogs.membership — Guild Join Rewards
===================================================

When a member whose Discord account is linked joins the guild, the bridge
records a ``discord_join`` for their profile (one-time XP and the
*Community Member* badge).  Unlinked members are ignored.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord
from discord.ext import commands

from kamianime.errors import NotFoundError

if TYPE_CHECKING:
    from kamianime.bot.core import KamiBot

logger = logging.getLogger(__name__)


class Membership(commands.Cog, name="Membership"):
    def __init__(self, bot: KamiBot) -> None:
        self.bot = bot

    @commands.Cog.listener()
    async def on_member_join(self, member: discord.Member) -> None:
        if member.bot:
            return
        try:
            change = await self.bot.bridge.record_discord_join(member.id)
        except NotFoundError:
            logger.debug("Member %d joined without a linked profile", member.id)
            return
        except Exception:
            logger.exception(
                "Error processing member_join for %s", member.id,
                extra={"event_type": "discord_join", "user_id": member.id},
            )
            return

        if change is not None and change.xp_delta:
            logger.info(
                "Linked member joined: %s (ID: %d) +%d XP",
                member.display_name, member.id, change.xp_delta,
            )


async def setup(bot: KamiBot) -> None:
    await bot.add_cog(Membership(bot))
