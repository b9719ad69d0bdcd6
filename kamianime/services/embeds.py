"""
kamianime.services.embeds — Discord embed builders
===================================================

All embed construction lives here so cogs and the announcement service
only supply data.
"""

from __future__ import annotations

from typing import Any

import discord

from kamianime.constants import AIRING_COLOR, BRAND_COLOR, RANK_BADGES, RARITY_EMOJI
from kamianime.engine.badges import BADGES, Badge
from kamianime.engine.progression import progress_fraction, xp_to_next_level
from kamianime.services.airing_service import AiringEntry


def _progress_bar(xp: int, width: int = 10) -> str:
    filled = min(width, int(progress_fraction(xp) * width))
    return "▰" * filled + "▱" * (width - filled)


def build_level_up_embed(discord_id: int, new_level: int, xp: int) -> discord.Embed:
    return discord.Embed(
        title="⚡ Level Up!",
        description=(
            f"<@{discord_id}> reached **Level {new_level}**!\n"
            f"{xp:,} XP total"
        ),
        color=discord.Color.gold(),
    )


def build_badge_embed(discord_id: int, badge: Badge) -> discord.Embed:
    emoji = RARITY_EMOJI.get(badge.rarity.value, "⚪")
    embed = discord.Embed(
        title="\U0001f3c6 Badge Unlocked!",
        description=(
            f"<@{discord_id}> earned {badge.icon} **{badge.name}** "
            f"{emoji} *{badge.rarity.value}*\n\n*{badge.description}*"
        ),
        color=discord.Color.purple(),
    )
    embed.add_field(name="Reward", value=f"+{badge.xp_reward} XP", inline=False)
    return embed


def build_link_success_embed(display_name: str, xp_awarded: int) -> discord.Embed:
    embed = discord.Embed(
        title="\U0001f517 Account Linked",
        description=f"Your Discord account is now linked to **{display_name}** on KamiAnime.",
        color=discord.Color.green(),
    )
    if xp_awarded:
        embed.add_field(name="Bonus", value=f"+{xp_awarded} XP", inline=False)
    return embed


def build_profile_embed(snapshot: dict[str, Any], avatar_url: str | None = None) -> discord.Embed:
    xp = snapshot["xp"]
    embed = discord.Embed(
        title=f"{snapshot['display_name']}'s Profile",
        color=BRAND_COLOR,
    )
    embed.add_field(name="Level", value=str(snapshot["level"]), inline=True)
    embed.add_field(name="XP", value=f"{xp:,}", inline=True)
    embed.add_field(name="Streak", value=f"\U0001f525 {snapshot['streak']} days", inline=True)
    embed.add_field(
        name="Progress",
        value=f"{_progress_bar(xp)} {xp_to_next_level(xp):,} XP to next level",
        inline=False,
    )
    embed.add_field(name="Episodes", value=str(snapshot["episodes_watched"]), inline=True)
    embed.add_field(name="Chapters", value=str(snapshot["chapters_read"]), inline=True)
    embed.add_field(name="Badges", value=str(len(snapshot["badges"])), inline=True)
    if snapshot.get("is_premium"):
        embed.set_footer(text="⭐ Premium member")
    if avatar_url:
        embed.set_thumbnail(url=avatar_url)
    return embed


def build_streak_embed(snapshot: dict[str, Any]) -> discord.Embed:
    streak = snapshot["streak"]
    best = snapshot["max_streak"]
    if streak == 0:
        line = "No active streak. Watch or read something today to start one!"
    else:
        line = f"You're on a **{streak}-day** streak."
    embed = discord.Embed(title="\U0001f525 Daily Streak", description=line, color=discord.Color.orange())
    embed.add_field(name="Best", value=f"{best} days", inline=True)
    if snapshot.get("last_active_date"):
        embed.add_field(name="Last active", value=snapshot["last_active_date"], inline=True)
    return embed


def build_badges_embed(display_name: str, owned: set[str] | list[str]) -> discord.Embed:
    owned = set(owned)
    embed = discord.Embed(
        title=f"{display_name}'s Badges ({len(owned)}/{len(BADGES)})",
        color=discord.Color.purple(),
    )
    unlocked = [b for b in BADGES if b.id in owned]
    if unlocked:
        embed.description = "\n".join(
            f"{b.icon} **{b.name}** {RARITY_EMOJI.get(b.rarity.value, '')}" for b in unlocked
        )
    else:
        embed.description = "No badges yet."
    return embed


def build_leaderboard_embed(page: dict[str, Any]) -> discord.Embed:
    lines = []
    for entry in page["entries"]:
        rank = entry["rank"]
        marker = RANK_BADGES[rank - 1] if rank <= len(RANK_BADGES) else f"**#{rank}**"
        lines.append(
            f"{marker} {entry['display_name']} | Lv {entry['level']} | {entry['xp']:,} XP"
        )
    embed = discord.Embed(
        title="\U0001f3c6 Leaderboard",
        description="\n".join(lines) or "Nobody has earned XP yet.",
        color=BRAND_COLOR,
    )
    embed.set_footer(text=f"Page {page['page']} | {page['total']} members")
    return embed


def build_airing_embed(entry: AiringEntry) -> discord.Embed:
    embed = discord.Embed(
        title="\U0001f4fa Anime Airing Soon!",
        description=f"**{entry.title}**\nEpisode {entry.episode}",
        color=AIRING_COLOR,
        url=entry.site_url,
        timestamp=entry.airing_at,
    )
    unix = int(entry.airing_at.timestamp())
    embed.add_field(name="Airs", value=f"<t:{unix}:R>", inline=True)
    if entry.cover_url:
        embed.set_thumbnail(url=entry.cover_url)
    return embed
