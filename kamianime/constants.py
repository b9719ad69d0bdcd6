"""
kamianime.constants — Shared Constants
=======================================

Single source of truth for gameplay values and presentation constants.
Import from here instead of duplicating in cogs, services, and routes.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Leveling
# ---------------------------------------------------------------------------
XP_PER_LEVEL: int = 1000


# ---------------------------------------------------------------------------
# XP awarded per action
# ---------------------------------------------------------------------------
XP_WATCH_EPISODE: int = 10
XP_READ_CHAPTER: int = 15
XP_WATCHLIST_ADD: int = 5
XP_READINGLIST_ADD: int = 5
XP_ACCOUNT_LINK: int = 100
XP_DAILY_LOGIN: int = 5
XP_DISCORD_JOIN: int = 50

# Upper bound on a single xp_gain webhook
MAX_XP_PER_EVENT: int = 10_000


# ---------------------------------------------------------------------------
# Linking codes
# ---------------------------------------------------------------------------
LINKING_CODE_LENGTH: int = 6
LINKING_CODE_ALPHABET: str = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"


# ---------------------------------------------------------------------------
# Optimistic-concurrency retries for profile read-modify-write
# ---------------------------------------------------------------------------
MAX_CAS_ATTEMPTS: int = 5


# ---------------------------------------------------------------------------
# Presentation (used by bot embeds, announcement service)
# ---------------------------------------------------------------------------
RARITY_EMOJI: dict[str, str] = {
    "common": "⚪",        # ⚪
    "rare": "\U0001f535",      # 🔵
    "epic": "\U0001f7e3",      # 🟣
    "legendary": "\U0001f7e1", # 🟡
}

RANK_BADGES: list[str] = ["\U0001f947", "\U0001f948", "\U0001f949"]  # 🥇🥈🥉

BRAND_COLOR: int = 0x6366F1
AIRING_COLOR: int = 0xFF6B6B


# ---------------------------------------------------------------------------
# AniList
# ---------------------------------------------------------------------------
ANILIST_GRAPHQL_URL: str = "https://graphql.anilist.co"
AIRING_PAGE_SIZE: int = 10
