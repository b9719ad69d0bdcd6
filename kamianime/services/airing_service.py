"""
kamianime.services.airing_service — Airing Schedule Notifications
==================================================================

Every few hours the bot asks AniList which episodes air in the next
look-ahead window (6 h by default) and posts one embed per episode to
every guild that has airing notifications switched on.

The AniList call goes through :class:`httpx.AsyncClient`; the subscription
flags live in ``guild_settings``.  Fan-out is best-effort: one channel
failing to receive a message is logged and does not stop the others.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from kamianime.constants import AIRING_PAGE_SIZE, ANILIST_GRAPHQL_URL
from kamianime.database.engine import get_session
from kamianime.database.models import GuildSettings
from kamianime.errors import ValidationError

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

AIRING_QUERY = """
query ($page: Int, $perPage: Int, $from: Int, $to: Int) {
  Page(page: $page, perPage: $perPage) {
    airingSchedules(airingAt_greater: $from, airingAt_lesser: $to, sort: TIME) {
      episode
      airingAt
      media {
        id
        siteUrl
        title { romaji english }
        coverImage { medium }
      }
    }
  }
}
"""


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AiringEntry:
    media_id: int
    episode: int
    airing_at: datetime
    title_romaji: str | None = None
    title_english: str | None = None
    cover_url: str | None = None
    site_url: str | None = None

    @property
    def title(self) -> str:
        return self.title_english or self.title_romaji or f"Anime #{self.media_id}"


@dataclass
class FanOutReport:
    entries: int = 0
    channels: int = 0
    sent: int = 0
    failed: list[int] = field(default_factory=list)


# ---------------------------------------------------------------------------
# AniList
# ---------------------------------------------------------------------------
def parse_airing_response(payload: dict[str, Any]) -> list[AiringEntry]:
    """Turn an AniList GraphQL response into :class:`AiringEntry` rows.

    Entries missing their media block are skipped.
    """
    if payload.get("errors"):
        messages = "; ".join(str(e.get("message", e)) for e in payload["errors"])
        raise ValidationError(f"AniList returned errors: {messages}", reason="upstream_error")

    schedules = (((payload.get("data") or {}).get("Page") or {}).get("airingSchedules")) or []
    entries: list[AiringEntry] = []
    for item in schedules:
        media = item.get("media")
        if not media or item.get("airingAt") is None:
            continue
        title = media.get("title") or {}
        cover = media.get("coverImage") or {}
        entries.append(AiringEntry(
            media_id=int(media["id"]),
            episode=int(item.get("episode") or 0),
            airing_at=datetime.fromtimestamp(int(item["airingAt"]), tz=UTC),
            title_romaji=title.get("romaji"),
            title_english=title.get("english"),
            cover_url=cover.get("medium"),
            site_url=media.get("siteUrl"),
        ))
    return entries


async def fetch_airing_schedule(
    client: httpx.AsyncClient,
    *,
    now: datetime | None = None,
    window_seconds: int = 21600,
    per_page: int = AIRING_PAGE_SIZE,
) -> list[AiringEntry]:
    """Episodes airing in ``[now, now + window_seconds]`` (first page only)."""
    now = now or datetime.now(UTC)
    start = int(now.timestamp())
    end = int((now + timedelta(seconds=window_seconds)).timestamp())

    resp = await client.post(
        ANILIST_GRAPHQL_URL,
        json={
            "query": AIRING_QUERY,
            "variables": {"page": 1, "perPage": per_page, "from": start, "to": end},
        },
        headers={"Accept": "application/json"},
    )
    resp.raise_for_status()
    entries = parse_airing_response(resp.json())
    logger.info("AniList: %d episode(s) airing in the next %ds", len(entries), window_seconds)
    return entries


# ---------------------------------------------------------------------------
# Guild subscriptions (sync — run via run_db)
# ---------------------------------------------------------------------------
def get_guild_settings(engine: Engine, guild_id: int) -> dict[str, Any]:
    with Session(engine) as session:
        row = session.get(GuildSettings, guild_id)
        if row is None:
            return {"guild_id": guild_id, "airing_notifications": False,
                    "notification_channel_id": None}
        return {
            "guild_id": row.guild_id,
            "airing_notifications": row.airing_notifications,
            "notification_channel_id": row.notification_channel_id,
        }


def set_airing_notifications(
    engine: Engine,
    guild_id: int,
    enabled: bool,
    channel_id: int | None = None,
) -> dict[str, Any]:
    """Turn airing notifications on (into *channel_id*) or off for a guild."""
    if enabled and channel_id is None:
        raise ValidationError("A channel is required to enable airing notifications",
                              reason="missing_channel")
    with get_session(engine) as session:
        row = session.get(GuildSettings, guild_id)
        if row is None:
            row = GuildSettings(guild_id=guild_id)
            session.add(row)
        row.airing_notifications = enabled
        if channel_id is not None:
            row.notification_channel_id = channel_id
    logger.info("Guild %d airing notifications → %s (channel %s)", guild_id, enabled, channel_id)
    return get_guild_settings(engine, guild_id)


def subscribed_channels(engine: Engine) -> list[tuple[int, int]]:
    """``(guild_id, channel_id)`` for every guild with notifications on."""
    with Session(engine) as session:
        rows = session.execute(
            select(GuildSettings.guild_id, GuildSettings.notification_channel_id)
            .where(
                GuildSettings.airing_notifications.is_(True),
                GuildSettings.notification_channel_id.is_not(None),
            )
            .order_by(GuildSettings.guild_id)
        ).all()
        return [(r.guild_id, r.notification_channel_id) for r in rows]


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------
async def fan_out(
    entries: Iterable[AiringEntry],
    channel_ids: Iterable[int],
    send: Callable[[int, AiringEntry], Awaitable[None]],
) -> FanOutReport:
    """Call *send* for every (channel, entry) pair, surviving failures."""
    entries = list(entries)
    channel_ids = list(channel_ids)
    report = FanOutReport(entries=len(entries), channels=len(channel_ids))

    for channel_id in channel_ids:
        channel_failed = False
        for entry in entries:
            try:
                await send(channel_id, entry)
                report.sent += 1
            except Exception:
                channel_failed = True
                logger.exception(
                    "Failed to post airing notice for %s ep %d to channel %d",
                    entry.title, entry.episode, channel_id,
                )
        if channel_failed:
            report.failed.append(channel_id)

    logger.info(
        "Airing fan-out: %d sent across %d channel(s), %d channel(s) with failures",
        report.sent, report.channels, len(report.failed),
    )
    return report
