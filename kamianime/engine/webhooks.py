"""
kamianime.engine.webhooks — Webhook Payload Schemas
====================================================

The closed set of webhook bodies the sync bridge accepts.  A body is::

    {"eventType": "...", "userId": "...", "data": {...},
     "eventId": "...optional...", "apiKey": "...optional..."}

``eventType`` selects the variant; ``data`` must match that variant's
shape exactly (unknown keys are rejected).  Keys may be sent in camelCase
or snake_case.
"""

from __future__ import annotations

import hashlib
import json
from datetime import date, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from kamianime.constants import MAX_XP_PER_EVENT
from kamianime.engine.badges import BADGES_BY_ID
from kamianime.errors import ValidationError

__all__ = [
    "WebhookPayload",
    "idempotency_key",
    "parse_webhook",
]


class _Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        str_strip_whitespace=True,
    )


# ---------------------------------------------------------------------------
# data shapes
# ---------------------------------------------------------------------------
class XpGainData(_Model):
    amount: int = Field(ge=0, le=MAX_XP_PER_EVENT)
    action: str = Field(default="", max_length=64)


class AnimeWatchData(_Model):
    anime_id: str = Field(min_length=1, max_length=64)
    episode: int | None = Field(default=None, ge=0)
    title: str | None = Field(default=None, max_length=300)
    genres: list[str] = Field(default_factory=list, max_length=50)
    watched_at: datetime | None = None


class MangaReadData(_Model):
    manga_id: str = Field(min_length=1, max_length=64)
    chapter: str | None = Field(default=None, max_length=32)
    title: str | None = Field(default=None, max_length=300)
    read_at: datetime | None = None


class UserLoginData(_Model):
    at: datetime | None = None


class BadgeUnlockData(_Model):
    badge_id: str

    @field_validator("badge_id")
    @classmethod
    def _known_badge(cls, value: str) -> str:
        if value not in BADGES_BY_ID:
            raise ValueError(f"unknown badge id {value!r}")
        return value


class QuestProgressData(_Model):
    quest_id: str = Field(min_length=1, max_length=64)
    increment: int = Field(default=1, ge=0)
    target: int = Field(default=1, ge=1)
    xp_reward: int = Field(default=0, ge=0, le=MAX_XP_PER_EVENT)


class ProfileUpdateData(_Model):
    display_name: str | None = Field(default=None, min_length=1, max_length=100)
    avatar_url: str | None = Field(default=None, max_length=500)
    sync_enabled: bool | None = None

    @model_validator(mode="after")
    def _not_empty(self) -> ProfileUpdateData:
        if self.display_name is None and self.avatar_url is None and self.sync_enabled is None:
            raise ValueError("profile_update needs at least one field")
        return self


class WatchlistAddData(_Model):
    anime_id: str = Field(min_length=1, max_length=64)
    title: str | None = Field(default=None, max_length=300)


class ReadinglistAddData(_Model):
    manga_id: str = Field(min_length=1, max_length=64)
    title: str | None = Field(default=None, max_length=300)


class DiscordJoinData(_Model):
    guild_id: int | None = None


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------
class _Envelope(_Model):
    user_id: str = Field(min_length=1, max_length=128)
    event_id: str | None = Field(default=None, min_length=1, max_length=100)
    api_key: str | None = Field(default=None, repr=False, exclude=True)


class XpGainWebhook(_Envelope):
    event_type: Literal["xp_gain"]
    data: XpGainData


class AnimeWatchWebhook(_Envelope):
    event_type: Literal["anime_watch"]
    data: AnimeWatchData


class MangaReadWebhook(_Envelope):
    event_type: Literal["manga_read"]
    data: MangaReadData


class UserLoginWebhook(_Envelope):
    event_type: Literal["user_login"]
    data: UserLoginData = Field(default_factory=UserLoginData)


class BadgeUnlockWebhook(_Envelope):
    event_type: Literal["badge_unlock"]
    data: BadgeUnlockData


class QuestProgressWebhook(_Envelope):
    event_type: Literal["quest_progress"]
    data: QuestProgressData


class ProfileUpdateWebhook(_Envelope):
    event_type: Literal["profile_update"]
    data: ProfileUpdateData


class WatchlistAddWebhook(_Envelope):
    event_type: Literal["watchlist_add"]
    data: WatchlistAddData


class ReadinglistAddWebhook(_Envelope):
    event_type: Literal["readinglist_add"]
    data: ReadinglistAddData


class DiscordJoinWebhook(_Envelope):
    event_type: Literal["discord_join"]
    data: DiscordJoinData = Field(default_factory=DiscordJoinData)


WebhookPayload = Annotated[
    XpGainWebhook
    | AnimeWatchWebhook
    | MangaReadWebhook
    | UserLoginWebhook
    | BadgeUnlockWebhook
    | QuestProgressWebhook
    | ProfileUpdateWebhook
    | WatchlistAddWebhook
    | ReadinglistAddWebhook
    | DiscordJoinWebhook,
    Field(discriminator="event_type"),
]

_ADAPTER: TypeAdapter[WebhookPayload] = TypeAdapter(WebhookPayload)

EVENT_TYPES: frozenset[str] = frozenset({
    "xp_gain", "anime_watch", "manga_read", "user_login", "badge_unlock",
    "quest_progress", "profile_update", "watchlist_add", "readinglist_add",
    "discord_join",
})


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------
def parse_webhook(body: Any) -> WebhookPayload:
    """Validate *body* against the closed payload union.

    Raises :class:`kamianime.errors.ValidationError` with
    ``reason="malformed"`` (or ``"unknown_event"`` for an unknown tag).
    """
    if not isinstance(body, dict):
        raise ValidationError("Webhook body must be a JSON object", reason="malformed")

    event_type = body.get("eventType", body.get("event_type"))
    if event_type not in EVENT_TYPES:
        raise ValidationError(f"Unknown event type: {event_type!r}", reason="unknown_event")

    try:
        return _ADAPTER.validate_python(body)
    except PydanticValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ValidationError(f"Malformed {event_type} payload: {errors}", reason="malformed") from None


def _occurred_at(payload: WebhookPayload) -> datetime | None:
    """Sender-supplied event time, for the variants that carry one."""
    match payload:
        case AnimeWatchWebhook(data=data):
            return data.watched_at
        case MangaReadWebhook(data=data):
            return data.read_at
        case UserLoginWebhook(data=data):
            return data.at
    return None


def idempotency_key(payload: WebhookPayload, received_on: date | None = None) -> str:
    """``eventId`` when the sender supplied one, otherwise a content hash.

    Without an ``eventId`` two identical deliveries are the same event only
    when they describe the same moment: the payload's own timestamp when it
    has one, else *received_on* (the receipt day in the streak timezone).
    So a bare ``user_login`` counts once per day rather than once ever.
    """
    if payload.event_id:
        return f"evt:{payload.event_id}"
    content: dict[str, Any] = {
        "eventType": payload.event_type,
        "userId": payload.user_id,
        "data": payload.data.model_dump(mode="json", by_alias=True),
    }
    if _occurred_at(payload) is None and received_on is not None:
        content["day"] = received_on.isoformat()
    canonical = json.dumps(content, sort_keys=True, separators=(",", ":"))
    return "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()
