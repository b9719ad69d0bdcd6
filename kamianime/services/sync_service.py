"""
kamianime.services.sync_service — Cross-Platform Sync Bridge
=============================================================

:class:`SyncBridge` is the single entry point for anything that changes a
profile from outside the process (website webhooks) or from the bot's own
commands.  It

1. authenticates the caller (shared API key, or an HMAC-SHA256 signature
   of the raw body) with constant-time comparison;
2. validates the body against the closed payload union
   (:mod:`kamianime.engine.webhooks`);
3. queues the work behind the user's FIFO lock — deliveries for one user
   are applied in the order they were accepted, different users run
   concurrently;
4. applies the mutation as one store transaction, deduplicated by the
   delivery's idempotency key;
5. publishes the resulting :class:`SyncEvent` list on the *receiving*
   platform's :class:`EventBus` (unless the user turned sync off).

Nothing is written when step 1 or 2 fails.  A delivery that takes longer
than ``webhook_timeout_seconds`` is reported to the caller as a timeout;
the bridge never retries it.  The user's queue stays blocked until the
store call has actually finished so ordering is preserved.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TypeVar
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from kamianime.database.engine import run_db
from kamianime.database.models import LibraryKind
from kamianime.engine.bus import EventBus
from kamianime.engine.events import Platform, ProfileUpdate, SyncEvent
from kamianime.engine.streak import activity_date
from kamianime.engine.webhooks import (
    AnimeWatchWebhook,
    BadgeUnlockWebhook,
    DiscordJoinWebhook,
    MangaReadWebhook,
    ProfileUpdateWebhook,
    QuestProgressWebhook,
    ReadinglistAddWebhook,
    UserLoginWebhook,
    WatchlistAddWebhook,
    WebhookPayload,
    XpGainWebhook,
    idempotency_key,
    parse_webhook,
)
from kamianime.errors import AuthError, NotFoundError
from kamianime.services import linking_service, profile_service
from kamianime.services.profile_service import ChangeFn, IdempotencyRecord, ProfileChange

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from kamianime.config import KamiConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

SIGNATURE_PREFIX = "sha256="
DEFAULT_TIMEOUT_SECONDS = 10.0


# ---------------------------------------------------------------------------
# Result objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Accepted:
    event_type: str
    user_id: str
    idempotency_key: str
    duplicate: bool = False
    xp: int | None = None
    level: int | None = None
    version: int | None = None
    events: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": "duplicate" if self.duplicate else "accepted",
            "event_type": self.event_type,
            "user_id": self.user_id,
            "idempotency_key": self.idempotency_key,
            "xp": self.xp,
            "level": self.level,
            "version": self.version,
            "events": self.events,
        }


# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------
def sign_body(secret: str, raw_body: bytes) -> str:
    """Signature header value a sender attaches to *raw_body*."""
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_credentials(
    secret: str,
    *,
    api_key: str | None = None,
    signature: str | None = None,
    raw_body: bytes | None = None,
) -> None:
    """Raise :class:`AuthError` unless *api_key* or *signature* is valid."""
    if not secret:
        raise AuthError("Webhook secret is not configured", reason="bad_auth")

    if signature:
        if raw_body is None:
            raise AuthError("Signature supplied without a body", reason="bad_auth")
        if hmac.compare_digest(signature.strip().lower(), sign_body(secret, raw_body)):
            return
        raise AuthError("Invalid webhook signature", reason="bad_auth")

    if api_key and hmac.compare_digest(api_key.encode("utf-8"), secret.encode("utf-8")):
        return
    raise AuthError("Missing or invalid webhook API key", reason="bad_auth")


# ---------------------------------------------------------------------------
# SyncBridge
# ---------------------------------------------------------------------------
class SyncBridge:
    """Dependency-injected bridge between the profile store and both buses."""

    def __init__(
        self,
        engine: Engine,
        buses: Mapping[Platform, EventBus],
        *,
        webhook_secret: str,
        tz: ZoneInfo | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        linking_code_ttl_seconds: int = linking_service.DEFAULT_CODE_TTL_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.engine = engine
        self.buses = dict(buses)
        self._secret = webhook_secret
        self.tz = tz or ZoneInfo("UTC")
        self.timeout_seconds = timeout_seconds
        self.linking_code_ttl_seconds = linking_code_ttl_seconds
        self._clock = clock or (lambda: datetime.now(UTC))
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._inflight: set[asyncio.Task] = set()

    @classmethod
    def from_config(
        cls,
        engine: Engine,
        buses: Mapping[Platform, EventBus],
        cfg: KamiConfig,
        *,
        webhook_secret: str,
    ) -> SyncBridge:
        return cls(
            engine,
            buses,
            webhook_secret=webhook_secret,
            tz=cfg.tz,
            timeout_seconds=cfg.webhook_timeout_seconds,
            linking_code_ttl_seconds=cfg.linking_code_ttl_seconds,
        )

    # ------------------------------------------------------------------
    # Per-user FIFO
    # ------------------------------------------------------------------
    def _acquire_slot(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        return lock

    def _release_slot(self, user_id: str) -> None:
        remaining = self._lock_users.get(user_id, 1) - 1
        if remaining <= 0:
            self._lock_users.pop(user_id, None)
            self._locks.pop(user_id, None)
        else:
            self._lock_users[user_id] = remaining

    def pending(self, user_id: str) -> int:
        """Deliveries queued or running for *user_id*."""
        return self._lock_users.get(user_id, 0)

    async def _serialized(
        self,
        user_id: str,
        work: Callable[[], Awaitable[T]],
        *,
        timeout: float | None = None,
    ) -> T:
        """Run *work* behind *user_id*'s FIFO lock.

        With a *timeout*, the caller stops waiting after that many seconds
        but the lock is held until *work* completes.
        """
        lock = self._acquire_slot(user_id)
        try:
            await lock.acquire()
        except BaseException:
            self._release_slot(user_id)
            raise

        timed_out = False
        task = asyncio.ensure_future(work())
        self._inflight.add(task)

        def _done(t: asyncio.Task) -> None:
            self._inflight.discard(t)
            lock.release()
            self._release_slot(user_id)
            if not t.cancelled() and t.exception() is not None and timed_out:
                logger.error(
                    "Delivery for %s failed after the caller timed out",
                    user_id, exc_info=t.exception(),
                )

        task.add_done_callback(_done)
        if timeout is None:
            return await asyncio.shield(task)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except TimeoutError:
            timed_out = True
            logger.warning("Delivery for %s exceeded %.1fs; not retried", user_id, timeout)
            raise

    async def drain(self) -> None:
        """Wait for every in-flight delivery to finish (used at shutdown)."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------
    async def publish(self, events: list[SyncEvent]) -> None:
        for event in events:
            bus = self.buses.get(event.target)
            if bus is None:
                logger.debug("No bus for %s; dropping %s", event.target, event.type)
                continue
            await bus.publish(event)

    async def _propagate(self, change: ProfileChange, *, always: bool = False) -> list[SyncEvent]:
        target = change.platform.other
        if not change.sync_enabled and not always:
            logger.info("Sync disabled for %s; not propagating to %s", change.user_id, target)
            return []
        events = change.to_events(target)
        await self.publish(events)
        return events

    async def apply(
        self,
        user_id: str,
        change_fn: ChangeFn,
        *,
        source: Platform,
        reason: str = "",
        idempotency: IdempotencyRecord | None = None,
        always_propagate: bool = False,
        timeout: float | None = None,
    ) -> tuple[ProfileChange | None, list[SyncEvent]]:
        """Apply *change_fn* to *user_id* in FIFO order and propagate it."""

        async def _work() -> tuple[ProfileChange | None, list[SyncEvent]]:
            change = await run_db(
                profile_service.mutate_profile,
                self.engine, user_id, change_fn,
                platform=source, reason=reason, idempotency=idempotency,
            )
            if change is None:
                return None, []
            events = await self._propagate(change, always=always_propagate)
            return change, events

        return await self._serialized(user_id, _work, timeout=timeout)

    # ------------------------------------------------------------------
    # Webhook ingress
    # ------------------------------------------------------------------
    def authenticate(
        self,
        *,
        api_key: str | None = None,
        signature: str | None = None,
        raw_body: bytes | None = None,
    ) -> None:
        verify_credentials(self._secret, api_key=api_key, signature=signature, raw_body=raw_body)

    async def ingest_webhook(
        self,
        body: Any,
        *,
        api_key: str | None = None,
        signature: str | None = None,
        raw_body: bytes | None = None,
        source: Platform = Platform.WEBSITE,
    ) -> Accepted:
        """Authenticate, validate, apply and republish one webhook delivery.

        ``api_key`` defaults to the ``apiKey`` field of the body.

        Raises
        ------
        AuthError
            Bad or missing credential (``reason="bad_auth"``).
        ValidationError
            Unknown event type or malformed payload.
        NotFoundError
            Unknown user.
        TimeoutError
            The store did not finish within ``timeout_seconds``.
        """
        if api_key is None and signature is None and isinstance(body, dict):
            api_key = body.get("apiKey", body.get("api_key"))
        self.authenticate(api_key=api_key, signature=signature, raw_body=raw_body)

        payload = parse_webhook(body)
        key = idempotency_key(payload, received_on=activity_date(self._clock(), self.tz))
        change_fn = self._change_for(payload)

        change, events = await self.apply(
            payload.user_id,
            change_fn,
            source=source,
            reason=payload.event_type,
            idempotency=IdempotencyRecord(key=key, event_type=payload.event_type, source=source),
            timeout=self.timeout_seconds,
        )

        if change is None:
            return Accepted(
                event_type=payload.event_type,
                user_id=payload.user_id,
                idempotency_key=key,
                duplicate=True,
            )
        return Accepted(
            event_type=payload.event_type,
            user_id=payload.user_id,
            idempotency_key=key,
            xp=change.new_xp,
            level=change.new_level,
            version=change.version,
            events=[e.type.value for e in events],
        )

    def _local(self, at: datetime | None) -> datetime:
        at = at or self._clock()
        if at.tzinfo is None:
            at = at.replace(tzinfo=UTC)
        return at.astimezone(self.tz)

    def _change_for(self, payload: WebhookPayload) -> ChangeFn:
        """Map a validated payload onto its profile change function."""
        match payload:
            case XpGainWebhook(data=data):
                return profile_service.xp_gain(data.amount, data.action)
            case AnimeWatchWebhook(data=data):
                local = self._local(data.watched_at)
                return profile_service.episode_watch(
                    data.anime_id, data.episode,
                    today=activity_date(local, self.tz),
                    local_time=local,
                    genres=data.genres,
                    title=data.title,
                )
            case MangaReadWebhook(data=data):
                return profile_service.chapter_read(
                    data.manga_id, data.chapter,
                    today=activity_date(self._local(data.read_at), self.tz),
                    title=data.title,
                )
            case UserLoginWebhook(data=data):
                return profile_service.daily_login(
                    today=activity_date(self._local(data.at), self.tz),
                )
            case BadgeUnlockWebhook(data=data):
                return profile_service.badge_grant(data.badge_id)
            case QuestProgressWebhook(data=data):
                return profile_service.quest_progress(
                    data.quest_id,
                    increment=data.increment,
                    target=data.target,
                    xp_reward=data.xp_reward,
                )
            case ProfileUpdateWebhook(data=data):
                return profile_service.profile_edit(
                    display_name=data.display_name,
                    avatar_url=data.avatar_url,
                    sync_enabled=data.sync_enabled,
                )
            case WatchlistAddWebhook(data=data):
                return profile_service.library_add(
                    LibraryKind.ANIME, data.anime_id,
                    today=activity_date(self._clock(), self.tz), title=data.title,
                )
            case ReadinglistAddWebhook(data=data):
                return profile_service.library_add(
                    LibraryKind.MANGA, data.manga_id,
                    today=activity_date(self._clock(), self.tz), title=data.title,
                )
            case DiscordJoinWebhook():
                return profile_service.discord_join()
        raise AssertionError(f"unhandled payload {type(payload).__name__}")  # pragma: no cover

    # ------------------------------------------------------------------
    # Force sync
    # ------------------------------------------------------------------
    async def force_sync(
        self,
        user_id: str,
        target: Platform | None = None,
        *,
        source: Platform = Platform.WEBSITE,
    ) -> dict[str, Any]:
        """Reload the stored profile and publish a full ``profile_update``.

        Publishes to *target*, or to both platforms when it is ``None``.
        """

        async def _work() -> dict[str, Any]:
            snapshot = await run_db(profile_service.load_snapshot, self.engine, user_id)
            targets = [target] if target is not None else list(Platform)
            await self.publish([
                ProfileUpdate(
                    user_id=user_id,
                    version=snapshot["sync_version"],
                    source=source,
                    target=t,
                    snapshot=snapshot,
                )
                for t in targets
            ])
            return snapshot

        snapshot = await self._serialized(user_id, _work)
        logger.info("Force-synced %s (v%d)", user_id, snapshot["sync_version"])
        return snapshot

    # ------------------------------------------------------------------
    # Linking (bot and website entry points)
    # ------------------------------------------------------------------
    async def issue_linking_code(self, user_id: str) -> linking_service.IssuedCode:
        return await run_db(
            linking_service.issue_linking_code,
            self.engine, user_id,
            ttl_seconds=self.linking_code_ttl_seconds,
        )

    async def redeem_linking_code(
        self,
        code: str,
        discord_id: int,
        discord_username: str | None = None,
    ) -> linking_service.LinkResult:
        """Redeem from Discord; the website hears ``account_linked``.

        The code's owner is looked up first so the link is committed and
        published inside that user's FIFO queue.
        """

        async def _redeem() -> linking_service.LinkResult:
            return await run_db(
                linking_service.redeem_linking_code,
                self.engine, code, discord_id, discord_username,
                ttl_seconds=self.linking_code_ttl_seconds,
            )

        owner = await run_db(linking_service.linking_code_owner, self.engine, code)
        if owner is None:
            # Raises invalid_code / not_found.
            return await _redeem()

        async def _work() -> linking_service.LinkResult:
            result = await _redeem()
            await self._propagate(result.change, always=True)
            return result

        return await self._serialized(owner, _work)

    async def unlink(
        self,
        *,
        discord_id: int | None = None,
        user_id: str | None = None,
    ) -> ProfileChange:
        if user_id is None and discord_id is not None:
            user_id = await self.resolve_discord_user(discord_id)
        if user_id is None:
            return await run_db(linking_service.unlink_account, self.engine)

        async def _work() -> ProfileChange:
            change = await run_db(
                linking_service.unlink_account, self.engine,
                discord_id=discord_id, user_id=user_id,
            )
            await self._propagate(change, always=True)
            return change

        return await self._serialized(user_id, _work)

    async def sync_status(self, user_id: str) -> dict[str, Any]:
        return await run_db(linking_service.get_sync_status, self.engine, user_id)

    # ------------------------------------------------------------------
    # Discord-originated actions
    # ------------------------------------------------------------------
    async def resolve_discord_user(self, discord_id: int) -> str:
        def _lookup() -> str:
            with Session(self.engine) as session:
                profile = profile_service.get_profile_by_discord(session, discord_id)
                if profile is None:
                    raise NotFoundError(
                        "This Discord account is not linked", reason="not_linked",
                    )
                return profile.id
        return await run_db(_lookup)

    async def record_discord_join(self, discord_id: int) -> ProfileChange | None:
        user_id = await self.resolve_discord_user(discord_id)
        change, _ = await self.apply(
            user_id, profile_service.discord_join(),
            source=Platform.DISCORD, reason="discord_join",
        )
        return change
