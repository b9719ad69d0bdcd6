"""
kamianime.engine.bus — Typed Event Bus & Profile Views
=======================================================

Each platform owns one :class:`EventBus`.  The sync bridge publishes
:class:`~kamianime.engine.events.SyncEvent` instances on the bus of the
platform that should *receive* them; consumers register callbacks per
event type (or for every type).

Callbacks may be plain functions or coroutine functions.  A failing
callback is logged and does not prevent the remaining callbacks from
running, nor does it fail the publish.

:class:`ProfileView` is the per-platform cached view of user profiles
(the website's client cache, the bot's in-memory view).  It subscribes to
a bus and applies events in version order, dropping anything older than
what it already holds.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any

from kamianime.engine.events import (
    AccountLinked,
    AccountUnlinked,
    BadgeUnlock,
    LevelUp,
    Platform,
    ProfileUpdate,
    QuestProgress,
    StreakUpdate,
    SyncEvent,
    SyncEventType,
    XpUpdate,
)

logger = logging.getLogger(__name__)

Handler = Callable[[SyncEvent], Awaitable[None] | None]


# ---------------------------------------------------------------------------
# EventBus
# ---------------------------------------------------------------------------
class EventBus:
    """In-process publish/subscribe over the closed SyncEvent set."""

    def __init__(self, platform: Platform) -> None:
        self.platform = platform
        self._handlers: dict[SyncEventType | None, list[Handler]] = defaultdict(list)

    def subscribe(
        self,
        handler: Handler,
        event_type: SyncEventType | None = None,
    ) -> Callable[[], None]:
        """Register *handler* for *event_type* (``None`` = every type).

        Returns a zero-argument callable that removes the subscription.
        """
        self._handlers[event_type].append(handler)
        logger.debug(
            "Subscribed %r to %s on %s bus",
            handler, event_type or "*", self.platform,
        )

        def _unsubscribe() -> None:
            self.unsubscribe(handler, event_type)

        return _unsubscribe

    def unsubscribe(self, handler: Handler, event_type: SyncEventType | None = None) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def handler_count(self, event_type: SyncEventType | None = None) -> int:
        return len(self._handlers.get(event_type, []))

    async def publish(self, event: SyncEvent) -> None:
        """Deliver *event* to its type's handlers, then to catch-all handlers."""
        handlers = [*self._handlers.get(event.type, []), *self._handlers.get(None, [])]
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "Handler %r failed for %s (user=%s, v%d) on %s bus",
                    handler, event.type, event.user_id, event.version, self.platform,
                )


# ---------------------------------------------------------------------------
# ProfileView — version-aware cache fed by a bus
# ---------------------------------------------------------------------------
class ProfileView:
    """Cached profile snapshots for one platform.

    Snapshots are plain dicts with the same keys as
    :func:`kamianime.services.profile_service.profile_snapshot`.
    """

    def __init__(self, bus: EventBus) -> None:
        self.platform = bus.platform
        self._profiles: dict[str, dict[str, Any]] = {}
        self._versions: dict[str, int] = {}
        self.stale_dropped = 0
        self._unsubscribe = bus.subscribe(self.apply)

    def close(self) -> None:
        self._unsubscribe()

    def get(self, user_id: str) -> dict[str, Any] | None:
        snap = self._profiles.get(user_id)
        return dict(snap) if snap is not None else None

    def version(self, user_id: str) -> int:
        return self._versions.get(user_id, 0)

    def apply(self, event: SyncEvent) -> None:
        current = self._versions.get(event.user_id, 0)
        if event.version < current:
            self.stale_dropped += 1
            logger.debug(
                "Dropping stale %s for %s on %s view (v%d < v%d)",
                event.type, event.user_id, self.platform, event.version, current,
            )
            return

        snap = self._profiles.setdefault(event.user_id, {"user_id": event.user_id})
        match event:
            case ProfileUpdate():
                snap.clear()
                snap.update(event.snapshot)
            case XpUpdate():
                snap["xp"] = event.xp
                snap["level"] = event.level
            case LevelUp():
                snap["level"] = event.new_level
            case BadgeUnlock():
                badges = list(snap.get("badges", []))
                if event.badge_id not in badges:
                    badges.append(event.badge_id)
                snap["badges"] = badges
            case StreakUpdate():
                snap["streak"] = event.streak
                snap["max_streak"] = event.max_streak
            case QuestProgress():
                quests = dict(snap.get("quests", {}))
                quests[event.quest_id] = {
                    "progress": event.progress,
                    "target": event.target_value,
                    "completed": event.completed,
                }
                snap["quests"] = quests
            case AccountLinked():
                snap["discord_id"] = event.discord_id
                snap["discord_username"] = event.discord_username
            case AccountUnlinked():
                snap["discord_id"] = None
                snap["discord_username"] = None
        self._versions[event.user_id] = event.version
