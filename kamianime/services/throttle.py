"""
kamianime.services.throttle — Per-channel send throttle
========================================================

Keeps announcements under Discord's per-channel rate limits.  Each channel
may receive ``max_per_window`` embeds per ``window`` seconds; anything
beyond that waits in the channel's overflow queue and is sent by the
background drain task once the window reopens.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict, deque

import discord
from discord.abc import Messageable

logger = logging.getLogger(__name__)


class AnnouncementThrottle:
    def __init__(
        self,
        max_per_window: int = 3,
        window: float = 60.0,
        drain_interval: float = 10.0,
    ) -> None:
        self.max_per_window = max_per_window
        self.window = window
        self.drain_interval = drain_interval
        self._sent: dict[int, deque[float]] = defaultdict(deque)
        self._overflow: dict[int, deque[tuple[Messageable, discord.Embed]]] = defaultdict(deque)
        self._drain_task: asyncio.Task | None = None

    def try_acquire(self, channel_id: int, now: float | None = None) -> bool:
        """Claim a send slot for *channel_id* if the window has one free."""
        now = time.monotonic() if now is None else now
        stamps = self._sent[channel_id]
        while stamps and stamps[0] <= now - self.window:
            stamps.popleft()
        if len(stamps) >= self.max_per_window:
            return False
        stamps.append(now)
        return True

    def pending(self, channel_id: int | None = None) -> int:
        if channel_id is not None:
            return len(self._overflow.get(channel_id, ()))
        return sum(len(q) for q in self._overflow.values())

    async def send(self, channel: Messageable, embed: discord.Embed) -> bool:
        """Send now if allowed, else queue.  Returns True when sent immediately.

        Exceptions from Discord propagate to the caller.
        """
        channel_id = getattr(channel, "id", 0)
        if self._overflow.get(channel_id) or not self.try_acquire(channel_id):
            self._overflow[channel_id].append((channel, embed))
            logger.debug("Channel %d throttled; %d queued", channel_id, self.pending(channel_id))
            return False
        await channel.send(embed=embed)
        return True

    async def drain_once(self, now: float | None = None) -> int:
        """Send queued embeds whose channel window has reopened."""
        delivered = 0
        for channel_id, queue in list(self._overflow.items()):
            while queue and self.try_acquire(channel_id, now):
                channel, embed = queue.popleft()
                try:
                    await channel.send(embed=embed)
                    delivered += 1
                except Exception:
                    logger.exception("Failed to send queued embed to channel %d", channel_id)
            if not queue:
                self._overflow.pop(channel_id, None)
        return delivered

    def start(self) -> None:
        if self._drain_task is not None:
            return

        async def _drain_loop() -> None:
            while True:
                await asyncio.sleep(self.drain_interval)
                try:
                    await self.drain_once()
                except Exception:
                    logger.exception("Throttle drain error")

        self._drain_task = asyncio.get_running_loop().create_task(
            _drain_loop(), name="announce-drain",
        )

    def stop(self) -> None:
        if self._drain_task is not None:
            self._drain_task.cancel()
            self._drain_task = None
