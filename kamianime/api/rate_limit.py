"""
kamianime.api.rate_limit — Sliding-Window Rate Limiting
========================================================

Two throttles protect the write side of the API:

* ``force_sync`` — 5 manual syncs per 10 minutes per user
* ``admin``      — 30 mutations per minute per admin

Each :class:`RateLimiter` is a sliding-window counter keyed by JWT ``sub``
and stored in ``rate_limit_events`` so limits survive restarts.  Exceeding
a limit returns HTTP 429 with a ``Retry-After`` header.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import Engine, delete, func, select
from sqlalchemy.orm import Session

from kamianime.api.deps import get_current_admin, get_current_user
from kamianime.database.models import RateLimitEvent

logger = logging.getLogger(__name__)

FORCE_SYNC_SCOPE = "force_sync"
FORCE_SYNC_LIMIT = 5
FORCE_SYNC_WINDOW_SECONDS = 600

ADMIN_SCOPE = "admin"
ADMIN_LIMIT = 30
ADMIN_WINDOW_SECONDS = 60

_MUTATION_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


class RateLimiter:
    """Sliding-window rate limiter for one *scope*, keyed by caller id."""

    def __init__(
        self,
        scope: str,
        max_requests: int,
        window_seconds: int,
        *,
        engine: Engine,
    ) -> None:
        self.scope = scope
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.engine = engine

    def _normalize_dt(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def _prune(self, session: Session, key: str, cutoff: datetime) -> None:
        session.execute(
            delete(RateLimitEvent).where(
                RateLimitEvent.scope == self.scope,
                RateLimitEvent.key == key,
                RateLimitEvent.timestamp < cutoff,
            )
        )

    def check(self, key: str) -> tuple[bool, dict[str, Any]]:
        """Whether *key* may make another request.

        ``info`` carries ``remaining``, ``reset`` (seconds until a slot
        frees up) and ``limit``.
        """
        now = datetime.now(UTC)
        cutoff = now - timedelta(seconds=self.window_seconds)

        with Session(self.engine) as session:
            self._prune(session, key, cutoff)
            timestamps = session.scalars(
                select(RateLimitEvent.timestamp)
                .where(RateLimitEvent.scope == self.scope, RateLimitEvent.key == key)
                .order_by(RateLimitEvent.timestamp.asc())
            ).all()
            session.commit()

        count = len(timestamps)
        if count >= self.max_requests:
            oldest = self._normalize_dt(timestamps[0])
            reset = (oldest + timedelta(seconds=self.window_seconds) - now).total_seconds()
            return False, {
                "remaining": 0,
                "reset": max(1, int(reset) + 1),
                "limit": self.max_requests,
            }

        return True, {
            "remaining": max(0, self.max_requests - count),
            "reset": self.window_seconds,
            "limit": self.max_requests,
        }

    def record(self, key: str) -> dict[str, Any]:
        """Record a request and return updated rate-limit info."""
        now = datetime.now(UTC)
        cutoff = now - timedelta(seconds=self.window_seconds)

        with Session(self.engine) as session:
            self._prune(session, key, cutoff)
            session.add(RateLimitEvent(scope=self.scope, key=key, timestamp=now))
            session.flush()
            count = session.scalar(
                select(func.count()).select_from(
                    select(RateLimitEvent.id)
                    .where(RateLimitEvent.scope == self.scope, RateLimitEvent.key == key)
                    .subquery()
                )
            ) or 0
            session.commit()

        return {
            "remaining": max(0, self.max_requests - count),
            "reset": self.window_seconds,
            "limit": self.max_requests,
        }

    def reset(self, key: str | None = None) -> None:
        """Clear state for *key*, or for the whole scope."""
        with Session(self.engine) as session:
            stmt = delete(RateLimitEvent).where(RateLimitEvent.scope == self.scope)
            if key is not None:
                stmt = stmt.where(RateLimitEvent.key == key)
            session.execute(stmt)
            session.commit()


# ---------------------------------------------------------------------------
# Module-level registry
# ---------------------------------------------------------------------------
_limiters: dict[str, RateLimiter] = {}


def get_rate_limiter(scope: str) -> RateLimiter:
    limiter = _limiters.get(scope)
    if limiter is None:
        raise RuntimeError("Rate limiter not configured — call configure_rate_limiters() first")
    return limiter


def configure_rate_limiters(*, engine: Engine) -> None:
    """Create the durable DB-backed limiters for every scope."""
    _limiters[FORCE_SYNC_SCOPE] = RateLimiter(
        FORCE_SYNC_SCOPE, FORCE_SYNC_LIMIT, FORCE_SYNC_WINDOW_SECONDS, engine=engine,
    )
    _limiters[ADMIN_SCOPE] = RateLimiter(
        ADMIN_SCOPE, ADMIN_LIMIT, ADMIN_WINDOW_SECONDS, engine=engine,
    )


async def _enforce(scope: str, key: str, message: str) -> None:
    limiter = get_rate_limiter(scope)
    allowed, info = await asyncio.to_thread(limiter.check, key)
    if not allowed:
        logger.warning(
            "Rate limit exceeded for %s on %s: %d requests per %ds",
            key, scope, limiter.max_requests, limiter.window_seconds,
        )
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "rate_limit_exceeded",
                "message": message,
                "retry_after": info["reset"],
            },
            headers={"Retry-After": str(info["reset"])},
        )
    await asyncio.to_thread(limiter.record, key)


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------
async def rate_limited_force_sync(user: dict = Depends(get_current_user)) -> dict:
    """Validate the user JWT and allow at most 5 force syncs per 10 minutes."""
    await _enforce(
        FORCE_SYNC_SCOPE, user["sub"],
        f"Rate limit exceeded: {FORCE_SYNC_LIMIT} syncs per "
        f"{FORCE_SYNC_WINDOW_SECONDS // 60} minutes.",
    )
    return user


async def rate_limited_admin(
    request: Request,
    admin: dict = Depends(get_current_admin),
) -> dict:
    """Validate the admin JWT and throttle admin mutations.

    GET/HEAD/OPTIONS pass through uncounted.
    """
    if request.method not in _MUTATION_METHODS:
        return admin
    await _enforce(
        ADMIN_SCOPE, admin["sub"],
        f"Rate limit exceeded: {ADMIN_LIMIT} mutations per minute.",
    )
    return admin
