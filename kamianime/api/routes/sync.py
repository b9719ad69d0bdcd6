"""
kamianime.api.routes.sync — Account linking & sync endpoints
=============================================================

All routes act on the JWT-authenticated website user (``sub`` claim).
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from kamianime.api.deps import Bridge, CurrentUser
from kamianime.api.rate_limit import rate_limited_force_sync
from kamianime.database.engine import run_db
from kamianime.services.profile_service import get_or_create_profile

router = APIRouter(prefix="/sync", tags=["sync"])


@router.post("/link", status_code=201)
async def create_linking_code(user: CurrentUser, bridge: Bridge):
    """Issue a 6-character code the user types into ``/link`` on Discord."""
    await run_db(
        get_or_create_profile,
        bridge.engine,
        user["sub"],
        user.get("username") or user["sub"],
        email=user.get("email"),
    )
    issued = await bridge.issue_linking_code(user["sub"])
    return {
        "code": issued.code,
        "expires_at": issued.expires_at.isoformat(),
        "expires_in": bridge.linking_code_ttl_seconds,
    }


@router.delete("/link")
async def remove_link(user: CurrentUser, bridge: Bridge):
    change = await bridge.unlink(user_id=user["sub"])
    return {"status": "unlinked", "sync_version": change.version}


@router.post("/force")
async def force_sync(bridge: Bridge, user: dict = Depends(rate_limited_force_sync)):
    """Push the stored profile to both platforms."""
    snapshot = await bridge.force_sync(user["sub"])
    return {"status": "synced", "profile": snapshot}


@router.get("/status")
async def sync_status(user: CurrentUser, bridge: Bridge):
    return await bridge.sync_status(user["sub"])
