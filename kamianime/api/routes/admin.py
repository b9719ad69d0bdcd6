"""
kamianime.api.routes.admin — Admin write endpoints
===================================================

Every route requires an admin JWT and is throttled by
:func:`kamianime.api.rate_limit.rate_limited_admin`.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from kamianime.api.deps import Bridge
from kamianime.api.rate_limit import rate_limited_admin
from kamianime.engine.events import Platform
from kamianime.errors import ValidationError
from kamianime.services.profile_service import flag_toggle

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class FlagsUpdate(BaseModel):
    is_admin: bool | None = None
    is_premium: bool | None = None


@router.post("/users/{user_id}/flags")
async def update_user_flags(
    user_id: str,
    body: FlagsUpdate,
    bridge: Bridge,
    admin: dict = Depends(rate_limited_admin),
):
    """Toggle a user's admin and/or premium flag."""
    if body.is_admin is None and body.is_premium is None:
        raise ValidationError("Nothing to update", reason="empty_update")

    change, _ = await bridge.apply(
        user_id,
        flag_toggle(is_admin=body.is_admin, is_premium=body.is_premium),
        source=Platform.WEBSITE,
        reason=f"admin:{admin['sub']}",
    )
    assert change is not None
    logger.info(
        "Admin %s set flags on %s: admin=%s premium=%s",
        admin["sub"], user_id, body.is_admin, body.is_premium,
    )
    return {
        "user_id": user_id,
        "is_admin": change.snapshot["is_admin"],
        "is_premium": change.snapshot["is_premium"],
        "sync_version": change.version,
    }
