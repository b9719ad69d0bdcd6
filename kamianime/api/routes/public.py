"""
kamianime.api.routes.public — Read-only public endpoints
=========================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import Engine

from kamianime.api.deps import get_engine
from kamianime.engine.badges import BADGES, BadgeCategory, badges_by_category
from kamianime.services.profile_service import get_leaderboard, load_snapshot, public_profile

router = APIRouter(tags=["public"])


# ---------------------------------------------------------------------------
# GET /profile/{user_id}
# ---------------------------------------------------------------------------
@router.get("/profile/{user_id}")
def get_profile(user_id: str, engine: Engine = Depends(get_engine)):
    """Profile snapshot minus account settings and the Discord identity."""
    return public_profile(load_snapshot(engine, user_id))


# ---------------------------------------------------------------------------
# GET /leaderboard
# ---------------------------------------------------------------------------
@router.get("/leaderboard")
def leaderboard(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    engine: Engine = Depends(get_engine),
):
    return get_leaderboard(engine, page=page, page_size=page_size)


# ---------------------------------------------------------------------------
# GET /badges
# ---------------------------------------------------------------------------
@router.get("/badges")
def list_badges(category: BadgeCategory | None = None):
    badges = badges_by_category(category) if category else BADGES
    return {"badges": [b.to_dict() for b in badges]}
