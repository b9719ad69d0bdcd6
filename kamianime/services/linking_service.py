"""
kamianime.services.linking_service — Website ↔ Discord Account Linking
=======================================================================

A signed-in website user asks for a linking code, then types it into the
bot's ``/link`` command.  Codes are:

* 6 characters from A–Z0–9, generated with :mod:`secrets`;
* bound to one user, at most one pending code per user (issuing a new
  code deletes the previous pending one);
* single-use: the first redemption attempt consumes the code whatever
  the outcome, so an expired or failed code is never retried;
* valid for ``linking_code_ttl_seconds`` (10 minutes), checked at
  redemption time.

Linking grants ``XP_ACCOUNT_LINK`` the first time a profile is ever linked.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from kamianime.constants import LINKING_CODE_ALPHABET, LINKING_CODE_LENGTH, XP_ACCOUNT_LINK
from kamianime.database.models import ActivityAction, ActivityLog, LinkingCode, UserProfile
from kamianime.engine.events import Platform
from kamianime.errors import ConflictError, NotFoundError, ValidationError
from kamianime.services.profile_service import (
    ChangeFn,
    ProfileChange,
    get_profile,
    get_profile_by_discord,
    grant_xp,
    mutate_profile,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

DEFAULT_CODE_TTL_SECONDS = 600


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# ---------------------------------------------------------------------------
# Codes
# ---------------------------------------------------------------------------
def generate_linking_code() -> str:
    """Cryptographically random 6-character code."""
    return "".join(secrets.choice(LINKING_CODE_ALPHABET) for _ in range(LINKING_CODE_LENGTH))


def normalize_linking_code(code: str) -> str:
    return code.strip().upper()


@dataclass(frozen=True, slots=True)
class IssuedCode:
    code: str
    user_id: str
    expires_at: datetime


@dataclass(frozen=True, slots=True)
class LinkResult:
    user_id: str
    discord_id: int
    xp_awarded: int
    change: ProfileChange


def issue_linking_code(
    engine: Engine,
    user_id: str,
    *,
    ttl_seconds: int = DEFAULT_CODE_TTL_SECONDS,
    now: datetime | None = None,
) -> IssuedCode:
    """Create a fresh code for *user_id*, replacing any pending one."""
    now = now or datetime.now(UTC)
    with Session(engine) as session:
        profile = get_profile(session, user_id)
        if profile.discord_id is not None:
            raise ConflictError("This account is already linked to Discord", reason="already_linked")

        session.execute(
            delete(LinkingCode).where(
                LinkingCode.user_id == user_id,
                LinkingCode.used_at.is_(None),
            )
        )
        for _ in range(10):
            code = generate_linking_code()
            if session.get(LinkingCode, code) is None:
                break
        else:
            raise RuntimeError("Failed to generate unique linking code after 10 attempts")

        session.add(LinkingCode(code=code, user_id=user_id, created_at=now))
        session.commit()

    logger.info("Issued linking code for %s", user_id)
    return IssuedCode(code=code, user_id=user_id, expires_at=now + timedelta(seconds=ttl_seconds))


def linking_code_owner(engine: Engine, code: str) -> str | None:
    """User id a pending-or-spent *code* was issued to, without consuming it."""
    with Session(engine) as session:
        return session.scalar(
            select(LinkingCode.user_id).where(
                LinkingCode.code == normalize_linking_code(code),
            )
        )


def _consume_code(
    engine: Engine, code: str, discord_id: int, now: datetime,
) -> tuple[str, datetime]:
    """Mark *code* used and return its ``(user_id, created_at)``."""
    with Session(engine) as session:
        row = session.get(LinkingCode, code)
        if row is None:
            raise NotFoundError("Linking code not found", reason="not_found")
        if row.used_at is not None:
            raise ConflictError("Linking code has already been used", reason="already_used")
        owner, created_at = row.user_id, row.created_at

        result = session.execute(
            update(LinkingCode)
            .where(LinkingCode.code == code, LinkingCode.used_at.is_(None))
            .values(used_at=now, redeemed_by=discord_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError("Linking code has already been used", reason="already_used")
        session.commit()
    return owner, created_at


def link_discord(discord_id: int, discord_username: str | None) -> ChangeFn:
    def _apply(session: Session, profile: UserProfile, change: ProfileChange) -> None:
        other = get_profile_by_discord(session, discord_id)
        if other is not None and other.id != profile.id:
            raise ConflictError(
                "This Discord account is already linked to another profile",
                reason="already_linked",
            )
        if profile.discord_id is not None:
            raise ConflictError("Profile is already linked to Discord", reason="already_linked")

        linked_before = session.scalar(
            select(ActivityLog.id).where(
                ActivityLog.user_id == profile.id,
                ActivityLog.action == ActivityAction.DISCORD_LINK.value,
            ).limit(1)
        )
        profile.discord_id = discord_id
        profile.discord_username = discord_username
        profile.linked_at = datetime.now(UTC)
        grant_xp(
            session, profile, change,
            XP_ACCOUNT_LINK if linked_before is None else 0,
            ActivityAction.DISCORD_LINK,
            {"discord_id": str(discord_id), "discord_username": discord_username},
        )
        change.linked_discord = (discord_id, discord_username)
    return _apply


def unlink_discord_change() -> ChangeFn:
    def _apply(session: Session, profile: UserProfile, change: ProfileChange) -> None:
        if profile.discord_id is None:
            raise NotFoundError("No Discord account is linked", reason="not_linked")
        change.unlinked_discord = profile.discord_id
        session.add(ActivityLog(
            user_id=profile.id,
            action=ActivityAction.DISCORD_UNLINK.value,
            platform=change.platform.value,
            metadata_={"discord_id": str(profile.discord_id)},
        ))
        profile.discord_id = None
        profile.discord_username = None
        profile.linked_at = None
    return _apply


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def redeem_linking_code(
    engine: Engine,
    code: str,
    discord_id: int,
    discord_username: str | None = None,
    *,
    ttl_seconds: int = DEFAULT_CODE_TTL_SECONDS,
    now: datetime | None = None,
) -> LinkResult:
    """Redeem *code* for *discord_id*.

    Raises
    ------
    ValidationError
        The code is not 6 characters from A–Z0–9.
    NotFoundError
        ``reason="not_found"`` or ``reason="expired"``.
    ConflictError
        ``reason="already_used"`` or ``reason="already_linked"``.
    """
    code = normalize_linking_code(code)
    if len(code) != LINKING_CODE_LENGTH or any(c not in LINKING_CODE_ALPHABET for c in code):
        raise ValidationError("Linking codes are 6 letters or digits", reason="invalid_code")

    now = now or datetime.now(UTC)
    owner, created_at = _consume_code(engine, code, discord_id, now)

    if now > _as_aware(created_at) + timedelta(seconds=ttl_seconds):
        logger.info("Expired linking code presented by discord user %s", discord_id)
        raise NotFoundError("Linking code has expired", reason="expired")

    try:
        change = mutate_profile(
            engine, owner, link_discord(discord_id, discord_username),
            platform=Platform.DISCORD, reason="account_link",
        )
    except IntegrityError:
        raise ConflictError(
            "This Discord account is already linked to another profile",
            reason="already_linked",
        ) from None

    assert change is not None
    logger.info("Linked %s ↔ discord %s", owner, discord_id)
    return LinkResult(
        user_id=owner,
        discord_id=discord_id,
        xp_awarded=change.xp_delta,
        change=change,
    )


def unlink_account(
    engine: Engine,
    *,
    discord_id: int | None = None,
    user_id: str | None = None,
) -> ProfileChange:
    """Remove the Discord link, addressed by either side of it."""
    if user_id is None:
        if discord_id is None:
            raise ValidationError("discord_id or user_id is required", reason="missing_identity")
        with Session(engine) as session:
            profile = get_profile_by_discord(session, discord_id)
            if profile is None:
                raise NotFoundError("No profile is linked to this Discord account", reason="not_linked")
            user_id = profile.id

    change = mutate_profile(
        engine, user_id, unlink_discord_change(),
        platform=Platform.DISCORD if discord_id is not None else Platform.WEBSITE,
        reason="account_unlink",
    )
    assert change is not None
    logger.info("Unlinked %s from discord %s", user_id, change.unlinked_discord)
    return change


def get_sync_status(engine: Engine, user_id: str) -> dict[str, Any]:
    with Session(engine) as session:
        profile = get_profile(session, user_id)
        pending = session.scalar(
            select(LinkingCode).where(
                LinkingCode.user_id == user_id, LinkingCode.used_at.is_(None),
            )
        )
        return {
            "linked": profile.discord_id is not None,
            "discord_id": str(profile.discord_id) if profile.discord_id else None,
            "discord_username": profile.discord_username,
            "sync_enabled": profile.sync_enabled,
            "last_sync": profile.last_synced_at.isoformat() if profile.last_synced_at else None,
            "sync_version": profile.sync_version,
            "pending_code": pending is not None,
        }
