"""
tests/test_linking_service.py — Account Linking Tests
======================================================

Code issuance, redemption, expiry and unlinking.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta

import pytest
from conftest import make_profile

from kamianime.engine.events import AccountLinked, Platform
from kamianime.errors import ConflictError, NotFoundError, ValidationError
from kamianime.services.linking_service import (
    generate_linking_code,
    get_sync_status,
    issue_linking_code,
    normalize_linking_code,
    redeem_linking_code,
    unlink_account,
)
from kamianime.services.profile_service import load_snapshot

DISCORD_ID = 123456789012345678


class TestCodes:
    def test_format(self):
        for _ in range(50):
            assert re.fullmatch(r"[A-Z0-9]{6}", generate_linking_code())

    def test_normalize(self):
        assert normalize_linking_code("  ab12cd ") == "AB12CD"

    def test_new_code_replaces_pending(self, db_engine):
        make_profile(db_engine)
        first = issue_linking_code(db_engine, "user-1")
        second = issue_linking_code(db_engine, "user-1")
        assert first.code != second.code
        with pytest.raises(NotFoundError) as exc:
            redeem_linking_code(db_engine, first.code, DISCORD_ID)
        assert exc.value.reason == "not_found"

    def test_expires_after_ttl(self, db_engine):
        make_profile(db_engine)
        t0 = datetime(2026, 10, 14, 12, 0, tzinfo=UTC)
        issued = issue_linking_code(db_engine, "user-1", now=t0)
        assert issued.expires_at == t0 + timedelta(seconds=600)

        with pytest.raises(NotFoundError) as exc:
            redeem_linking_code(db_engine, issued.code, DISCORD_ID, now=t0 + timedelta(seconds=601))
        assert exc.value.reason == "expired"
        assert load_snapshot(db_engine, "user-1")["discord_id"] is None

    def test_invalid_code_format(self, db_engine):
        with pytest.raises(ValidationError) as exc:
            redeem_linking_code(db_engine, "ab-1", DISCORD_ID)
        assert exc.value.reason == "invalid_code"

    def test_unknown_code(self, db_engine):
        with pytest.raises(NotFoundError) as exc:
            redeem_linking_code(db_engine, "ZZZZZZ", DISCORD_ID)
        assert exc.value.reason == "not_found"


class TestLinkLifecycle:
    def test_link_awards_xp_and_emits_event(self, db_engine):
        make_profile(db_engine)
        issued = issue_linking_code(db_engine, "user-1")

        result = redeem_linking_code(db_engine, issued.code.lower(), DISCORD_ID, "mika#0001")

        assert result.user_id == "user-1"
        assert result.xp_awarded == 100
        snap = load_snapshot(db_engine, "user-1")
        assert snap["discord_id"] == DISCORD_ID
        assert snap["discord_username"] == "mika#0001"

        events = result.change.to_events(Platform.WEBSITE)
        linked = [e for e in events if isinstance(e, AccountLinked)]
        assert len(linked) == 1
        assert linked[0].discord_id == DISCORD_ID

    def test_code_is_single_use(self, db_engine):
        make_profile(db_engine)
        issued = issue_linking_code(db_engine, "user-1")
        redeem_linking_code(db_engine, issued.code, DISCORD_ID)
        with pytest.raises(ConflictError) as exc:
            redeem_linking_code(db_engine, issued.code, DISCORD_ID + 1)
        assert exc.value.reason == "already_used"

    def test_linked_profile_cannot_issue(self, db_engine):
        make_profile(db_engine, discord_id=DISCORD_ID)
        with pytest.raises(ConflictError) as exc:
            issue_linking_code(db_engine, "user-1")
        assert exc.value.reason == "already_linked"

    def test_discord_account_already_used_elsewhere(self, db_engine):
        make_profile(db_engine, "other", "Other", discord_id=DISCORD_ID)
        make_profile(db_engine)
        issued = issue_linking_code(db_engine, "user-1")
        with pytest.raises(ConflictError) as exc:
            redeem_linking_code(db_engine, issued.code, DISCORD_ID)
        assert exc.value.reason == "already_linked"

    def test_unlink_then_relink_gives_no_xp(self, db_engine):
        make_profile(db_engine)
        redeem_linking_code(db_engine, issue_linking_code(db_engine, "user-1").code, DISCORD_ID)

        change = unlink_account(db_engine, discord_id=DISCORD_ID)
        assert change.unlinked_discord == DISCORD_ID
        assert load_snapshot(db_engine, "user-1")["discord_id"] is None

        again = redeem_linking_code(
            db_engine, issue_linking_code(db_engine, "user-1").code, DISCORD_ID,
        )
        assert again.xp_awarded == 0
        assert load_snapshot(db_engine, "user-1")["xp"] == 100

    def test_unlink_when_not_linked(self, db_engine):
        make_profile(db_engine)
        with pytest.raises(NotFoundError) as exc:
            unlink_account(db_engine, user_id="user-1")
        assert exc.value.reason == "not_linked"
        with pytest.raises(NotFoundError):
            unlink_account(db_engine, discord_id=DISCORD_ID)

    def test_sync_status(self, db_engine):
        make_profile(db_engine)
        issue_linking_code(db_engine, "user-1")
        status = get_sync_status(db_engine, "user-1")
        assert status["linked"] is False
        assert status["pending_code"] is True
        assert status["sync_enabled"] is True
