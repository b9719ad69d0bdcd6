"""
tests/test_api_routes.py — FastAPI Route Integration Tests
============================================================
Integration tests for the webhook, sync, public and admin routes using
the FastAPI TestClient wired to an in-memory SyncBridge.

These tests verify:
- Webhook authentication and error translation
- Linking-code issue and sync status for the signed-in user
- Basic response structure of public endpoints
- Auth guards on admin endpoints
"""

from __future__ import annotations

import json

from conftest import TEST_WEBHOOK_KEY, make_profile, make_user_token

from kamianime.engine.events import Platform, XpUpdate
from kamianime.services.sync_service import sign_body


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _xp_event(amount: int = 10, **extra) -> dict:
    body = {"eventType": "xp_gain", "userId": "user-1", "data": {"amount": amount}}
    body.update(extra)
    return body


# ===========================================================================
# Health endpoint
# ===========================================================================
class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


# ===========================================================================
# Webhooks
# ===========================================================================
class TestWebhookRoute:
    URL = "/api/webhooks/gamification"

    def test_api_key_header(self, client, db_engine, captured):
        make_profile(db_engine)
        resp = client.post(self.URL, json=_xp_event(40), headers={"X-API-Key": TEST_WEBHOOK_KEY})
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "accepted"
        assert body["xp"] == 40
        assert body["events"] == ["xp_update", "profile_update"]
        assert isinstance(captured[Platform.DISCORD][0], XpUpdate)

    def test_api_key_in_body(self, client, db_engine):
        make_profile(db_engine)
        resp = client.post(self.URL, json=_xp_event(5, apiKey=TEST_WEBHOOK_KEY))
        assert resp.status_code == 200

    def test_signature_header(self, client, db_engine):
        make_profile(db_engine)
        raw = json.dumps(_xp_event(8)).encode()
        resp = client.post(
            self.URL,
            content=raw,
            headers={
                "Content-Type": "application/json",
                "X-Webhook-Signature": sign_body(TEST_WEBHOOK_KEY, raw),
            },
        )
        assert resp.status_code == 200
        assert resp.json()["xp"] == 8

    def test_bad_key_is_401(self, client, db_engine):
        make_profile(db_engine)
        resp = client.post(self.URL, json=_xp_event(), headers={"X-API-Key": "wrong"})
        assert resp.status_code == 401
        assert resp.json()["reason"] == "bad_auth"

    def test_malformed_is_422(self, client, db_engine):
        make_profile(db_engine)
        resp = client.post(
            self.URL, json=_xp_event(-1), headers={"X-API-Key": TEST_WEBHOOK_KEY},
        )
        assert resp.status_code == 422
        assert resp.json()["reason"] == "malformed"

    def test_invalid_json_is_422(self, client):
        resp = client.post(
            self.URL,
            content=b"{not json",
            headers={"Content-Type": "application/json", "X-API-Key": TEST_WEBHOOK_KEY},
        )
        assert resp.status_code == 422

    def test_unknown_user_is_404(self, client):
        resp = client.post(self.URL, json=_xp_event(), headers={"X-API-Key": TEST_WEBHOOK_KEY})
        assert resp.status_code == 404

    def test_replay_reports_duplicate(self, client, db_engine):
        make_profile(db_engine)
        headers = {"X-API-Key": TEST_WEBHOOK_KEY}
        client.post(self.URL, json=_xp_event(3, eventId="dup-1"), headers=headers)
        resp = client.post(self.URL, json=_xp_event(3, eventId="dup-1"), headers=headers)
        assert resp.json()["status"] == "duplicate"


# ===========================================================================
# Sync (authenticated user)
# ===========================================================================
class TestSyncRoutes:
    def test_requires_token(self, client):
        assert client.post("/api/sync/link").status_code == 401
        assert client.get("/api/sync/status").status_code == 401

    def test_issue_code_creates_profile(self, client):
        resp = client.post("/api/sync/link", headers=_auth(make_user_token()))
        assert resp.status_code == 201
        body = resp.json()
        assert len(body["code"]) == 6
        assert body["expires_in"] == 600

        status = client.get("/api/sync/status", headers=_auth(make_user_token()))
        assert status.status_code == 200
        assert status.json()["linked"] is False
        assert status.json()["pending_code"] is True

    def test_issue_code_when_linked_is_409(self, client, db_engine):
        make_profile(db_engine, discord_id=55)
        resp = client.post("/api/sync/link", headers=_auth(make_user_token()))
        assert resp.status_code == 409
        assert resp.json()["reason"] == "already_linked"

    def test_unlink(self, client, db_engine):
        make_profile(db_engine, discord_id=55)
        resp = client.delete("/api/sync/link", headers=_auth(make_user_token()))
        assert resp.status_code == 200
        assert resp.json()["status"] == "unlinked"

        again = client.delete("/api/sync/link", headers=_auth(make_user_token()))
        assert again.status_code == 404

    def test_force_sync_is_rate_limited(self, client, db_engine, captured):
        make_profile(db_engine)
        headers = _auth(make_user_token())
        for _ in range(5):
            resp = client.post("/api/sync/force", headers=headers)
            assert resp.status_code == 200
            assert resp.json()["profile"]["user_id"] == "user-1"

        blocked = client.post("/api/sync/force", headers=headers)
        assert blocked.status_code == 429
        assert blocked.json()["detail"]["error"] == "rate_limit_exceeded"
        assert "Retry-After" in blocked.headers
        assert len(captured[Platform.DISCORD]) == 5
        assert len(captured[Platform.WEBSITE]) == 5


# ===========================================================================
# Public read endpoints
# ===========================================================================
class TestPublicRoutes:
    def test_profile(self, client, db_engine):
        make_profile(db_engine, xp=2500)
        resp = client.get("/api/profile/user-1")
        assert resp.status_code == 200
        body = resp.json()
        assert body["level"] == 3
        assert body["xp_to_next_level"] == 500

    def test_profile_hides_account_fields(self, client, db_engine):
        make_profile(db_engine, discord_id=4242, discord_username="mika", is_admin=True)
        body = client.get("/api/profile/user-1").json()
        for key in ("is_admin", "discord_id", "discord_username", "sync_enabled", "sync_version"):
            assert key not in body
        assert body["display_name"] == "Mika"
        assert body["badges"] == []

    def test_profile_not_found(self, client):
        resp = client.get("/api/profile/ghost")
        assert resp.status_code == 404
        assert resp.json()["reason"] == "unknown_user"

    def test_leaderboard(self, client, db_engine):
        make_profile(db_engine, "a", "A", xp=10)
        make_profile(db_engine, "b", "B", xp=20)
        resp = client.get("/api/leaderboard", params={"page_size": 1})
        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 2
        assert body["entries"][0]["user_id"] == "b"

    def test_leaderboard_page_size_capped(self, client):
        assert client.get("/api/leaderboard", params={"page_size": 500}).status_code == 422

    def test_badges(self, client):
        resp = client.get("/api/badges")
        assert resp.status_code == 200
        assert len(resp.json()["badges"]) == 21

        manga = client.get("/api/badges", params={"category": "manga"}).json()["badges"]
        assert manga and all(b["category"] == "manga" for b in manga)


# ===========================================================================
# Admin endpoints
# ===========================================================================
class TestAdminRoutes:
    URL = "/api/admin/users/user-1/flags"

    def test_requires_token(self, client):
        assert client.post(self.URL, json={"is_premium": True}).status_code == 401

    def test_non_admin_forbidden(self, client):
        resp = client.post(self.URL, json={"is_premium": True}, headers=_auth(make_user_token()))
        assert resp.status_code == 403

    def test_toggle_premium(self, client, db_engine, admin_token, captured):
        make_profile(db_engine)
        resp = client.post(self.URL, json={"is_premium": True}, headers=_auth(admin_token))
        assert resp.status_code == 200
        body = resp.json()
        assert body["is_premium"] is True
        assert body["is_admin"] is False
        assert body["sync_version"] == 2
        assert captured[Platform.DISCORD][-1].snapshot["is_premium"] is True

    def test_empty_update_is_422(self, client, db_engine, admin_token):
        make_profile(db_engine)
        resp = client.post(self.URL, json={}, headers=_auth(admin_token))
        assert resp.status_code == 422
        assert resp.json()["reason"] == "empty_update"
