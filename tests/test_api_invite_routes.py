"""
tests/test_api_invite_routes.py -- Integration tests for /api/v1/invites/*.

Coverage:
  - Auth failures: 401 without a token, 403 below business tier, 403 sweep for non-admins
  - Team side: create 201 (token never echoed), duplicate 409, list, can-invite,
    resend, cancel
  - Invitee side (public): look up by token, accept creating an account,
    second accept 400 already_processed, decline, cancelled link reads as expired
  - Admin sweep
"""

from __future__ import annotations

import pytest
from conftest import PASSWORD, bearer
from fastapi.testclient import TestClient


@pytest.fixture
def owner(make_team):
    return make_team(seats=2)


@pytest.fixture
def owner_headers(owner, token_service) -> dict[str, str]:
    return bearer(token_service.issue_pair(owner).access_token)


def _create(client: TestClient, headers: dict[str, str], email: str, **body) -> dict:
    resp = client.post("/api/v1/invites", json={"email": email, **body}, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()["invite"]


class TestAuthFailures:
    def test_create_requires_auth(self, client: TestClient) -> None:
        resp = client.post("/api/v1/invites", json={"email": "a@example.test"})
        assert resp.status_code == 401

    def test_create_requires_business_tier(self, client: TestClient, make_user, token_service) -> None:
        user = make_user("free@example.test", role="free")
        resp = client.post(
            "/api/v1/invites",
            json={"email": "a@example.test"},
            headers=bearer(token_service.issue_pair(user).access_token),
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"
        assert resp.json()["error"]["detail"] == {"required_tier": "business"}

    def test_sweep_requires_admin(self, client: TestClient, owner_headers) -> None:
        resp = client.post("/api/v1/invites/sweep", headers=owner_headers)
        assert resp.status_code == 403


class TestTeamSide:
    def test_create(self, client: TestClient, owner, owner_headers, emails) -> None:
        invite = _create(client, owner_headers, "Guest@Example.test", message="Hi there")
        assert invite["email"] == "guest@example.test"
        assert invite["status"] == "pending"
        assert invite["team_id"] == owner.id
        assert "token" not in invite
        assert emails.last("team-invitation").to == "guest@example.test"

    def test_duplicate_pending(self, client: TestClient, owner_headers) -> None:
        _create(client, owner_headers, "dup@example.test")
        resp = client.post("/api/v1/invites", json={"email": "dup@example.test"}, headers=owner_headers)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "duplicate_pending"

    def test_seat_limit(self, client: TestClient, owner_headers) -> None:
        _create(client, owner_headers, "a@example.test")
        _create(client, owner_headers, "b@example.test")
        resp = client.post("/api/v1/invites", json={"email": "c@example.test"}, headers=owner_headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "seat_limit_reached"

    def test_message_too_long(self, client: TestClient, owner_headers) -> None:
        resp = client.post(
            "/api/v1/invites", json={"email": "a@example.test", "message": "x" * 501}, headers=owner_headers
        )
        assert resp.status_code == 422

    def test_list_and_can_invite(self, client: TestClient, owner_headers) -> None:
        _create(client, owner_headers, "a@example.test")
        listing = client.get("/api/v1/invites/team", params={"limit": 10}, headers=owner_headers).json()
        assert listing["total"] == 1
        assert listing["limit"] == 10
        assert listing["invites"][0]["email"] == "a@example.test"

        eligibility = client.get("/api/v1/invites/can-invite", headers=owner_headers).json()
        assert eligibility["can_invite"] is True
        assert eligibility["seats"] == {"plan": "business", "total": 2, "used": 1, "available": 1}

    def test_list_unknown_status(self, client: TestClient, owner_headers) -> None:
        resp = client.get("/api/v1/invites/team", params={"status": "bogus"}, headers=owner_headers)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "invalid_input"

    def test_resend_and_cancel(self, client: TestClient, owner_headers) -> None:
        invite = _create(client, owner_headers, "a@example.test")
        resent = client.post(f"/api/v1/invites/{invite['id']}/resend", headers=owner_headers)
        assert resent.status_code == 200
        assert resent.json()["invite"]["resend_count"] == 1

        cancelled = client.delete(f"/api/v1/invites/{invite['id']}", headers=owner_headers)
        assert cancelled.status_code == 200
        assert cancelled.json()["invite"]["status"] == "expired"
        assert cancelled.json()["invite"]["cancelled_at"] is not None

        again = client.delete(f"/api/v1/invites/{invite['id']}", headers=owner_headers)
        assert again.status_code == 400
        assert again.json()["error"]["code"] == "already_processed"

    def test_cancel_unknown(self, client: TestClient, owner_headers) -> None:
        assert client.delete("/api/v1/invites/9999", headers=owner_headers).status_code == 404


class TestInviteeSide:
    def test_lookup_accept_and_repeat(self, client: TestClient, owner, owner_headers, emails) -> None:
        _create(client, owner_headers, "new@example.test")
        token = emails.last("team-invitation").link_token()

        lookup = client.get(f"/api/v1/invites/token/{token}")
        assert lookup.status_code == 200
        assert lookup.json()["email"] == "new@example.test"

        accepted = client.post(f"/api/v1/invites/accept/{token}", json={"name": "Nia", "password": PASSWORD})
        assert accepted.status_code == 200, accepted.text
        data = accepted.json()
        assert data["is_new_user"] is True
        assert data["user"]["is_email_verified"] is True
        assert data["user"]["parent_account_id"] == owner.id
        assert data["team"]["id"] == owner.id

        again = client.post(f"/api/v1/invites/accept/{token}", json={"name": "Nia", "password": PASSWORD})
        assert again.status_code == 400
        assert again.json()["error"]["code"] == "already_processed"
        assert again.json()["error"]["detail"] == {"status": "accepted"}

        login = client.post("/api/v1/auth/login", json={"email": "new@example.test", "password": PASSWORD})
        assert login.status_code == 200

    def test_accept_without_account_details(self, client: TestClient, owner_headers, emails) -> None:
        _create(client, owner_headers, "new@example.test")
        token = emails.last("team-invitation").link_token()
        resp = client.post(f"/api/v1/invites/accept/{token}")
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "invalid_input"

    def test_decline(self, client: TestClient, owner, owner_headers, emails) -> None:
        _create(client, owner_headers, "a@example.test")
        token = emails.last("team-invitation").link_token()
        resp = client.post(f"/api/v1/invites/decline/{token}")
        assert resp.status_code == 200
        assert resp.json()["invite"]["status"] == "declined"
        assert emails.last("team-invite-declined").to == owner.email

    def test_cancelled_link_is_expired(self, client: TestClient, owner_headers, emails) -> None:
        invite = _create(client, owner_headers, "a@example.test")
        token = emails.last("team-invitation").link_token()
        client.delete(f"/api/v1/invites/{invite['id']}", headers=owner_headers)
        resp = client.get(f"/api/v1/invites/token/{token}")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "expired"

    def test_unknown_token(self, client: TestClient) -> None:
        resp = client.get("/api/v1/invites/token/nope")
        assert resp.status_code == 404


class TestSweep:
    def test_admin_sweep(self, client: TestClient, owner_headers, make_user, token_service, clock, settings) -> None:
        _create(client, owner_headers, "a@example.test")
        admin = make_user("admin@example.test", role="admin")
        headers = bearer(token_service.issue_pair(admin).access_token)

        assert client.post("/api/v1/invites/sweep", headers=headers).json() == {"expired": 0}
        clock.advance(days=settings.invite_ttl_days)
        # The admin token was minted before the jump; mint a fresh one.
        headers = bearer(token_service.issue_pair(admin).access_token)
        assert client.post("/api/v1/invites/sweep", headers=headers).json() == {"expired": 1}
        assert client.post("/api/v1/invites/sweep", headers=headers).json() == {"expired": 0}
