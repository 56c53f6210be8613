"""Integration tests for the guest session endpoints.

Tests:
- Session creation and the guest-token cookie
- Verification of live, unknown and expired tokens
- Counter updates and the guest message ceiling
- Fallback sessions while the store is unavailable
"""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from chatgate import app as app_module
from chatgate.service.runtime import get_runtime
from chatgate.storage.errors import StoreUnavailable
from chatgate.storage.models import GuestSession, utcnow


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _create(client) -> dict:
    response = client.post("/v1/auth/guest", headers={"user-agent": "pytest-agent"})
    assert response.status_code == 200, response.text
    return response.json()


class TestCreate:
    def test_create_returns_session_and_sets_cookie(self, client):
        response = client.post("/v1/auth/guest", headers={"user-agent": "pytest-agent"})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["message"] == "Guest session created successfully"
        assert "fallback" not in data
        session = data["session"]
        assert session["sessionToken"].startswith("guest_")
        assert session["messageCount"] == 0
        assert session["maxMessages"] == 5
        assert session["userAgent"] == "pytest-agent"

        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f"guest-token={session['sessionToken']}")
        assert "HttpOnly" in cookie
        assert "samesite=strict" in cookie.lower()
        assert "Max-Age=86400" in cookie

    def test_create_records_ip_from_the_connection_not_the_body(self, client):
        response = client.post(
            "/v1/auth/guest",
            headers={"x-forwarded-for": "198.51.100.4"},
            json={"ipAddress": "6.6.6.6", "userAgent": "body-agent"},
        )

        assert response.status_code == 200
        session = response.json()["session"]
        assert session["ipAddress"] == "198.51.100.4"
        stored = get_runtime().store.get_guest_session(session["sessionToken"])
        assert stored.ip_address == "198.51.100.4"

    def test_create_falls_back_when_store_unavailable(self, client, monkeypatch):
        runtime = get_runtime()

        def _down(*args, **kwargs):
            raise StoreUnavailable("database unreachable")

        monkeypatch.setattr(runtime.store, "create_guest_session", _down)

        response = client.post("/v1/auth/guest")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["fallback"] is True
        assert data["message"] == "Guest session created (fallback mode)"
        assert data["session"]["id"].startswith("fallback-")
        assert data["session"]["maxMessages"] - data["session"]["messageCount"] == 5
        assert "guest-token=" in response.headers["set-cookie"]


class TestVerify:
    def test_verify_live_session(self, client):
        token = _create(client)["session"]["sessionToken"]

        response = client.post("/v1/auth/guest/verify", json={"token": token})

        assert response.status_code == 200
        data = response.json()
        assert data["isValid"] is True
        assert data["remainingMessages"] == 5

    def test_verify_unknown_token_is_not_found(self, client):
        response = client.post("/v1/auth/guest/verify", json={"token": "guest_nope"})

        assert response.status_code == 404
        data = response.json()
        assert data["success"] is False
        assert data["errorType"] == "not_found"

    def test_verify_expired_session_reports_invalid(self, client):
        expired = GuestSession.new()
        expired.expires_at = utcnow() - timedelta(minutes=1)
        get_runtime().store.create_guest_session(expired)

        response = client.post("/v1/auth/guest/verify", json={"token": expired.session_token})

        assert response.status_code == 200
        assert response.json()["isValid"] is False
        assert response.json()["remainingMessages"] == 0

    def test_verify_without_token_is_validation_error(self, client):
        response = client.post("/v1/auth/guest/verify")

        assert response.status_code == 400
        assert response.json()["errorType"] == "validation_error"

    def test_verify_falls_back_when_store_unavailable(self, client, monkeypatch):
        runtime = get_runtime()

        def _down(*args, **kwargs):
            raise StoreUnavailable("database unreachable")

        monkeypatch.setattr(runtime.store, "get_guest_session", _down)

        response = client.post("/v1/auth/guest/verify", json={"token": "guest_abc"})

        assert response.status_code == 200
        data = response.json()
        assert data["fallback"] is True
        assert data["isValid"] is True
        assert data["session"]["sessionToken"] == "guest_abc"


class TestUpdate:
    def test_update_adds_to_count_and_reports_remaining(self, client):
        token = _create(client)["session"]["sessionToken"]

        counts = []
        for _ in range(2):
            response = client.post(
                "/v1/auth/guest/update", json={"token": token, "messageCount": 1}
            )
            assert response.status_code == 200
            counts.append(response.json()["session"]["messageCount"])

        assert counts == [1, 2]
        data = response.json()
        assert data["remainingMessages"] == 3
        assert data["session"]["remainingMessages"] == 3

    def test_update_without_count_leaves_it_unchanged(self, client):
        token = _create(client)["session"]["sessionToken"]
        client.post("/v1/auth/guest/update", json={"token": token, "messageCount": 2})

        response = client.post("/v1/auth/guest/update", json={"token": token})

        assert response.status_code == 200
        assert response.json()["session"]["messageCount"] == 2
        assert response.json()["remainingMessages"] == 3

    def test_update_past_ceiling_is_quota_exceeded(self, client):
        token = _create(client)["session"]["sessionToken"]
        client.post("/v1/auth/guest/update", json={"token": token, "messageCount": 4})

        response = client.post(
            "/v1/auth/guest/update", json={"token": token, "messageCount": 2}
        )

        assert response.status_code == 429
        data = response.json()
        assert data["errorType"] == "quota_exceeded"
        assert data["details"]["current"] == 4
        assert data["details"]["limit"] == 5
        check = client.post("/v1/auth/guest/verify", json={"token": token})
        assert check.json()["session"]["messageCount"] == 4

    def test_update_cannot_outrun_an_inflight_reservation(self, client):
        token = _create(client)["session"]["sessionToken"]
        store = get_runtime().store
        client.post("/v1/auth/guest/update", json={"token": token, "messageCount": 4})
        assert store.reserve_guest_message(token)[0] is True

        response = client.post(
            "/v1/auth/guest/update", json={"token": token, "messageCount": 1}
        )

        assert response.status_code == 429
        store.release_guest_message(token)

    def test_update_unknown_token_is_not_found(self, client):
        response = client.post(
            "/v1/auth/guest/update", json={"token": "guest_missing", "messageCount": 1}
        )

        assert response.status_code == 404

    @pytest.mark.parametrize("count", [0, -1])
    def test_update_rejects_non_positive_count(self, client, count):
        token = _create(client)["session"]["sessionToken"]

        response = client.post(
            "/v1/auth/guest/update", json={"token": token, "messageCount": count}
        )

        assert response.status_code == 400
        assert response.json()["errorType"] == "validation_error"
