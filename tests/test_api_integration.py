import asyncio

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from vauth.api.routes import WS_UNAUTHORIZED
from vauth.app import app
from vauth.service.runtime import get_runtime


def _register(username="alice", password="hunter22", profile=None):
    runtime = get_runtime()
    return asyncio.run(runtime.identity.register_principal(username, password, profile))


def _admin_headers(client):
    resp = client.post("/v1/admin/login", json={"username": "admin", "password": "admin-password"})
    assert resp.status_code == 200
    return {"Authorization": f"Bearer {resp.json()['data']['access_token']}"}


def _login_and_capture_token(client, headers, device_id, username="alice", password="hunter22"):
    """Log in while listening as the device; return the delivered secret."""
    with client.websocket_connect(f"/v1/admin/devices/{device_id}/tokens") as ws:
        ws.send_json({"access_token": headers["Authorization"].split(" ", 1)[1]})
        assert ws.receive_json() == {"event": "subscribed", "topic": f"device:{device_id}"}
        resp = client.post("/v1/auth/login", json={"username": username, "password": password})
        assert resp.status_code == 200
        message = ws.receive_json()
    assert message["event"] == "token-delivered"
    assert message["device_id"] == device_id
    return message["token"]


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


class TestUserFlow:
    def test_login_verify_session_logout(self, client):
        alice = _register()
        headers = _admin_headers(client)
        secret = _login_and_capture_token(client, headers, alice.device_id)

        resp = client.post(
            "/v1/auth/verify-token", json={"device_id": alice.device_id, "token": secret}
        )
        assert resp.status_code == 200
        session_id = resp.json()["data"]["session_id"]
        assert client.cookies.get("session_id") == session_id

        status = client.get("/v1/auth/session")
        body = status.json()["data"]
        assert body["authenticated"] is True
        assert body["username"] == "alice"
        assert body["status"] == "VALID"
        assert 0 < body["time_remaining"] <= 600

        out = client.post("/v1/auth/logout")
        assert out.json()["data"] == {"logged_out": True}
        after = client.get("/v1/auth/session", headers={"session_id": session_id})
        assert after.json()["data"]["authenticated"] is False
        assert after.json()["data"]["status"] == "INACTIVE"

    def test_login_response_exposes_device_not_secret(self, client):
        alice = _register()
        resp = client.post("/v1/auth/login", json={"username": "alice", "password": "hunter22"})
        data = resp.json()["data"]
        assert data["device_id"] == alice.device_id
        assert set(data) == {"device_id", "token_expires_at"}

    def test_bad_credentials_are_401(self, client):
        _register()
        resp = client.post("/v1/auth/login", json={"username": "alice", "password": "nope"})
        assert resp.status_code == 401
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"
        assert body["error"]["message"] == "invalid credentials"

    def test_reused_token_is_rejected(self, client):
        alice = _register()
        headers = _admin_headers(client)
        secret = _login_and_capture_token(client, headers, alice.device_id)
        payload = {"device_id": alice.device_id, "token": secret}

        assert client.post("/v1/auth/verify-token", json=payload).status_code == 200
        again = client.post("/v1/auth/verify-token", json=payload)

        assert again.status_code == 401
        assert again.json()["error"]["message"] == "invalid token"

    @pytest.mark.parametrize(
        "payload",
        [
            {"username": "al", "password": "hunter22"},
            {"username": "alice"},
            {"username": "alice", "password": "hunter22", "extra": True},
        ],
    )
    def test_malformed_login_is_400(self, client, payload):
        resp = client.post("/v1/auth/login", json=payload)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_wrong_length_token_is_400(self, client):
        alice = _register()
        resp = client.post(
            "/v1/auth/verify-token", json={"device_id": alice.device_id, "token": "ABC"}
        )
        assert resp.status_code == 400

    def test_session_without_reference(self, client):
        resp = client.get("/v1/auth/session")
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "NOT_FOUND"


class TestAdminApi:
    def test_admin_endpoints_require_bearer(self, client):
        for method, path in [
            ("get", "/v1/admin/tokens"),
            ("get", "/v1/admin/sessions"),
            ("get", "/v1/admin/dashboard-stats"),
            ("get", "/v1/admin/users"),
        ]:
            resp = getattr(client, method)(path)
            assert resp.status_code == 401
            assert resp.json()["error"]["code"] == "unauthorized"

    def test_bad_admin_password(self, client):
        resp = client.post("/v1/admin/login", json={"username": "admin", "password": "wrong"})
        assert resp.status_code == 401

    def test_virtual_token_can_be_verified(self, client):
        alice = _register()
        headers = _admin_headers(client)

        resp = client.post(
            "/v1/admin/virtual-device/generate-token",
            json={"device_id": alice.device_id},
            headers=headers,
        )
        issued = resp.json()["data"]
        verify = client.post(
            "/v1/auth/verify-token",
            json={"device_id": alice.device_id, "token": issued["token"]},
        )

        assert resp.status_code == 200
        assert verify.status_code == 200

    def test_virtual_token_unknown_device(self, client):
        headers = _admin_headers(client)
        resp = client.post(
            "/v1/admin/virtual-device/generate-token",
            json={"device_id": "VAUTH-NOBODY00"},
            headers=headers,
        )
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_token_listing_and_deletion(self, client):
        alice = _register()
        headers = _admin_headers(client)
        client.post(
            "/v1/admin/virtual-device/generate-token",
            json={"device_id": alice.device_id},
            headers=headers,
        )

        listed = client.get("/v1/admin/tokens?status=active", headers=headers).json()["data"]
        token_id = listed["items"][0]["id"]
        assert listed["items"][0]["status"] == "ACTIVE"
        assert "digest" not in listed["items"][0]

        assert client.delete(f"/v1/admin/tokens/{token_id}", headers=headers).status_code == 200
        missing = client.delete(f"/v1/admin/tokens/{token_id}", headers=headers)
        assert missing.status_code == 404

    def test_invalid_status_filter(self, client):
        headers = _admin_headers(client)
        resp = client.get("/v1/admin/tokens?status=bogus", headers=headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_sessions_and_force_logout(self, client):
        alice = _register()
        headers = _admin_headers(client)
        issued = client.post(
            "/v1/admin/virtual-device/generate-token",
            json={"device_id": alice.device_id},
            headers=headers,
        ).json()["data"]
        session_id = client.post(
            "/v1/auth/verify-token",
            json={"device_id": alice.device_id, "token": issued["token"]},
        ).json()["data"]["session_id"]

        sessions = client.get("/v1/admin/sessions", headers=headers).json()["data"]["items"]
        assert [s["id"] for s in sessions] == [session_id]
        assert sessions[0]["username"] == "alice"

        forced = client.post(f"/v1/admin/sessions/{session_id}/force-logout", headers=headers)
        assert forced.json()["data"]["status"] == "FORCED_LOGOUT"
        again = client.post(f"/v1/admin/sessions/{session_id}/force-logout", headers=headers)
        assert again.status_code == 404
        status = client.get("/v1/auth/session", headers={"session_id": session_id})
        assert status.json()["data"]["authenticated"] is False

    def test_auto_purge_toggle_and_stats(self, client):
        _register()
        headers = _admin_headers(client)

        toggled = client.patch(
            "/v1/admin/auto-delete-expired", json={"enabled": True}, headers=headers
        )
        stats = client.get("/v1/admin/dashboard-stats", headers=headers).json()["data"]

        assert toggled.json()["data"] == {"enabled": True, "purged": 0}
        assert stats["auto_purge_enabled"] is True
        assert stats["total_users"] == 1

    def test_users_listing_decrypts_profile(self, client):
        _register(profile={"email": "alice@example.com"})
        headers = _admin_headers(client)

        users = client.get("/v1/admin/users", headers=headers).json()["data"]["items"]

        assert users[0]["username"] == "alice"
        assert users[0]["profile"]["email"] == "alice@example.com"
        assert "password_hash" not in users[0]

    def test_admin_logout_revokes_bearer(self, client):
        headers = _admin_headers(client)
        assert client.post("/v1/admin/logout", headers=headers).status_code == 200
        assert client.get("/v1/admin/users", headers=headers).status_code == 401


class TestEventStream:
    def test_admin_stream_receives_login_events(self, client):
        _register()
        headers = _admin_headers(client)
        access_token = headers["Authorization"].split(" ", 1)[1]

        with client.websocket_connect("/v1/admin/events") as ws:
            ws.send_json({"access_token": access_token})
            assert ws.receive_json()["event"] == "subscribed"
            client.post("/v1/auth/login", json={"username": "alice", "password": "nope"})
            message = ws.receive_json()

        assert message["event"] == "user-login-attempt"
        assert message["success"] is False
        assert "timestamp" in message

    def test_stream_rejects_bad_access_token(self, client):
        with client.websocket_connect("/v1/admin/events") as ws:
            ws.send_json({"access_token": "forged"})
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
        assert exc_info.value.code == WS_UNAUTHORIZED


class TestHealth:
    def test_healthz_reports_components(self, client):
        resp = client.get("/healthz")
        body = resp.json()

        assert resp.status_code == 200
        assert body["status"] == "healthy"
        assert body["checks"]["store"] == {"status": "healthy", "type": "memory"}
        assert body["checks"]["redis"] == {"status": "not_configured"}
        assert body["checks"]["maintenance"]["status"] == "running"

    def test_security_and_correlation_headers(self, client):
        resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in resp.headers["Cache-Control"]
