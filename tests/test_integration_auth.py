"""Integration tests for the authentication endpoints.

Covers:
- Password login and token verification
- Token refresh and single-use refresh tokens
- Logout
- API key and application password lifecycles
- Rate limit headers and 429 responses
"""

import base64

import pytest
from fastapi.testclient import TestClient

from apigate import app as app_module
from apigate.service.runtime import get_runtime, reset_runtime_for_tests

PASSWORD = "Correct-Horse-Battery-9"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _create_user(username="alice", roles=None, meta=None):
    runtime = get_runtime()
    user = runtime.store.create_user(
        username, f"{username}@example.com", roles=roles or ["subscriber"], meta=meta
    )
    password_hash, algo = runtime.passwords.hash(PASSWORD)
    runtime.store.save_password(user.id, password_hash, algo)
    return user


def _login(client, username="alice", password=PASSWORD):
    response = client.post("/v1/auth/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["data"]["tokens"]


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _basic(username, password):
    encoded = base64.b64encode(f"{username}:{password}".encode()).decode()
    return {"Authorization": f"Basic {encoded}"}


class TestLogin:
    def test_login_returns_user_and_tokens(self, client):
        _create_user()
        response = client.post("/v1/auth/login", json={"username": "alice", "password": PASSWORD})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["strategy"] == "jwt"
        assert data["user"]["username"] == "alice"
        assert data["user"]["roles"] == ["subscriber"]
        assert "read_post" in data["user"]["capabilities"]
        assert data["tokens"]["token_type"] == "Bearer"
        assert data["tokens"]["expires_in"] == 3600

    def test_login_wrong_password(self, client):
        _create_user()
        response = client.post("/v1/auth/login", json={"username": "alice", "password": "wrong"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "auth_invalid"
        assert "Bearer" in response.headers["WWW-Authenticate"]

    def test_login_without_credentials(self, client):
        response = client.post("/v1/auth/login", json={})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_failed"

    def test_login_unknown_strategy(self, client):
        response = client.post(
            "/v1/auth/login", json={"username": "a", "password": "b", "strategy": "oauth"}
        )
        assert response.status_code == 400

    def test_login_with_api_key(self, client):
        user = _create_user()
        record = get_runtime().api_keys.generate(user.id, "ci")
        response = client.post("/v1/auth/login", json={"api_key": record.api_key})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["strategy"] == "api_key"
        assert data["tokens"] is None

    def test_login_rate_limited_per_client(self, client, monkeypatch):
        monkeypatch.setenv("LOGIN_RATE_LIMIT_PER_MINUTE", "2")
        reset_runtime_for_tests()
        _create_user()
        for _ in range(2):
            client.post("/v1/auth/login", json={"username": "alice", "password": "wrong"})
        response = client.post("/v1/auth/login", json={"username": "alice", "password": PASSWORD})
        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1
        assert response.json()["error"]["code"] == "rate_limited"

    def test_forwarded_header_does_not_reset_login_bucket(self, client, monkeypatch):
        monkeypatch.setenv("LOGIN_RATE_LIMIT_PER_MINUTE", "2")
        reset_runtime_for_tests()
        _create_user()
        statuses = []
        for i in range(3):
            spoofed = {"X-Forwarded-For": f"10.0.0.{i}", "CF-Connecting-IP": f"10.1.0.{i}"}
            response = client.post(
                "/v1/auth/login",
                json={"username": "alice", "password": "wrong"},
                headers=spoofed,
            )
            statuses.append(response.status_code)
        assert statuses == [401, 401, 429]


class TestTokens:
    def test_verify_with_access_token(self, client):
        user = _create_user()
        tokens = _login(client)
        response = client.get("/v1/auth/verify", headers=_bearer(tokens["access_token"]))
        assert response.status_code == 200
        body = response.json()["data"]
        assert body["authenticated"] is True
        assert body["user"]["id"] == user.id
        assert response.headers["X-RateLimit-Limit"] == "1000"
        assert int(response.headers["X-RateLimit-Remaining"]) == 999

    def test_missing_credentials(self, client):
        response = client.get("/v1/auth/verify")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "auth_missing"
        assert "Basic" in response.headers["WWW-Authenticate"]

    def test_refresh_token_cannot_authenticate(self, client):
        _create_user()
        tokens = _login(client)
        response = client.get("/v1/auth/verify", headers=_bearer(tokens["refresh_token"]))
        assert response.status_code == 401

    def test_refresh_rotates_and_burns(self, client):
        _create_user()
        tokens = _login(client)
        response = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert response.status_code == 200
        fresh = response.json()["data"]
        assert fresh["access_token"] != tokens["access_token"]

        replay = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "auth_expired"

    def test_logout_revokes_tokens(self, client):
        _create_user()
        tokens = _login(client)
        response = client.post("/v1/auth/logout", headers=_bearer(tokens["access_token"]))
        assert response.status_code == 200
        assert response.json()["data"]["revoked"] == 2

        after = client.get("/v1/auth/verify", headers=_bearer(tokens["access_token"]))
        assert after.status_code == 401
        assert after.json()["error"]["code"] == "auth_expired"

    def test_logout_with_unknown_strategy_header(self, client):
        _create_user()
        tokens = _login(client)
        response = client.post(
            "/v1/auth/logout",
            headers={**_bearer(tokens["access_token"]), "X-Auth-Strategy": "oauth"},
        )
        assert response.status_code == 400

    def test_me_filters_denied_meta(self, client):
        _create_user(meta={"nickname": "al", "password_hash": "leak", "activation_key": "leak"})
        tokens = _login(client)
        response = client.get("/v1/auth/me", headers=_bearer(tokens["access_token"]))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["meta"] == {"nickname": "al"}
        assert data["auth_method"] == "jwt"


class TestAPIKeys:
    def test_create_list_use_and_revoke(self, client):
        _create_user()
        tokens = _login(client)
        created = client.post(
            "/v1/auth/api-keys",
            json={"name": "ci", "scopes": ["read"]},
            headers=_bearer(tokens["access_token"]),
        )
        assert created.status_code == 201
        api_key = created.json()["data"]["api_key"]
        assert api_key.startswith("wack_")

        listed = client.get("/v1/auth/api-keys", headers={"X-API-Key": api_key})
        assert listed.status_code == 200
        items = listed.json()["data"]["items"]
        assert len(items) == 1
        assert items[0]["name"] == "ci"
        assert api_key not in listed.text

        me = client.get("/v1/auth/me", headers={"Authorization": f"Key {api_key}"})
        assert me.json()["data"]["auth_method"] == "api_key"

        revoked = client.post(
            "/v1/auth/api-keys/revoke",
            json={"api_key": api_key},
            headers=_bearer(tokens["access_token"]),
        )
        assert revoked.status_code == 200
        assert client.get("/v1/auth/me", headers={"X-API-Key": api_key}).status_code == 401

    def test_cannot_revoke_foreign_key(self, client):
        owner = _create_user("owner")
        _create_user("mallory")
        record = get_runtime().api_keys.generate(owner.id, "ci")
        tokens = _login(client, "mallory")
        response = client.post(
            "/v1/auth/api-keys/revoke",
            json={"api_key": record.api_key},
            headers=_bearer(tokens["access_token"]),
        )
        assert response.status_code == 404
        assert not get_runtime().store.get_api_key(record.api_key).is_revoked

    def test_administrator_can_revoke_any_key(self, client):
        owner = _create_user("owner")
        _create_user("root", roles=["administrator"])
        record = get_runtime().api_keys.generate(owner.id, "ci")
        tokens = _login(client, "root")
        response = client.post(
            "/v1/auth/api-keys/revoke",
            json={"api_key": record.api_key},
            headers=_bearer(tokens["access_token"]),
        )
        assert response.status_code == 200

    def test_tampered_key_rejected(self, client):
        user = _create_user()
        record = get_runtime().api_keys.generate(user.id, "ci")
        tampered = record.api_key[:-2] + ("00" if not record.api_key.endswith("00") else "11")
        response = client.get("/v1/auth/me", headers={"X-API-Key": tampered})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid API key format"


class TestAppPasswords:
    def test_create_authenticate_and_delete(self, client):
        _create_user()
        tokens = _login(client)
        created = client.post(
            "/v1/auth/app-passwords",
            json={"name": "phone"},
            headers=_bearer(tokens["access_token"]),
        )
        assert created.status_code == 201
        data = created.json()["data"]
        password, uuid = data["password"], data["uuid"]

        me = client.get("/v1/auth/me", headers=_basic("alice", password))
        assert me.status_code == 200
        assert me.json()["data"]["auth_method"] == "app_password"

        listed = client.get("/v1/auth/app-passwords", headers=_basic("alice", password))
        assert [item["uuid"] for item in listed.json()["data"]["items"]] == [uuid]
        assert password not in listed.text

        deleted = client.delete(f"/v1/auth/app-passwords/{uuid}", headers=_bearer(tokens["access_token"]))
        assert deleted.status_code == 200
        assert client.get("/v1/auth/me", headers=_basic("alice", password)).status_code == 401

    def test_primary_password_not_accepted_over_basic(self, client):
        _create_user()
        response = client.get("/v1/auth/me", headers=_basic("alice", PASSWORD))
        assert response.status_code == 401

    def test_delete_unknown_password(self, client):
        _create_user()
        tokens = _login(client)
        response = client.delete("/v1/auth/app-passwords/missing", headers=_bearer(tokens["access_token"]))
        assert response.status_code == 404


class TestPlatform:
    def test_request_id_echoed(self, client):
        response = client.get("/v1/auth/verify", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"
        assert response.json()["request_id"] == "req-42"

    def test_security_headers(self, client):
        response = client.get("/v1/auth/verify")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]

    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["redis"] == {"status": "not_configured"}
        assert body["checks"]["filesystem"]["status"] == "healthy"
        assert body["checks"]["signing"]["algorithm"] == "RS256"
        assert body["checks"]["signing"]["strategies"] == ["jwt", "api_key", "app_password"]
