"""Integration tests for the /v1/auth API.

Runs the real app (lifespan, runtime, in-memory store and cache) through
FastAPI's TestClient.
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from kokoru.app import create_app
from kokoru.service.oauth import GoogleProfile
from kokoru.service.tokens import hash_token
from kokoru.storage.models import utcnow

EMAIL = "gardener@example.com"
PASSWORD = "Bonsai-Juniper42"
NEW_PASSWORD = "Maple-Shohin77"


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as client:
        yield client


@pytest.fixture
def runtime(client):
    return client.app.state.runtime


def _register(client, email=EMAIL, password=PASSWORD):
    return client.post(
        "/v1/auth/register",
        json={"email": email, "password": password, "first_name": "Yuki", "last_name": "Kimura"},
    )


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _plant_token(runtime, email, **fields):
    """Store a known one-time token so the test can redeem it."""
    identity = runtime.store.get_identity_by_email(email)
    runtime.store.update_identity(identity.id, **fields)
    return identity


class TestRegisterAndLogin:
    def test_register_returns_user_and_tokens(self, client):
        response = _register(client)
        data = response.json()["data"]

        assert response.status_code == 201
        assert data["user"]["email"] == EMAIL
        assert data["user"]["is_email_verified"] is False
        assert data["tokens"]["token_type"] == "Bearer"
        assert data["tokens"]["expires_in"] == 900
        assert data["requires_onboarding"] is True
        assert "password_hash" not in data["user"]

    def test_duplicate_registration(self, client):
        _register(client)
        response = _register(client, email="GARDENER@example.com")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_weak_password_and_missing_fields(self, client):
        weak = _register(client, password="weak")
        missing = client.post("/v1/auth/register", json={"email": EMAIL})

        assert weak.status_code == 400
        assert weak.json()["error"]["details"]["errors"]
        assert missing.status_code == 400
        assert missing.json()["error"]["code"] == "validation_error"

    def test_login(self, client):
        _register(client)

        ok = client.post("/v1/auth/login", json={"email": EMAIL, "password": PASSWORD})
        bad = client.post("/v1/auth/login", json={"email": EMAIL, "password": "Wrong-Password1"})

        assert ok.status_code == 200
        assert ok.json()["data"]["user"]["has_logged_in"] is True
        assert bad.status_code == 401
        assert bad.json()["error"] == {
            "code": "unauthorized",
            "message": "Invalid credentials",
            "details": None,
        }

    def test_lockout_after_repeated_failures(self, client):
        _register(client)
        statuses = [
            client.post("/v1/auth/login", json={"email": EMAIL, "password": "Wrong-Password1"}).status_code
            for _ in range(5)
        ]

        assert statuses == [401, 401, 401, 401, 423]
        locked = client.post("/v1/auth/login", json={"email": EMAIL, "password": PASSWORD})
        assert locked.status_code == 423
        assert locked.json()["error"]["code"] == "account_locked"


class TestSessions:
    def test_me_requires_a_valid_bearer(self, client):
        tokens = _register(client).json()["data"]["tokens"]

        me = client.get("/v1/auth/me", headers=_auth(tokens["access_token"]))
        anonymous = client.get("/v1/auth/me")
        garbage = client.get("/v1/auth/me", headers=_auth("garbage"))

        assert me.status_code == 200
        assert me.json()["data"]["user"]["email"] == EMAIL
        assert anonymous.status_code == 401
        assert garbage.status_code == 400
        assert garbage.json()["error"]["code"] == "invalid_token"

    def test_refresh_rotates(self, client):
        tokens = _register(client).json()["data"]["tokens"]

        rotated = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        replay = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})

        assert rotated.status_code == 200
        assert rotated.json()["data"]["refresh_token"] != tokens["refresh_token"]
        assert replay.status_code == 400

    def test_logout_revokes_the_presented_access_token(self, client):
        tokens = _register(client).json()["data"]["tokens"]
        headers = _auth(tokens["access_token"])

        assert client.post("/v1/auth/logout", headers=headers).status_code == 200
        assert client.get("/v1/auth/me", headers=headers).status_code == 400
        assert client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}).status_code == 400


class TestEmailFlows:
    def test_verify_email(self, client, runtime):
        access = _register(client).json()["data"]["tokens"]["access_token"]
        _plant_token(
            runtime,
            EMAIL,
            email_verification_token=hash_token("known-token"),
            email_verification_expires=utcnow() + timedelta(hours=1),
        )

        response = client.post("/v1/auth/verify-email", json={"token": "known-token"})
        again = client.post("/v1/auth/verify-email", json={"token": "known-token"})

        assert response.status_code == 200
        assert response.json()["data"]["user"]["is_email_verified"] is True
        assert again.status_code == 400
        me = client.get("/v1/auth/me", headers=_auth(access)).json()["data"]
        assert me["user"]["is_email_verified"] is True

    def test_forgot_password_response_is_uniform(self, client):
        _register(client)

        known = client.post("/v1/auth/forgot-password", json={"email": EMAIL})
        unknown = client.post("/v1/auth/forgot-password", json={"email": "nobody@example.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

    def test_reset_password(self, client, runtime):
        _register(client)
        _plant_token(
            runtime,
            EMAIL,
            password_reset_token=hash_token("reset-token"),
            password_reset_expires=utcnow() + timedelta(minutes=30),
        )

        response = client.post(
            "/v1/auth/reset-password", json={"token": "reset-token", "new_password": NEW_PASSWORD}
        )

        assert response.status_code == 200
        assert client.post("/v1/auth/login", json={"email": EMAIL, "password": NEW_PASSWORD}).status_code == 200
        assert client.post("/v1/auth/login", json={"email": EMAIL, "password": PASSWORD}).status_code == 401

    def test_resend_verification_is_rate_limited(self, client):
        access = _register(client).json()["data"]["tokens"]["access_token"]

        first = client.post("/v1/auth/resend-verification", headers=_auth(access))
        second = client.post("/v1/auth/resend-verification", headers=_auth(access))

        assert first.status_code == 200
        assert second.status_code == 429
        assert second.json()["error"]["code"] == "rate_limited"


class TestGoogle:
    def test_google_url(self, client, settings):
        response = client.get("/v1/auth/google/url")
        data = response.json()["data"]

        assert response.status_code == 200
        assert data["state"]
        assert settings.google_client_id in data["authorization_url"]

    def test_google_sign_in(self, client, runtime, monkeypatch):
        profile = GoogleProfile(provider_user_id="g-1", email="leaf@example.com", email_verified=True)
        monkeypatch.setattr(runtime.oauth, "process_google_code", AsyncMock(return_value=profile))

        state = client.get("/v1/auth/google/url").json()["data"]["state"]

        response = client.post("/v1/auth/google", json={"code": "4/0Abc", "state": state})
        data = response.json()["data"]

        assert response.status_code == 200
        assert data["is_new_user"] is True
        assert data["user"]["auth_provider"] == "google"

    def test_google_failure_is_generic(self, client, runtime, monkeypatch):
        monkeypatch.setattr(runtime.oauth, "_exchange_code", AsyncMock(side_effect=RuntimeError("network")))

        state = client.get("/v1/auth/google/url").json()["data"]["state"]

        response = client.post("/v1/auth/google", json={"code": "4/0Abc", "state": state})

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Google authentication failed"

    def test_google_requires_an_issued_state(self, client, runtime, monkeypatch):
        exchange = AsyncMock()
        monkeypatch.setattr(runtime.oauth, "process_google_code", exchange)

        forged = client.post("/v1/auth/google", json={"code": "4/0Abc", "state": "forged"})
        missing = client.post("/v1/auth/google", json={"code": "4/0Abc"})

        assert forged.status_code == 401
        assert missing.status_code == 400
        exchange.assert_not_called()


class TestAppSurface:
    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["checks"]["redis"]["status"] == "not_configured"

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-abc"})

        assert response.headers["X-Request-ID"] == "req-abc"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
