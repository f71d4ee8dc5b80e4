"""Integration tests for the authentication HTTP flow.

Tests the complete auth flow including:
- Registration and login with the refresh cookie
- Failed-login lockout and its expiry under a simulated clock
- Refresh rotation and replay rejection
- Password change invalidating older tokens
- Logout, logout from all devices
- Profile read/update and login history
- Email verification and password reset links
"""

import pytest
from fastapi.testclient import TestClient

from tripauth import app as app_module
from tripauth.api.routes import REFRESH_COOKIE

EMAIL = "a@x.com"
PASSWORD = "Passw0rd1"


@pytest.fixture
def client(runtime):
    """Create a test client bound to the clock-controlled runtime."""
    return TestClient(app_module.app)


def register(client, email=EMAIL, password=PASSWORD, name="Ann", **extra):
    return client.post(
        "/auth/register",
        json={"email": email, "password": password, "name": name, **extra},
    )


def login(client, email=EMAIL, password=PASSWORD, **extra):
    return client.post("/auth/login", json={"email": email, "password": password, **extra})


@pytest.fixture
def links(runtime, monkeypatch):
    """Capture the raw tokens the notifier would email."""
    sent = {"verify": [], "reset": []}
    monkeypatch.setattr(
        runtime.notifier,
        "notify_email_verification",
        lambda to_email, name, token, **_: sent["verify"].append(token),
    )
    monkeypatch.setattr(
        runtime.notifier,
        "notify_password_reset",
        lambda to_email, name, token, **_: sent["reset"].append(token),
    )
    return sent


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def refresh_with(client, token):
    """POST /auth/refresh presenting exactly ``token`` as the cookie."""
    client.cookies.clear()
    return client.post("/auth/refresh", headers={"Cookie": f"{REFRESH_COOKIE}={token}"})


def cleared_cookie(response):
    header = response.headers.get("set-cookie", "").lower()
    return f"{REFRESH_COOKIE}=" in header and "max-age=0" in header


class TestRegisterFlow:
    """Tests for account registration."""

    def test_register_returns_user_token_and_cookie(self, client):
        response = register(client, phone="555-0100", marketingOptIn=True)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["user"]["email"] == EMAIL
        assert data["user"]["role"] == "user"
        assert data["user"]["subscriptionTier"] == "free"
        assert data["user"]["phone"] == "555-0100"
        assert data["user"]["marketingOptIn"] is True
        assert data["expiresIn"] == 900
        assert data["accessToken"].count(".") == 2
        assert response.cookies.get(REFRESH_COOKIE)

    def test_refresh_cookie_is_httponly(self, client):
        response = register(client)
        header = response.headers["set-cookie"].lower()
        assert "httponly" in header
        assert "path=/" in header
        assert "samesite=lax" in header

    def test_duplicate_email_conflicts(self, client):
        register(client)
        response = register(client, email="A@X.com")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_invalid_fields_return_400_with_field_errors(self, client):
        response = register(client, email="not-an-email", password="weak", name="")

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        fields = {e["field"] for e in error["details"]["errors"]}
        assert fields == {"email", "password", "name"}

    def test_password_rules(self, client):
        response = register(client, password="alllowercase1")
        assert response.status_code == 400
        messages = [e["message"] for e in response.json()["error"]["details"]["errors"]]
        assert "password must contain an uppercase letter" in messages


class TestLoginAndLockout:
    """Login, the per-identifier lockout, and its expiry."""

    def test_login_success(self, client):
        register(client)
        response = login(client)

        assert response.status_code == 200
        assert response.json()["data"]["user"]["email"] == EMAIL
        assert response.cookies.get(REFRESH_COOKIE)

    def test_wrong_password_is_generic_401(self, client):
        register(client)
        wrong = login(client, password="Wrong0ne")
        unknown = login(client, email="ghost@x.com")

        for response in (wrong, unknown):
            assert response.status_code == 401
            error = response.json()["error"]
            assert error["code"] == "unauthorized"
            assert error["message"] == "invalid email or password"

    def test_lockout_then_recovery(self, client, clock):
        """Five failures lock the identifier; the lock lapses after the window."""
        assert register(client).status_code == 201

        for _ in range(5):
            assert login(client, password="Wrong0ne").status_code == 401

        locked = login(client)
        assert locked.status_code == 423
        error = locked.json()["error"]
        assert error["code"] == "locked"
        assert error["details"]["retryAfterSeconds"] > 0
        assert int(locked.headers["Retry-After"]) == error["details"]["retryAfterSeconds"]

        clock.advance(minutes=16)
        recovered = login(client)
        assert recovered.status_code == 200

    def test_remember_me_extends_cookie(self, client):
        register(client)
        response = login(client, rememberMe=True)
        header = response.headers["set-cookie"].lower()
        assert f"max-age={30 * 24 * 3600}" in header


class TestRefreshFlow:
    """Refresh, rotation and replay."""

    def test_refresh_rotates_cookie(self, client):
        register(client)
        old = client.cookies.get(REFRESH_COOKIE)

        response = client.post("/auth/refresh")

        assert response.status_code == 200
        assert response.json()["data"]["expiresIn"] == 900
        new = response.cookies.get(REFRESH_COOKIE)
        assert new and new != old

    def test_replayed_token_is_revoked_and_cookie_cleared(self, client):
        register(client)
        old = client.cookies.get(REFRESH_COOKIE)
        assert client.post("/auth/refresh").status_code == 200

        replay = refresh_with(client, old)

        assert replay.status_code == 401
        assert replay.json()["error"]["details"]["reason"] == "revoked"
        assert cleared_cookie(replay)

    def test_refresh_without_cookie(self, client):
        response = client.post("/auth/refresh")
        assert response.status_code == 401
        assert response.json()["error"]["details"]["reason"] == "no_token"

    def test_refresh_after_expiry(self, client, clock):
        register(client)
        clock.advance(days=7, seconds=1)

        response = client.post("/auth/refresh")
        assert response.status_code == 401
        assert response.json()["error"]["details"]["reason"] == "expired"

    def test_expired_access_token(self, client, clock):
        token = register(client).json()["data"]["accessToken"]
        clock.advance(minutes=15)

        response = client.get("/auth/me", headers=bearer(token))
        assert response.status_code == 401
        assert response.json()["error"]["details"]["reason"] == "expired"

        refreshed = client.post("/auth/refresh").json()["data"]["accessToken"]
        assert client.get("/auth/me", headers=bearer(refreshed)).status_code == 200


class TestPasswordChange:
    def test_change_invalidates_older_tokens(self, client, clock):
        token = register(client).json()["data"]["accessToken"]
        clock.advance(seconds=1)

        response = client.post(
            "/auth/change-password",
            json={"currentPassword": PASSWORD, "newPassword": "N3w-passw0rd!"},
            headers=bearer(token),
        )
        assert response.status_code == 200
        fresh = response.json()["data"]["accessToken"]

        stale = client.get("/auth/me", headers=bearer(token))
        assert stale.status_code == 401
        assert stale.json()["error"]["details"]["reason"] == "stale_password"
        assert client.get("/auth/me", headers=bearer(fresh)).status_code == 200

    def test_change_revokes_other_devices(self, client, clock):
        token = register(client).json()["data"]["accessToken"]
        other = TestClient(app_module.app)
        assert login(other).status_code == 200
        clock.advance(seconds=1)

        client.post(
            "/auth/change-password",
            json={"currentPassword": PASSWORD, "newPassword": "N3w-passw0rd!"},
            headers=bearer(token),
        )

        assert other.post("/auth/refresh").status_code == 401
        assert client.post("/auth/refresh").status_code == 200

    def test_new_password_must_be_strong(self, client):
        token = register(client).json()["data"]["accessToken"]
        response = client.post(
            "/auth/change-password",
            json={"currentPassword": PASSWORD, "newPassword": "Passw0rd2"},
            headers=bearer(token),
        )
        assert response.status_code == 400

    def test_wrong_current_password(self, client):
        token = register(client).json()["data"]["accessToken"]
        response = client.post(
            "/auth/change-password",
            json={"currentPassword": "Wrong0ne", "newPassword": "N3w-passw0rd!"},
            headers=bearer(token),
        )
        assert response.status_code == 401


class TestLogout:
    def test_logout_clears_cookie_and_session(self, client):
        token = register(client).json()["data"]["accessToken"]
        old = client.cookies.get(REFRESH_COOKIE)

        response = client.post("/auth/logout", headers=bearer(token))

        assert response.status_code == 200
        assert cleared_cookie(response)
        assert refresh_with(client, old).status_code == 401

    def test_logout_requires_authentication(self, client):
        response = client.post("/auth/logout")
        assert response.status_code == 401
        assert response.json()["error"]["details"]["reason"] == "no_token"

    def test_logout_all_revokes_every_device(self, client):
        token = register(client).json()["data"]["accessToken"]
        other = TestClient(app_module.app)
        login(other)

        response = client.post("/auth/logout-all", headers=bearer(token))

        assert response.status_code == 200
        assert response.json()["data"]["sessionsRemoved"] == 2
        assert other.post("/auth/refresh").status_code == 401


class TestProfile:
    def test_me_lists_sessions_and_marks_current(self, client):
        token = register(client).json()["data"]["accessToken"]
        login(TestClient(app_module.app))

        response = client.get("/auth/me", headers=bearer(token))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["email"] == EMAIL
        assert len(data["sessions"]) == 2
        assert sum(1 for s in data["sessions"] if s["current"]) == 1

    def test_update_profile(self, client):
        token = register(client).json()["data"]["accessToken"]

        response = client.put(
            "/auth/profile",
            json={"name": "Annie", "preferences": {"currency": "EUR"}},
            headers=bearer(token),
        )

        assert response.status_code == 200
        user = response.json()["data"]["user"]
        assert user["name"] == "Annie"
        assert user["preferences"] == {"currency": "EUR"}

    def test_email_change_conflict(self, client):
        register(TestClient(app_module.app), email="b@x.com")
        token = register(client).json()["data"]["accessToken"]

        response = client.put(
            "/auth/profile", json={"email": "b@x.com"}, headers=bearer(token)
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"


class TestSurface:
    def test_security_event_accepted(self, client):
        response = client.post(
            "/auth/security-events",
            json={"type": "TOKEN_REFRESH", "status": "failed", "context": {"attempt": 1}},
        )
        assert response.status_code == 202

    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["redis"]["status"] == "not_configured"
        assert body["checks"]["lockout_counter"]["clustered"] is False
        assert "no-store" in response.headers["Cache-Control"]

    def test_request_id_is_echoed(self, client):
        response = client.post("/auth/refresh", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"


class TestLoginHistory:
    def test_me_includes_login_history(self, client):
        token = register(client).json()["data"]["accessToken"]
        login(client, password="wrong")

        response = client.get("/auth/me", headers=bearer(token))

        history = response.json()["data"]["loginHistory"]
        assert [entry["success"] for entry in history] == [True, False]
        assert history[0]["device"] == "desktop"
        assert "timestamp" in history[0]


class TestEmailVerification:
    def test_verify_link_marks_email_verified(self, client, links):
        register(client)

        response = client.get(f"/auth/verify-email/{links['verify'][-1]}")

        assert response.status_code == 200
        assert response.json()["data"]["user"]["isEmailVerified"] is True

    def test_used_link_rejected(self, client, links):
        register(client)
        client.get(f"/auth/verify-email/{links['verify'][-1]}")

        response = client.get(f"/auth/verify-email/{links['verify'][-1]}")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_malformed_token_rejected(self, client):
        response = client.get("/auth/verify-email/not-a-token")
        assert response.status_code == 400

    def test_resend_requires_authentication(self, client):
        assert client.post("/auth/resend-verification").status_code == 401

    def test_resend_issues_a_new_link(self, client, links):
        token = register(client).json()["data"]["accessToken"]

        response = client.post("/auth/resend-verification", headers=bearer(token))

        assert response.status_code == 200
        assert len(links["verify"]) == 2
        assert client.get(f"/auth/verify-email/{links['verify'][0]}").status_code == 400
        assert client.get(f"/auth/verify-email/{links['verify'][1]}").status_code == 200


class TestPasswordReset:
    def test_forgot_password_response_does_not_reveal_accounts(self, client, links):
        register(client)

        known = client.post("/auth/forgot-password", json={"email": EMAIL})
        unknown = client.post("/auth/forgot-password", json={"email": "ghost@x.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]
        assert len(links["reset"]) == 1

    def test_reset_revokes_sessions_and_clears_cookie(self, client, clock, links):
        token = register(client).json()["data"]["accessToken"]
        login(TestClient(app_module.app))
        client.post("/auth/forgot-password", json={"email": EMAIL})
        clock.advance(seconds=1)

        response = client.post(
            f"/auth/reset-password/{links['reset'][-1]}", json={"password": "N3w-passw0rd!"}
        )

        assert response.status_code == 200
        assert response.json()["data"]["sessionsRemoved"] == 2
        assert cleared_cookie(response)
        assert client.get("/auth/me", headers=bearer(token)).status_code == 401
        assert login(client).status_code == 401
        assert login(client, password="N3w-passw0rd!").status_code == 200

    def test_weak_password_rejected(self, client, links):
        register(client)
        client.post("/auth/forgot-password", json={"email": EMAIL})

        response = client.post(
            f"/auth/reset-password/{links['reset'][-1]}", json={"password": "weak"}
        )

        assert response.status_code == 400
        assert login(client).status_code == 200

    def test_unknown_token_rejected(self, client):
        response = client.post(
            f"/auth/reset-password/{'ab' * 32}", json={"password": "N3w-passw0rd!"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"
