"""End-to-end tests for the /api/auth routes against the in-memory store."""

import pytest
from fastapi.testclient import TestClient

from authkernel import app as app_module
from authkernel.service.runtime import get_runtime, reset_runtime_for_tests

PASSWORD = "Str0ng!Passw0rd"
NEW_PASSWORD = "N3w!Passw0rd-2"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, email="alice@example.com", password=PASSWORD, **extra):
    body = {
        "email": email,
        "password": password,
        "confirm_password": extra.pop("confirm_password", password),
        **extra,
    }
    return client.post("/api/auth/register", json=body)


def _login(client, email="alice@example.com", password=PASSWORD, **extra):
    return client.post(
        "/api/auth/login", json={"email": email, "password": password, **extra}
    )


def _auth(tokens):
    return {"Authorization": f"Bearer {tokens['access_token']}"}


class TestRegistration:
    def test_register_returns_session_and_cookies(self, client):
        resp = _register(client, first_name="Alice", last_name="Smith")

        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["user"]["email"] == "alice@example.com"
        assert data["user"]["display_name"] == "Alice Smith"
        assert data["user"]["email_verified"] is True
        assert data["tokens"]["token_type"] == "Bearer"
        assert data["tokens"]["expires_in"] == 900
        assert data["session_id"]
        assert "access_token" in resp.cookies
        assert "refresh_token" in resp.cookies
        assert resp.cookies.get("session_active") == "true"

    def test_duplicate_email_conflicts(self, client):
        assert _register(client).status_code == 201

        resp = _register(TestClient(app_module.app), email="ALICE@example.com")

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_weak_password_rejected(self, client):
        resp = _register(client, password="abc")

        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert len(error["details"]["errors"]) == 4

    def test_mismatched_confirmation_rejected(self, client):
        resp = _register(client, confirm_password="Other!Passw0rd")

        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "passwords do not match"

    def test_invalid_email_rejected(self, client):
        resp = _register(client, email="not-an-email")

        assert resp.status_code == 422


class TestLoginAndSessions:
    def test_login_and_me(self, client):
        _register(client)
        fresh = TestClient(app_module.app)

        resp = _login(fresh)

        assert resp.status_code == 200
        tokens = resp.json()["data"]["tokens"]
        me = TestClient(app_module.app).get("/api/auth/me", headers=_auth(tokens))
        assert me.status_code == 200
        assert me.json()["data"]["email"] == "alice@example.com"
        assert me.json()["data"]["last_login_at"] is not None

    def test_wrong_password(self, client):
        _register(client)

        resp = _login(TestClient(app_module.app), password="Wrong!Passw0rd")

        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "invalid email or password"
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    def test_cookie_authenticates_browser_client(self, client):
        _register(client)

        resp = client.get("/api/auth/profile")

        assert resp.status_code == 200
        assert resp.json()["data"]["email"] == "alice@example.com"

    def test_missing_token(self, client):
        resp = client.get("/api/auth/me")

        assert resp.status_code == 401
        error = resp.json()["error"]
        assert error["code"] == "unauthorized"
        assert error["details"]["reason"] == "missing_token"

    def test_refresh_sources(self, client):
        _register(client)
        api = TestClient(app_module.app)
        refresh_token = _login(api).json()["data"]["tokens"]["refresh_token"]

        by_body = TestClient(app_module.app).post(
            "/api/auth/refresh", json={"refresh_token": refresh_token}
        )
        by_header = TestClient(app_module.app).post(
            "/api/auth/refresh", headers={"Authorization": f"Bearer {refresh_token}"}
        )
        by_cookie = api.post("/api/auth/refresh")

        for resp in (by_body, by_header, by_cookie):
            assert resp.status_code == 200
            assert resp.json()["data"]["access_token"]
            assert resp.json()["data"]["refresh_token"] == refresh_token

    def test_refresh_without_token(self, client):
        resp = client.post("/api/auth/refresh")

        assert resp.status_code == 401
        assert resp.json()["error"]["details"] == {"reason": "missing_token"}

    def test_logout_kills_refresh_token(self, client):
        tokens = _register(client).json()["data"]["tokens"]
        api = TestClient(app_module.app)

        resp = api.post("/api/auth/logout", headers=_auth(tokens))

        assert resp.status_code == 200
        assert resp.json()["data"]["message"] == "logged out"
        again = api.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert again.status_code == 401
        assert again.json()["error"]["details"]["reason"] == "session_not_found"

    def test_logout_all(self, client):
        _register(client)
        first = _login(TestClient(app_module.app)).json()["data"]["tokens"]
        _login(TestClient(app_module.app))

        resp = TestClient(app_module.app).post("/api/auth/logout/all", headers=_auth(first))

        assert resp.status_code == 200
        assert resp.json()["data"]["count"] == 3
        assert get_runtime().store.list_sessions(
            get_runtime().store.get_user_by_email("alice@example.com").id,
            get_runtime().issuer.clock(),
        ) == []

    def test_list_and_revoke_sessions(self, client):
        _register(client)
        api = TestClient(app_module.app)
        login = _login(api).json()["data"]
        headers = _auth(login["tokens"])

        listed = api.get("/api/auth/sessions", headers=headers).json()["data"]["items"]

        assert len(listed) == 2
        current = [s for s in listed if s["current"]]
        assert [s["id"] for s in current] == [login["session_id"]]
        other = next(s["id"] for s in listed if not s["current"])

        assert api.delete(f"/api/auth/sessions/{other}", headers=headers).status_code == 200
        missing = api.delete(f"/api/auth/sessions/{other}", headers=headers)
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "not_found"

    def test_cannot_revoke_someone_elses_session(self, client):
        alice_session = _register(client).json()["data"]["session_id"]
        bob = _register(TestClient(app_module.app), email="bob@example.com").json()["data"]

        resp = TestClient(app_module.app).delete(
            f"/api/auth/sessions/{alice_session}", headers=_auth(bob["tokens"])
        )

        assert resp.status_code == 404

    def test_update_profile(self, client):
        tokens = _register(client, first_name="Alice").json()["data"]["tokens"]

        resp = TestClient(app_module.app).put(
            "/api/auth/profile", json={"last_name": "Smith"}, headers=_auth(tokens)
        )

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["first_name"] == "Alice"
        assert data["display_name"] == "Alice Smith"


class TestPasswordFlows:
    def test_change_password_ends_sessions(self, client):
        tokens = _register(client).json()["data"]["tokens"]
        api = TestClient(app_module.app)

        resp = api.put(
            "/api/auth/change-password",
            json={
                "current_password": PASSWORD,
                "new_password": NEW_PASSWORD,
                "confirm_password": NEW_PASSWORD,
            },
            headers=_auth(tokens),
        )

        assert resp.status_code == 200
        assert resp.json()["data"]["message"] == "password changed"
        stale = api.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert stale.status_code == 401
        assert _login(api, password=PASSWORD).status_code == 401
        assert _login(api, password=NEW_PASSWORD).status_code == 200

    def test_change_password_requires_current(self, client):
        tokens = _register(client).json()["data"]["tokens"]

        resp = TestClient(app_module.app).put(
            "/api/auth/change-password",
            json={
                "current_password": "Wrong!Passw0rd",
                "new_password": NEW_PASSWORD,
                "confirm_password": NEW_PASSWORD,
            },
            headers=_auth(tokens),
        )

        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "current password is incorrect"

    def test_forgot_and_reset_password(self, client, notifier):
        get_runtime().auth.notifier = notifier
        tokens = _register(client).json()["data"]["tokens"]
        api = TestClient(app_module.app)

        forgot = api.post("/api/auth/forgot-password", json={"email": "alice@example.com"})
        unknown = api.post("/api/auth/forgot-password", json={"email": "nobody@example.com"})

        assert forgot.status_code == unknown.status_code == 200
        assert forgot.json()["data"] == unknown.json()["data"]
        assert len(notifier.resets) == 1
        assert notifier.resets[0]["ttl_minutes"] == 30

        body = {
            "token": notifier.last_reset_token,
            "new_password": NEW_PASSWORD,
            "confirm_password": NEW_PASSWORD,
        }
        reset = api.post("/api/auth/reset-password", json=body)
        assert reset.status_code == 200
        assert reset.json()["data"]["message"] == "password has been reset"

        replay = api.post("/api/auth/reset-password", json=body)
        assert replay.status_code == 400
        assert replay.json()["error"]["message"] == "invalid or expired token"

        stale = api.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert stale.status_code == 401
        assert _login(api, password=NEW_PASSWORD).status_code == 200


class TestEmailVerification:
    def test_verification_gates_login_until_confirmed(self, client, notifier):
        runtime = get_runtime()
        runtime.auth.notifier = notifier
        runtime.settings.email_verification_enabled = True

        registered = _register(client, first_name="Alice")
        assert registered.status_code == 201
        assert registered.json()["data"]["user"]["email_verified"] is False
        assert notifier.verifications[0]["name"] == "Alice"
        assert notifier.verifications[0]["ttl_hours"] == 24

        api = TestClient(app_module.app)
        blocked = _login(api)
        assert blocked.status_code == 401
        assert blocked.json()["error"]["details"]["reason"] == "email_not_verified"

        tokens = registered.json()["data"]["tokens"]
        me = api.get("/api/auth/me", headers=_auth(tokens))
        assert me.status_code == 401

        verified = api.get(
            "/api/auth/verify-email", params={"token": notifier.last_verification_token}
        )
        assert verified.status_code == 200
        assert verified.json()["data"]["user"]["email_verified"] is True
        assert "access_token" in verified.cookies
        assert notifier.welcomes

        assert _login(TestClient(app_module.app)).status_code == 200
        replay = api.get(
            "/api/auth/verify-email", params={"token": notifier.last_verification_token}
        )
        assert replay.status_code == 400

    def test_resend_verification(self, client, notifier):
        runtime = get_runtime()
        runtime.auth.notifier = notifier
        runtime.settings.email_verification_enabled = True
        _register(client)

        resp = TestClient(app_module.app).post(
            "/api/auth/resend-verification", json={"email": "alice@example.com"}
        )

        assert resp.status_code == 200
        assert len(notifier.verifications) == 2
        missing = TestClient(app_module.app).post(
            "/api/auth/resend-verification", json={"email": "nobody@example.com"}
        )
        assert missing.status_code == 404


class TestPublicEndpoints:
    def test_stats(self, client):
        _register(client)
        _register(TestClient(app_module.app), email="bob@example.com")

        data = client.get("/api/auth/stats").json()["data"]

        assert data == {"total_users": 2, "active_sessions": 2, "verified_users": 2}

    def test_check_email(self, client):
        _register(client)

        taken = client.get("/api/auth/check-email", params={"email": "Alice@Example.com"})
        free = client.get("/api/auth/check-email", params={"email": "bob@example.com"})
        invalid = client.get("/api/auth/check-email", params={"email": "nope"})

        assert taken.json()["data"] == {"exists": True}
        assert free.json()["data"] == {"exists": False}
        assert invalid.status_code == 400
        assert invalid.json()["error"]["details"] == {"field": "email"}

    def test_health(self, client):
        resp = client.get("/health")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
        assert body["version"] == app_module.__version__


class TestMiddleware:
    def test_sixth_login_is_rate_limited(self, client):
        responses = [
            _login(client, email="nobody@example.com", password="Wrong!Passw0rd")
            for _ in range(6)
        ]

        assert [r.status_code for r in responses] == [401] * 5 + [429]
        limited = responses[-1]
        assert limited.json()["error"]["code"] == "rate_limited"
        assert 0 < limited.json()["error"]["details"]["retry_after"] <= 900
        assert limited.headers["Retry-After"] == str(limited.json()["error"]["details"]["retry_after"])
        assert limited.headers["X-RateLimit-Remaining"] == "0"
        assert responses[0].headers["X-RateLimit-Limit"] == "5"
        assert responses[0].headers["X-RateLimit-Remaining"] == "4"

    def test_rate_limit_is_per_client(self, client):
        for _ in range(6):
            _login(client, email="nobody@example.com", password="Wrong!Passw0rd")

        other = client.post(
            "/api/auth/login",
            json={"email": "nobody@example.com", "password": "Wrong!Passw0rd"},
            headers={"User-Agent": "another-browser"},
        )

        assert other.status_code == 401

    def test_forwarded_header_from_untrusted_peer_is_ignored(self, client):
        codes = [
            client.post(
                "/api/auth/login",
                json={"email": "nobody@example.com", "password": "Wrong!Passw0rd"},
                headers={"X-Forwarded-For": f"10.0.0.{i}"},
            ).status_code
            for i in range(6)
        ]

        assert codes == [401] * 5 + [429]

    def test_forwarded_header_from_trusted_proxy_keys_the_client(self, client, monkeypatch):
        monkeypatch.setenv("TRUSTED_PROXIES", "testclient")
        reset_runtime_for_tests()

        def attempt(forwarded):
            return client.post(
                "/api/auth/login",
                json={"email": "nobody@example.com", "password": "Wrong!Passw0rd"},
                headers={"X-Forwarded-For": forwarded},
            ).status_code

        codes = [attempt(f"10.0.0.{i}, 203.0.113.7") for i in range(6)]

        assert codes == [401] * 5 + [429]
        assert attempt("198.51.100.9") == 401

    def test_rate_limited_response_carries_cors_headers(self, client):
        origin = {"Origin": "http://localhost:3001"}
        for _ in range(5):
            client.post(
                "/api/auth/login",
                json={"email": "nobody@example.com", "password": "Wrong!Passw0rd"},
                headers=origin,
            )

        resp = client.post(
            "/api/auth/login",
            json={"email": "nobody@example.com", "password": "Wrong!Passw0rd"},
            headers=origin,
        )

        assert resp.status_code == 429
        assert resp.headers["Access-Control-Allow-Origin"] == "http://localhost:3001"
        assert "Retry-After" in resp.headers["Access-Control-Expose-Headers"]

    def test_unlimited_routes_have_no_rate_headers(self, client):
        resp = client.get("/api/auth/stats")

        assert "X-RateLimit-Limit" not in resp.headers

    def test_request_id_echoed(self, client):
        resp = client.get("/api/auth/me", headers={"X-Request-ID": "trace-42"})

        assert resp.headers["X-Request-ID"] == "trace-42"
        assert resp.json()["request_id"] == "trace-42"

    def test_security_headers(self, client):
        resp = client.get("/api/auth/stats")

        assert resp.headers["X-Frame-Options"] == "DENY"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["Cache-Control"] == "no-store"
        assert "Strict-Transport-Security" not in resp.headers
