"""
tests/test_api_routes.py -- Integration tests for the auth and security API routes.

These tests exercise the full stack: FastAPI routing -> auth dependency
injection -> LoginService / MFAService / LoginAuditRecorder -> response model
serialization -> error envelope. Unit testing individual route functions
would miss middleware, dependency injection, and the exception handlers --
integration tests are the right tool here.

Coverage:
  - Auth failures: 401 envelope on protected routes without / with bad tokens
  - Login: bearer + cookie, no-store, validation, bad credentials, rate limit
  - Logout and session revocation end the session server-side
  - MFA: setup, verify, re-setup conflict, login challenge, backup code, disable
  - Login history: filter narrows records, stats cover everything

Fixtures used (from conftest.py):
  - api_client: (client, services, user) -- user password is TEST_PASSWORD.
    Tests that depend on exact counts create their own user through
    services.user_store so module-level state cannot leak between them.
"""

from __future__ import annotations

import re

import pyotp

from conftest import CHROME_WINDOWS_UA, TEST_PASSWORD, create_user, login_token


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _max_age(set_cookie: str) -> int:
    return int(re.search(r"Max-Age=(\d+)", set_cookie).group(1))


class TestApiAuthFailure:
    """Unauthenticated requests to protected API routes must return 401."""

    def test_get_me_unauthenticated(self, api_client) -> None:
        client, _services, _user = api_client
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        body = resp.json()
        assert body["success"] is False
        assert body["error"]["code"] == "unauthorized"

    def test_garbage_bearer_token(self, api_client) -> None:
        client, _services, _user = api_client
        resp = client.get("/api/v1/auth/me", headers=_auth("not-a-token"))
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Authentication required."

    def test_login_history_unauthenticated(self, api_client) -> None:
        client, _services, _user = api_client
        assert client.get("/api/v1/security/login-history").status_code == 401

    def test_mfa_setup_unauthenticated(self, api_client) -> None:
        client, _services, _user = api_client
        assert client.post("/api/v1/auth/mfa/setup").status_code == 401


class TestApiLogin:
    def test_login_returns_token_cookie_and_no_store(self, api_client) -> None:
        client, _services, user = api_client
        resp = client.post("/api/v1/auth/login", json={"email": user.email, "password": TEST_PASSWORD})
        client.cookies.clear()

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["requires_mfa"] is False
        assert body["data"]["user"]["email"] == user.email
        assert body["data"]["token_type"] == "bearer"
        assert resp.headers["Cache-Control"] == "no-store"
        set_cookie = resp.headers["set-cookie"]
        assert set_cookie.startswith("session_token=")
        assert "HttpOnly" in set_cookie
        assert 86390 <= _max_age(set_cookie) <= 86400

    def test_remember_me_cookie_lasts_seven_days(self, api_client) -> None:
        client, _services, user = api_client
        resp = client.post(
            "/api/v1/auth/login",
            json={"email": user.email, "password": TEST_PASSWORD, "rememberMe": True},
        )
        client.cookies.clear()
        assert resp.status_code == 200
        assert 604790 <= _max_age(resp.headers["set-cookie"]) <= 604800

    def test_bad_credentials(self, api_client) -> None:
        client, _services, user = api_client
        resp = client.post("/api/v1/auth/login", json={"email": user.email, "password": "wrong-password"})
        assert resp.status_code == 401
        assert resp.json()["error"] == {"code": "bad_credentials", "message": "Invalid email or password."}
        assert resp.headers.get("set-cookie") is None

    def test_overlong_password_is_rejected_without_echo(self, api_client) -> None:
        client, _services, user = api_client
        password = "secret-" + "x" * 122
        resp = client.post("/api/v1/auth/login", json={"email": user.email, "password": password})
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert error["fields"] == [{"loc": "body.password", "msg": error["fields"][0]["msg"]}]
        assert password not in resp.text

    def test_missing_password_lists_the_field(self, api_client) -> None:
        client, _services, user = api_client
        resp = client.post("/api/v1/auth/login", json={"email": user.email})
        assert resp.status_code == 400
        fields = resp.json()["error"]["fields"]
        assert [f["loc"] for f in fields] == ["body.password"]
        assert "input" not in fields[0]
        assert "detail" not in resp.json()["error"]

    def test_cookie_authenticates_me(self, api_client) -> None:
        client, _services, user = api_client
        client.post("/api/v1/auth/login", json={"email": user.email, "password": TEST_PASSWORD})
        try:
            resp = client.get("/api/v1/auth/me")
        finally:
            client.cookies.clear()
        assert resp.status_code == 200
        assert resp.json()["data"]["user"]["id"] == user.id

    def test_bearer_authenticates_me(self, api_client) -> None:
        client, _services, user = api_client
        token = login_token(client, user.email)
        resp = client.get("/api/v1/auth/me", headers=_auth(token))
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["user"]["email"] == user.email
        assert data["mfa_enabled"] is False

    def test_login_is_rate_limited(self, api_client) -> None:
        client, services, _user = api_client
        user = create_user(services.user_store, email="rate-limit@example.com")
        statuses = [
            client.post("/api/v1/auth/login", json={"email": user.email, "password": "wrong"}).status_code
            for _ in range(6)
        ]
        assert statuses[:5] == [401] * 5
        # The limiter answers before the handler would report the lockout (403)
        assert statuses[5] == 429
        resp = client.post("/api/v1/auth/login", json={"email": user.email, "password": TEST_PASSWORD})
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert resp.headers["Retry-After"]


class TestApiSessions:
    def test_logout_revokes_session(self, api_client) -> None:
        client, _services, user = api_client
        token = login_token(client, user.email)
        assert client.get("/api/v1/auth/me", headers=_auth(token)).status_code == 200

        resp = client.post("/api/v1/auth/logout", headers=_auth(token))
        assert resp.status_code == 200
        assert client.get("/api/v1/auth/me", headers=_auth(token)).status_code == 401

    def test_list_and_revoke_other_sessions(self, api_client) -> None:
        client, services, _user = api_client
        user = create_user(services.user_store, email="sessions@example.com")
        first = login_token(client, user.email)
        second = login_token(client, user.email)

        sessions = client.get("/api/v1/auth/sessions", headers=_auth(second)).json()["data"]
        assert len(sessions) == 2
        assert sum(1 for s in sessions if s["current"]) == 1

        resp = client.post("/api/v1/auth/sessions/revoke-others", headers=_auth(second))
        assert resp.json()["data"]["revoked"] == 1
        assert client.get("/api/v1/auth/me", headers=_auth(first)).status_code == 401
        assert client.get("/api/v1/auth/me", headers=_auth(second)).status_code == 200

    def test_revoke_unknown_session_is_404(self, api_client) -> None:
        client, _services, user = api_client
        token = login_token(client, user.email)
        resp = client.delete("/api/v1/auth/sessions/does-not-exist", headers=_auth(token))
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"


class TestApiMFA:
    def test_enrollment_and_second_factor_login(self, api_client) -> None:
        client, services, _user = api_client
        user = create_user(services.user_store, email="mfa-api@example.com")
        token = login_token(client, user.email)

        status = client.get("/api/v1/auth/mfa/setup", headers=_auth(token)).json()["data"]
        assert status == {"enabled": False, "has_secret": False, "remaining_backup_codes": 0}

        resp = client.post("/api/v1/auth/mfa/setup", headers=_auth(token))
        assert resp.status_code == 200
        assert resp.headers["Cache-Control"] == "no-store"
        setup = resp.json()["data"]
        assert len(setup["backup_codes"]) == 10
        assert setup["qr_code"].startswith("data:image/png;base64,")

        code = pyotp.TOTP(setup["secret"]).now()
        resp = client.post("/api/v1/auth/mfa/verify", json={"code": code}, headers=_auth(token))
        assert resp.status_code == 200

        # A confirmed factor cannot be swapped out without disabling it first
        resp = client.post("/api/v1/auth/mfa/setup", headers=_auth(token))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "mfa_already_enabled"

        resp = client.post("/api/v1/auth/login", json={"email": user.email, "password": TEST_PASSWORD})
        assert resp.status_code == 200
        assert resp.json()["data"]["requires_mfa"] is True
        assert resp.json()["data"]["access_token"] is None
        assert resp.headers.get("set-cookie") is None

        backup = setup["backup_codes"][0]
        second = login_token(client, user.email, mfaToken=backup)
        assert client.get("/api/v1/auth/me", headers=_auth(second)).json()["data"]["mfa_enabled"] is True

    def test_verify_rejects_malformed_code(self, api_client) -> None:
        client, _services, user = api_client
        token = login_token(client, user.email)
        resp = client.post("/api/v1/auth/mfa/verify", json={"code": "12ab"}, headers=_auth(token))
        assert resp.status_code == 400

    def test_verify_without_setup_is_400(self, api_client) -> None:
        client, services, _user = api_client
        user = create_user(services.user_store, email="no-setup@example.com")
        token = login_token(client, user.email)
        resp = client.post("/api/v1/auth/mfa/verify", json={"code": "123456"}, headers=_auth(token))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_disable_requires_password_and_revokes_sessions(self, api_client) -> None:
        client, services, _user = api_client
        user = create_user(services.user_store, email="mfa-disable@example.com")
        setup = services.mfa.begin_setup(user)
        services.mfa.confirm_setup(user, pyotp.TOTP(setup.secret).now())
        token = login_token(client, user.email, mfaToken=setup.backup_codes[0])

        resp = client.post("/api/v1/auth/mfa/disable", json={"password": "wrong-password"}, headers=_auth(token))
        assert resp.status_code == 401

        resp = client.post("/api/v1/auth/mfa/disable", json={"password": TEST_PASSWORD}, headers=_auth(token))
        assert resp.status_code == 200
        assert resp.json()["data"]["sessions_revoked"] == 1
        assert client.get("/api/v1/auth/me", headers=_auth(token)).status_code == 401


class TestApiLoginHistory:
    def test_failed_filter_with_full_stats(self, api_client) -> None:
        client, services, _user = api_client
        user = create_user(services.user_store, email="history@example.com")
        headers = {"User-Agent": CHROME_WINDOWS_UA}
        client.post("/api/v1/auth/login", json={"email": user.email, "password": "wrong"}, headers=headers)
        login_token(client, user.email)
        token = login_token(client, user.email)

        resp = client.get("/api/v1/security/login-history?filter=failed&page=1&limit=10", headers=_auth(token))
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert len(data["records"]) == 1
        record = data["records"][0]
        assert record["success"] is False
        assert record["failure_reason"] == "Invalid password"
        assert record["device"]["label"] == "Chrome on Windows 10/11"
        assert data["pagination"] == {"page": 1, "limit": 10, "total": 1, "total_pages": 1}
        assert data["stats"] == {"successful_logins": 2, "failed_attempts": 1}

    def test_unknown_filter_is_400(self, api_client) -> None:
        client, _services, user = api_client
        token = login_token(client, user.email)
        resp = client.get("/api/v1/security/login-history?filter=bogus", headers=_auth(token))
        assert resp.status_code == 400

    def test_limit_is_capped(self, api_client) -> None:
        client, _services, user = api_client
        token = login_token(client, user.email)
        resp = client.get("/api/v1/security/login-history?limit=500", headers=_auth(token))
        assert resp.status_code == 400
        assert resp.json()["error"]["fields"][0]["loc"] == "query.limit"
