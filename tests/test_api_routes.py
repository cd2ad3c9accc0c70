"""
tests/test_api_routes.py -- Integration tests for the /api/v1/auth endpoints.

Covers:
  - register -> 201, duplicate -> 409, schema validation -> 422
  - login -> user + token pair with Cache-Control: no-store
  - uniform 401 invalid_credentials for unknown email vs wrong password
  - lockout over HTTP -> 423 account_locked
  - current-user with and without a Bearer token
  - refresh-token exchange
  - logout revokes the access token; second logout still 200
  - password reset request (uniform 202), validate check, reset
  - login and reset-request rate limits -> 429 with Retry-After
  - error envelope shape on every failure
"""

from __future__ import annotations

import pytest

from api.limiter import limiter


def _register(client, username: str, email: str, password: str = "correct123") -> dict:
    resp = client.post(
        "/api/v1/auth/register",
        json={"username": username, "email": email, "password": password, "role_ids": [1]},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def _login(client, email: str, password: str = "correct123"):
    return client.post("/api/v1/auth/login", json={"email": email, "password": password})


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class TestRegister:
    def test_register_returns_201(self, api_client) -> None:
        data = _register(api_client, "reg_user", "Reg.User@Example.com")
        assert data["username"] == "reg_user"
        assert data["email"] == "reg.user@example.com"
        assert data["user_id"] > 0
        assert "password" not in data and "hashed_password" not in data

    def test_duplicate_returns_409(self, api_client) -> None:
        _register(api_client, "dup_user", "dup@example.com")
        resp = api_client.post(
            "/api/v1/auth/register",
            json={"username": "dup_user", "email": "dup2@example.com", "password": "correct123", "role_ids": [1]},
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_missing_roles_returns_422(self, api_client) -> None:
        resp = api_client.post(
            "/api/v1/auth/register",
            json={"username": "noroles", "email": "noroles@example.com", "password": "correct123", "role_ids": []},
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_short_password_returns_400(self, api_client) -> None:
        resp = api_client.post(
            "/api/v1/auth/register",
            json={"username": "shortpw", "email": "shortpw@example.com", "password": "short", "role_ids": [1]},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"


class TestLogin:
    def test_login_returns_tokens(self, api_client) -> None:
        _register(api_client, "login_ok", "login_ok@example.com")
        resp = _login(api_client, "login_ok@example.com")
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        body = resp.json()
        assert body["user"]["email"] == "login_ok@example.com"
        assert body["tokens"]["token_type"] == "Bearer"
        assert body["tokens"]["expires_in"] > 0
        assert body["tokens"]["access_token"] != body["tokens"]["refresh_token"]

    def test_unknown_email_and_wrong_password_look_alike(self, api_client) -> None:
        _register(api_client, "login_bad", "login_bad@example.com")
        unknown = _login(api_client, "nobody@example.com")
        wrong = _login(api_client, "login_bad@example.com", "wrong-password")
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()
        assert unknown.json()["error"]["code"] == "invalid_credentials"

    def test_lockout_returns_423(self, api_client) -> None:
        _register(api_client, "lock_me", "lock_me@example.com")
        for _ in range(5):
            assert _login(api_client, "lock_me@example.com", "wrong-password").status_code == 401
        resp = _login(api_client, "lock_me@example.com")
        assert resp.status_code == 423
        assert resp.json()["error"]["code"] == "account_locked"

    def test_malformed_email_returns_422(self, api_client) -> None:
        assert _login(api_client, "not-an-email").status_code == 422


class TestCurrentUser:
    def test_with_token(self, api_client) -> None:
        _register(api_client, "me_user", "me_user@example.com")
        token = _login(api_client, "me_user@example.com").json()["tokens"]["access_token"]
        resp = api_client.get("/api/v1/auth/current-user", headers=_bearer(token))
        assert resp.status_code == 200
        assert resp.json()["username"] == "me_user"

    def test_without_token(self, api_client) -> None:
        resp = api_client.get("/api/v1/auth/current-user")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"
        assert resp.headers["www-authenticate"] == "Bearer"

    def test_garbage_token(self, api_client) -> None:
        resp = api_client.get("/api/v1/auth/current-user", headers=_bearer("garbage"))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_signature_invalid"

    def test_refresh_token_not_accepted(self, api_client) -> None:
        _register(api_client, "me_refresh", "me_refresh@example.com")
        refresh = _login(api_client, "me_refresh@example.com").json()["tokens"]["refresh_token"]
        resp = api_client.get("/api/v1/auth/current-user", headers=_bearer(refresh))
        assert resp.status_code == 401


class TestRefreshAndLogout:
    def test_refresh_exchange(self, api_client) -> None:
        _register(api_client, "refresher", "refresher@example.com")
        tokens = _login(api_client, "refresher@example.com").json()["tokens"]
        resp = api_client.post("/api/v1/auth/refresh-token", json={"refresh_token": tokens["refresh_token"]})
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        fresh = resp.json()
        assert fresh["refresh_token"] == tokens["refresh_token"]
        assert api_client.get("/api/v1/auth/current-user", headers=_bearer(fresh["access_token"])).status_code == 200
        assert api_client.get("/api/v1/auth/current-user", headers=_bearer(tokens["access_token"])).status_code == 401

    def test_refresh_with_garbage(self, api_client) -> None:
        resp = api_client.post("/api/v1/auth/refresh-token", json={"refresh_token": "garbage"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_refresh_token"

    def test_logout_revokes_and_is_idempotent(self, api_client) -> None:
        _register(api_client, "leaver", "leaver@example.com")
        tokens = _login(api_client, "leaver@example.com").json()["tokens"]
        headers = _bearer(tokens["access_token"])

        first = api_client.post("/api/v1/auth/logout", headers=headers, json={"refresh_token": tokens["refresh_token"]})
        assert first.status_code == 200
        assert first.json()["message"] == "Logged out successfully."

        resp = api_client.get("/api/v1/auth/current-user", headers=headers)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_expired"

        assert api_client.post("/api/v1/auth/logout", headers=headers).status_code == 200
        refresh = api_client.post("/api/v1/auth/refresh-token", json={"refresh_token": tokens["refresh_token"]})
        assert refresh.status_code == 401

    def test_logout_without_token(self, api_client) -> None:
        assert api_client.post("/api/v1/auth/logout").status_code == 200


class TestPasswordResetRoutes:
    def test_request_is_uniform(self, api_client) -> None:
        _register(api_client, "forgetful", "forgetful@example.com")
        known = api_client.post("/api/v1/auth/password-reset/request", json={"email": "forgetful@example.com"})
        unknown = api_client.post("/api/v1/auth/password-reset/request", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 202
        assert known.json() == unknown.json()

    def test_full_reset_flow(self, api_client) -> None:
        _register(api_client, "resetter", "resetter@example.com")
        request = api_client.app.state.password_reset.request_reset("resetter@example.com")

        check = api_client.get(f"/api/v1/auth/password-reset/validate/{request.token}")
        assert check.status_code == 200
        assert check.json() == {"valid": True}

        resp = api_client.post(
            "/api/v1/auth/password-reset/reset",
            json={"token": request.token, "new_password": "NewPass1", "confirm_password": "NewPass1"},
        )
        assert resp.status_code == 200
        assert _login(api_client, "resetter@example.com", "correct123").status_code == 401
        assert _login(api_client, "resetter@example.com", "NewPass1").status_code == 200

        reuse = api_client.post(
            "/api/v1/auth/password-reset/reset",
            json={"token": request.token, "new_password": "NewPass1", "confirm_password": "NewPass1"},
        )
        assert reuse.status_code == 400
        assert reuse.json()["error"]["code"] == "reset_token_invalid"
        assert api_client.get(f"/api/v1/auth/password-reset/validate/{request.token}").json() == {"valid": False}

    def test_mismatch_returns_400(self, api_client) -> None:
        resp = api_client.post(
            "/api/v1/auth/password-reset/reset",
            json={"token": "whatever", "new_password": "NewPass1", "confirm_password": "NewPass2"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "password_mismatch"


class TestRateLimit:
    @pytest.fixture
    def enabled_limiter(self):
        limiter.reset()
        limiter.enabled = True
        yield
        limiter.enabled = False
        limiter.reset()

    def test_login_rate_limited(self, api_client, enabled_limiter) -> None:
        statuses = [_login(api_client, "ratelimit@example.com").status_code for _ in range(11)]
        assert statuses[:10] == [401] * 10
        assert statuses[10] == 429
        resp = _login(api_client, "ratelimit@example.com")
        assert resp.json()["error"]["code"] == "rate_limited"
        assert "retry-after" in resp.headers

    def test_reset_request_rate_limited(self, api_client, enabled_limiter) -> None:
        statuses = [
            api_client.post("/api/v1/auth/password-reset/request", json={"email": "ghost@example.com"}).status_code
            for _ in range(6)
        ]
        assert statuses[:5] == [202] * 5
        assert statuses[5] == 429
