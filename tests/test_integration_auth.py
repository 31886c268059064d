"""Integration tests for the HTTP authentication flow.

Exercises the FastAPI app end to end against the in-memory store:
- Registration
- Login with the refresh cookie pair
- Token refresh from cookies and from the body
- Logout and logout of every session
- Login rate limiting
"""

import pytest
from fastapi.testclient import TestClient

from authgate import app as app_module
from authgate.api.routes import REFRESH_COOKIE, USER_COOKIE
from authgate.service.runtime import get_runtime


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _register(client, username="alice", email="alice@x.com", password="pw123"):
    return client.post(
        "/v1/auth/register",
        json={"username": username, "email": email, "password": password},
    )


def _login(client, login="alice", password="pw123"):
    return client.post("/v1/auth/login", json={"login": login, "password": password})


def _bearer(response) -> dict:
    return {"Authorization": f"Bearer {response.json()['data']['access_token']}"}


class TestRegister:
    def test_register_creates_user(self, client):
        response = _register(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["user_id"]
        assert body["request_id"]

    def test_register_rejects_duplicate(self, client):
        _register(client)
        response = _register(client, email="other@x.com")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_register_validates_email(self, client):
        response = _register(client, email="invalid-email")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_register_requires_password(self, client):
        response = client.post(
            "/v1/auth/register", json={"username": "alice", "email": "alice@x.com"}
        )

        assert response.status_code == 400


class TestLogin:
    def test_login_returns_tokens_and_cookies(self, client):
        user_id = _register(client).json()["data"]["user_id"]
        response = _login(client)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user_id"] == user_id
        assert data["token_type"] == "bearer"
        assert data["access_token"].count(".") == 2
        assert data["refresh_token"]
        assert client.cookies.get(REFRESH_COOKIE) == data["refresh_token"]
        assert client.cookies.get(USER_COOKIE) == user_id

    def test_refresh_cookie_is_httponly_and_scoped(self, client):
        _register(client)
        response = _login(client)

        set_cookie = ";".join(response.headers.get_list("set-cookie")).lower()
        assert "httponly" in set_cookie
        assert "path=/v1/auth" in set_cookie
        assert "samesite=lax" in set_cookie

    def test_login_reports_rate_limit_headers(self, client):
        _register(client)
        response = _login(client)

        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "4"
        assert int(response.headers["X-RateLimit-Reset"]) > 0

    def test_login_by_email(self, client):
        _register(client)
        assert _login(client, login="ALICE@x.com").status_code == 200

    def test_bad_password_is_unauthorized(self, client):
        _register(client)
        response = _login(client, password="wrong")

        assert response.status_code == 401
        assert response.json()["error"] == {
            "code": "unauthorized",
            "message": "invalid credentials",
            "details": None,
        }

    def test_login_rate_limited_after_five_attempts(self, client):
        _register(client)
        for _ in range(5):
            _login(client, password="wrong")
        response = _login(client)

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) >= 1
        assert response.headers["X-RateLimit-Remaining"] == "0"


class TestRefresh:
    def test_refresh_from_cookies(self, client):
        _register(client)
        first = _login(client).json()["data"]
        response = client.post("/v1/auth/refresh")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["session_id"] == first["session_id"]
        assert data["refresh_token"] != first["refresh_token"]
        assert client.cookies.get(REFRESH_COOKIE) == data["refresh_token"]

    def test_refresh_from_body(self, client):
        user_id = _register(client).json()["data"]["user_id"]
        first = _login(client).json()["data"]
        client.cookies.clear()
        response = client.post(
            "/v1/auth/refresh",
            json={"refresh_token": first["refresh_token"], "user_id": user_id},
        )

        assert response.status_code == 200

    def test_replayed_refresh_token_rejected(self, client):
        user_id = _register(client).json()["data"]["user_id"]
        first = _login(client).json()["data"]
        payload = {"refresh_token": first["refresh_token"], "user_id": user_id}
        assert client.post("/v1/auth/refresh", json=payload).status_code == 200

        response = client.post("/v1/auth/refresh", json=payload)
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid refresh token"

    def test_refresh_without_credentials_is_unauthorized(self, client):
        response = client.post("/v1/auth/refresh")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestLogout:
    def test_logout_requires_bearer(self, client):
        response = client.post("/v1/auth/logout", json={"session_id": "x"})

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid token"

    def test_logout_revokes_session(self, client):
        user_id = _register(client).json()["data"]["user_id"]
        login = _login(client)
        data = login.json()["data"]
        response = client.post(
            "/v1/auth/logout", json={"session_id": data["session_id"]}, headers=_bearer(login)
        )

        assert response.status_code == 200
        assert get_runtime().store.get_session(data["session_id"]) is None
        refreshed = client.post(
            "/v1/auth/refresh",
            json={"refresh_token": data["refresh_token"], "user_id": user_id},
        )
        assert refreshed.status_code == 401

    def test_logout_all_revokes_every_session(self, client):
        _register(client)
        first = _login(client)
        _login(client)
        response = client.post("/v1/auth/logout_all", headers=_bearer(first))

        assert response.status_code == 200
        assert response.json()["data"]["revoked"] == 2

    def test_logout_all_rejects_garbage_token(self, client):
        response = client.post(
            "/v1/auth/logout_all", headers={"Authorization": "Bearer nope"}
        )

        assert response.status_code == 401


class TestMe:
    def test_me_returns_profile(self, client):
        user_id = _register(client).json()["data"]["user_id"]
        response = client.get("/v1/me", headers=_bearer(_login(client)))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user_id"] == user_id
        assert data["username"] == "alice"
        assert data["email"] == "alice@x.com"

    def test_me_requires_bearer(self, client):
        assert client.get("/v1/me").status_code == 401


def test_end_to_end_session_lifecycle(client):
    """Register, login, refresh, logout, then the rotated token is dead."""
    user_id = _register(client).json()["data"]["user_id"]
    login = _login(client)
    first = login.json()["data"]

    rotated = client.post(
        "/v1/auth/refresh",
        json={"refresh_token": first["refresh_token"], "user_id": user_id},
    )
    assert rotated.status_code == 200
    second = rotated.json()["data"]
    assert second["session_id"] == first["session_id"]
    assert second["refresh_token"] != first["refresh_token"]
    assert second["access_token"] != first["access_token"]

    logout = client.post(
        "/v1/auth/logout", json={"session_id": first["session_id"]}, headers=_bearer(rotated)
    )
    assert logout.status_code == 200
    after_logout = client.post(
        "/v1/auth/refresh",
        json={"refresh_token": second["refresh_token"], "user_id": user_id},
    )
    assert after_logout.status_code == 401

    relogin = _login(client)
    replay = client.post(
        "/v1/auth/refresh",
        json={"refresh_token": first["refresh_token"], "user_id": user_id},
    )
    assert replay.status_code == 401

    assert client.post("/v1/auth/logout_all", headers=_bearer(relogin)).status_code == 200
    final = client.post(
        "/v1/auth/refresh",
        json={"refresh_token": relogin.json()["data"]["refresh_token"], "user_id": user_id},
    )
    assert final.status_code == 401
