"""Tests for the JSON-RPC transport on /v1/rpc.

The RPC surface shares the auth service and gate with HTTP, so these tests
focus on framing, error mapping and per-call authorization metadata.
"""

import itertools

import pytest
from fastapi.testclient import TestClient

from authgate import app as app_module
from authgate.api.rpc import (
    APPLICATION_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
)

_ids = itertools.count(1)


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def ws(client):
    with client.websocket_connect("/v1/rpc") as socket:
        yield socket


def call(ws, method, params=None, authorization=None):
    message = {"jsonrpc": "2.0", "id": next(_ids), "method": method, "params": params or {}}
    if authorization is not None:
        message["metadata"] = {"authorization": authorization}
    ws.send_json(message)
    response = ws.receive_json()
    assert response["id"] == message["id"]
    return response


def _signup_and_login(ws):
    user_id = call(
        ws,
        "auth.register",
        {"username": "alice", "email": "alice@x.com", "password": "pw123"},
    )["result"]["user_id"]
    login = call(ws, "auth.login", {"login": "alice", "password": "pw123"})["result"]
    return user_id, login


class TestMethods:
    def test_register_and_login(self, ws):
        user_id, login = _signup_and_login(ws)

        assert login["user_id"] == user_id
        assert login["token_type"] == "bearer"
        assert login["refresh_token"]

    def test_refresh_rotates(self, ws):
        user_id, login = _signup_and_login(ws)
        response = call(
            ws,
            "auth.refresh",
            {"refresh_token": login["refresh_token"], "user_id": user_id},
        )

        assert response["result"]["session_id"] == login["session_id"]
        assert response["result"]["refresh_token"] != login["refresh_token"]

    def test_whoami_uses_metadata_authorization(self, ws):
        user_id, login = _signup_and_login(ws)
        response = call(ws, "auth.whoami", authorization=f"Bearer {login['access_token']}")

        assert response["result"]["user_id"] == user_id
        assert response["result"]["username"] == "alice"

    def test_logout_and_logout_all(self, ws):
        user_id, login = _signup_and_login(ws)
        bearer = f"Bearer {login['access_token']}"
        extra = call(ws, "auth.login", {"login": "alice", "password": "pw123"})["result"]

        out = call(ws, "auth.logout", {"session_id": login["session_id"]}, authorization=bearer)
        assert out["result"] == {"message": "session revoked"}

        revoked = call(ws, "auth.logout_all", authorization=bearer)
        assert revoked["result"] == {"revoked": 1}

        stale = call(
            ws,
            "auth.refresh",
            {"refresh_token": extra["refresh_token"], "user_id": user_id},
        )
        assert stale["error"]["data"]["code"] == "unauthorized"


class TestErrors:
    def test_protected_method_without_authorization(self, ws):
        response = call(ws, "auth.logout_all")

        assert response["error"]["code"] == APPLICATION_ERROR
        assert response["error"]["message"] == "invalid token"
        assert response["error"]["data"] == {"code": "unauthorized", "status": 401}

    def test_bad_credentials_match_http_shape(self, ws):
        _signup_and_login(ws)
        response = call(ws, "auth.login", {"login": "alice", "password": "wrong"})

        assert response["error"]["code"] == APPLICATION_ERROR
        assert response["error"]["message"] == "invalid credentials"
        assert response["error"]["data"]["status"] == 401

    def test_duplicate_register_is_conflict(self, ws):
        _signup_and_login(ws)
        response = call(
            ws,
            "auth.register",
            {"username": "alice", "email": "alice2@x.com", "password": "pw"},
        )

        assert response["error"]["data"]["code"] == "conflict"
        assert response["error"]["data"]["status"] == 409

    def test_unknown_method(self, ws):
        response = call(ws, "auth.nope")

        assert response["error"]["code"] == METHOD_NOT_FOUND

    def test_invalid_params(self, ws):
        response = call(ws, "auth.register", {"username": "alice"})

        assert response["error"]["code"] == INVALID_PARAMS
        assert response["error"]["data"]["code"] == "validation_error"
        assert response["error"]["data"]["details"]

    def test_missing_version_is_invalid_request(self, ws):
        ws.send_json({"id": 7, "method": "auth.login"})
        response = ws.receive_json()

        assert response["id"] == 7
        assert response["error"]["code"] == INVALID_REQUEST

    def test_non_object_is_invalid_request(self, ws):
        ws.send_json([1, 2, 3])

        assert ws.receive_json()["error"]["code"] == INVALID_REQUEST

    def test_invalid_json_keeps_connection_open(self, ws):
        ws.send_text("{not json")
        response = ws.receive_json()

        assert response["id"] is None
        assert response["error"]["code"] == PARSE_ERROR
        assert call(ws, "auth.nope")["error"]["code"] == METHOD_NOT_FOUND

    def test_binary_frame_is_invalid_request(self, ws):
        ws.send_bytes(b"\x00\x01")
        response = ws.receive_json()

        assert response["id"] is None
        assert response["error"]["code"] == INVALID_REQUEST
        assert call(ws, "auth.nope")["error"]["code"] == METHOD_NOT_FOUND


def test_end_to_end_session_lifecycle(ws):
    """Register, login, refresh, logout, then the rotated token is dead."""
    user_id, first = _signup_and_login(ws)

    second = call(
        ws, "auth.refresh", {"refresh_token": first["refresh_token"], "user_id": user_id}
    )["result"]
    assert second["session_id"] == first["session_id"]
    assert second["access_token"] != first["access_token"]

    logout = call(
        ws,
        "auth.logout",
        {"session_id": first["session_id"]},
        authorization=f"Bearer {second['access_token']}",
    )
    assert logout["result"] == {"message": "session revoked"}
    after_logout = call(
        ws, "auth.refresh", {"refresh_token": second["refresh_token"], "user_id": user_id}
    )
    assert after_logout["error"]["data"]["code"] == "unauthorized"

    relogin = call(ws, "auth.login", {"login": "alice", "password": "pw123"})["result"]
    replay = call(
        ws, "auth.refresh", {"refresh_token": first["refresh_token"], "user_id": user_id}
    )
    assert replay["error"]["message"] == "invalid refresh token"

    call(ws, "auth.logout_all", authorization=f"Bearer {relogin['access_token']}")
    final = call(
        ws, "auth.refresh", {"refresh_token": relogin["refresh_token"], "user_id": user_id}
    )
    assert final["error"]["data"]["code"] == "unauthorized"
