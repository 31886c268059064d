"""Tests for the error envelope format and error handling.

Error responses conform to the stable API envelope:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<id>"
}
"""

import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from authgate import app as app_module
from authgate.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    describe_error,
    rate_limit_headers,
)
from authgate.api.schemas import Envelope, ErrorBody
from authgate.logging import set_correlation_id
from authgate.service.errors import (
    AuthenticationError,
    RateLimitedError,
    ServiceTimeoutError,
    UnavailableError,
)
from authgate.storage.errors import ConstraintViolation, StorageUnavailable


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="invalid token")
        assert error.details is None

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_unknown_code_rejected(self):
        """Only stable codes may appear in an envelope."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    @pytest.mark.parametrize("code", ["unavailable", "timeout", "rate_limited", "conflict"])
    def test_service_codes_accepted(self, code):
        assert ErrorBody(code=code, message="x").code == code


class TestEnvelope:
    def test_request_id_follows_correlation_id(self):
        set_correlation_id("req-123")
        try:
            assert Envelope(status="ok").request_id == "req-123"
        finally:
            set_correlation_id(None)

    def test_invalid_status_rejected(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestErrorMapping:
    def test_status_code_table(self):
        assert _STATUS_TO_CODE[503] == "unavailable"
        assert _STATUS_TO_CODE[504] == "timeout"
        assert _error_code_for_status(418) == "server_error"

    @pytest.mark.parametrize(
        "exc,status,code",
        [
            (AuthenticationError("invalid token"), 401, "unauthorized"),
            (UnavailableError("storage unavailable"), 503, "unavailable"),
            (ServiceTimeoutError("operation timed out"), 504, "timeout"),
            (ConstraintViolation("dup", {"field": "email"}), 409, "conflict"),
            (StorageUnavailable("down"), 503, "unavailable"),
            (KeyError("secret internals"), 500, "server_error"),
        ],
    )
    def test_describe_error(self, exc, status, code):
        mapped_status, body = describe_error(exc)
        assert mapped_status == status
        assert body.code == code
        assert "secret internals" not in body.message

    def test_rate_limit_headers(self):
        exc = RateLimitedError(
            retry_after=0, detail={"limit": 5, "remaining": 0, "reset_seconds": 0}
        )
        headers = rate_limit_headers(exc)
        assert headers["Retry-After"] == "1"
        assert headers["X-RateLimit-Limit"] == "5"

    def test_error_response_body(self):
        response = _error_response(404, "not found")
        body = json.loads(response.body)
        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"]["code"] == "not_found"
        assert body["data"] is None


class TestHttpEnvelope:
    @pytest.fixture
    def client(self):
        return TestClient(app_module.app)

    def test_validation_error_is_400(self, client):
        response = client.post("/v1/auth/login", json={"login": "alice"})

        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert isinstance(body["error"]["details"], list)

    def test_request_id_is_echoed(self, client):
        response = client.post(
            "/v1/auth/login",
            json={"login": "ghost", "password": "pw"},
            headers={"X-Request-ID": "trace-abc"},
        )

        assert response.status_code == 401
        assert response.headers["X-Request-ID"] == "trace-abc"
        assert response.json()["request_id"] == "trace-abc"

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/v1/does-not-exist")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_security_headers_present(self, client):
        response = client.get("/healthz")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
