"""Tests for the error envelope format and exception handlers.

Every non-2xx response other than FastAPI's own 422 renders as:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array, omitted when empty>
    },
    "request_id": "<correlation id>"
}
"""

import json

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import ValidationError

from trafficsafety.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from trafficsafety.api.schemas import Envelope, ErrorBody
from trafficsafety.logging import correlation_id_var, sanitize_error_message
from trafficsafety.service.errors import (
    AccountInactiveError,
    ExpiredCredentialError,
    PersistenceTimeoutError,
    RateLimitedError,
    ReplayDetectedError,
    TokenRevokedError,
)
from trafficsafety.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_accepts_list_details(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_unknown_code_rejected(self):
        """Only the stable error codes are accepted."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_request_id_auto_generated(self):
        envelope = Envelope(status="error")
        assert len(envelope.request_id) == 36

    def test_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")

    def test_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="rate_limited", message="Too many requests", details={"retry_after": 60}),
            request_id="test-req-123",
        )
        dumped = envelope.model_dump()
        assert dumped["error"]["code"] == "rate_limited"
        assert dumped["error"]["details"]["retry_after"] == 60
        assert dumped["request_id"] == "test-req-123"


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status, code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_mapping_uses_only_stable_codes(self):
        assert set(_STATUS_TO_CODE.values()) <= {
            "unauthorized",
            "forbidden",
            "not_found",
            "rate_limited",
            "validation_error",
            "conflict",
            "server_error",
        }


class TestErrorResponseFactory:
    def test_basic_envelope(self):
        response = _error_response(401, "Invalid credentials")

        data = json.loads(response.body.decode())
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"] == {"code": "unauthorized", "message": "Invalid credentials"}
        assert data["request_id"]

    def test_uses_current_correlation_id(self):
        token = correlation_id_var.set("corr-abc")
        try:
            response = _error_response(400, "bad")
        finally:
            correlation_id_var.reset(token)
        assert json.loads(response.body.decode())["request_id"] == "corr-abc"

    def test_server_messages_are_sanitized(self):
        response = _error_response(500, "SELECT * FROM app_user WHERE id = 1 failed")
        message = json.loads(response.body.decode())["error"]["message"]
        assert "app_user" not in message
        assert "[redacted]" in message

    def test_client_messages_are_kept(self):
        response = _error_response(400, "refreshToken or invalidateAll is required")
        message = json.loads(response.body.decode())["error"]["message"]
        assert message == "refreshToken or invalidateAll is required"


def test_sanitize_error_message_handles_empty():
    assert sanitize_error_message("") == "An error occurred"
    assert len(sanitize_error_message("x" * 1000)) == 500


@pytest.fixture
def failing_client():
    app = FastAPI()
    register_exception_handlers(app)

    errors = {
        "expired": ExpiredCredentialError("access token rejected"),
        "inactive": AccountInactiveError("account is inactive"),
        "replay": ReplayDetectedError("refresh token has been revoked"),
        "revoked": TokenRevokedError("refresh token has been revoked"),
        "limited": RateLimitedError("rate limit exceeded", detail={"retry_after": 12}),
        "timeout": PersistenceTimeoutError(
            "storage did not respond in time", detail={"operation": "find"}
        ),
        "conflict": ConstraintViolation("email already exists", {"field": "email"}),
        "http": HTTPException(status_code=404, detail="no such route"),
        "boom": RuntimeError("connection to postgres://user:pw@db failed"),
    }

    @app.get("/raise/{name}")
    async def _raise(name: str):
        raise errors[name]

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    def test_auth_error_carries_challenge(self, failing_client):
        resp = failing_client.get("/raise/expired")
        assert resp.status_code == 401
        assert resp.headers["WWW-Authenticate"] == "Bearer"
        assert resp.json()["error"]["details"] == {"reason": "token_expired"}

    def test_forbidden_has_no_challenge(self, failing_client):
        resp = failing_client.get("/raise/inactive")
        assert resp.status_code == 403
        assert "WWW-Authenticate" not in resp.headers
        assert resp.json()["error"]["code"] == "forbidden"

    def test_replay_is_indistinguishable_from_revoked(self, failing_client):
        replay = failing_client.get("/raise/replay").json()["error"]
        revoked = failing_client.get("/raise/revoked").json()["error"]
        assert replay == revoked

    def test_rate_limit_details(self, failing_client):
        resp = failing_client.get("/raise/limited")
        assert resp.status_code == 429
        assert resp.json()["error"]["details"] == {"reason": "rate_limited", "retry_after": 12}

    def test_store_timeout_is_server_error(self, failing_client):
        resp = failing_client.get("/raise/timeout")
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "server_error"

    def test_constraint_violation_is_conflict(self, failing_client):
        resp = failing_client.get("/raise/conflict")
        assert resp.status_code == 409
        assert resp.json()["error"]["details"] == {"field": "email"}

    def test_http_exception(self, failing_client):
        resp = failing_client.get("/raise/http")
        assert resp.status_code == 404
        assert resp.json()["error"] == {"code": "not_found", "message": "no such route"}

    def test_unhandled_exception_hides_internals(self, failing_client):
        resp = failing_client.get("/raise/boom")
        assert resp.status_code == 500
        error = resp.json()["error"]
        assert error["code"] == "server_error"
        assert "postgres" not in error["message"]
