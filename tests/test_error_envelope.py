"""Tests for the error envelope format and exception mapping.

Error responses share one stable envelope:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel, ValidationError

from apigate.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from apigate.api.schemas import Envelope, ErrorBody
from apigate.service.errors import (
    AuthExpiredError,
    AuthMissingError,
    ForbiddenError,
    RateLimitedError,
)
from apigate.storage.errors import ConstraintViolation, TransientStorageError


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        """ErrorBody requires code and message fields."""
        error = ErrorBody(code="auth_invalid", message="Invalid credentials")
        assert error.code == "auth_invalid"
        assert error.details is None

    def test_error_body_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="unauthorized", message="nope")

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    """Tests for the Envelope model."""

    def test_envelope_ok_status(self):
        envelope = Envelope(status="ok", data={"user_id": 1})
        assert envelope.error is None
        assert envelope.data == {"user_id": 1}

    def test_envelope_request_id_auto_generated(self):
        """Envelope auto-generates request_id if not provided."""
        assert len(Envelope(status="ok").request_id) == 36

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")

    def test_envelope_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="rate_limited", message="Too many requests", details={"retry_after": 60}),
            request_id="test-req-123",
        )
        dumped = envelope.model_dump()
        assert dumped["error"]["details"]["retry_after"] == 60
        assert dumped["request_id"] == "test-req-123"
        assert dumped["data"] is None


class TestErrorCodeMapping:
    """Tests for HTTP status to error code mapping."""

    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_failed"),
            (401, "auth_invalid"),
            (403, "forbidden"),
            (404, "not_found"),
            (405, "validation_failed"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
            (503, "storage_unavailable"),
        ],
    )
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_mapped_codes_are_valid_error_codes(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(401, "Invalid credentials")
        data = json.loads(response.body.decode())
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"]["code"] == "auth_invalid"
        assert "request_id" in data

    def test_error_response_headers(self):
        response = _error_response(429, "slow down", headers={"Retry-After": "5"})
        assert response.headers["Retry-After"] == "5"


class _Body(BaseModel):
    name: str


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/missing")
    async def missing():
        raise AuthMissingError("Authentication required")

    @app.get("/expired")
    async def expired():
        raise AuthExpiredError("Token has expired")

    @app.get("/forbidden")
    async def forbidden():
        raise ForbiddenError("Insufficient permissions", detail={"resource": "settings"})

    @app.get("/limited")
    async def limited():
        raise RateLimitedError("Rate limit exceeded", retry_after=17)

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("username already exists", {"field": "username"})

    @app.get("/storage")
    async def storage():
        raise TransientStorageError("connection reset", operation="get_user")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("unexpected")

    @app.get("/gone")
    async def gone():
        raise HTTPException(status_code=403, detail="blocked", headers={"X-Blocked-By": "policy"})

    @app.get("/structured")
    async def structured():
        raise HTTPException(status_code=400, detail={"error": {"code": "custom"}})

    @app.post("/validate")
    async def validate(body: _Body):
        return {"ok": True}

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    """Service exceptions render with their status, code and headers."""

    def test_missing_auth_sets_challenge(self, client):
        response = client.get("/missing")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "auth_missing"
        challenge = response.headers["WWW-Authenticate"]
        assert "Bearer" in challenge and "Key" in challenge and "Basic" in challenge

    def test_expired_code(self, client):
        response = client.get("/expired")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "auth_expired"

    def test_forbidden_details(self, client):
        response = client.get("/forbidden")
        assert response.status_code == 403
        assert response.json()["error"]["details"] == {"resource": "settings"}

    def test_rate_limited_retry_after(self, client):
        response = client.get("/limited")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "17"
        assert response.json()["error"]["details"]["retry_after"] == 17

    def test_constraint_violation_is_conflict(self, client):
        response = client.get("/conflict")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_transient_storage_is_503(self, client):
        response = client.get("/storage")
        assert response.status_code == 503
        assert response.headers["Retry-After"] == "1"
        assert response.json()["error"]["code"] == "storage_unavailable"

    def test_unhandled_exception_is_server_error(self, client):
        response = client.get("/boom")
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"

    def test_request_validation_is_400(self, client):
        response = client.post("/validate", json={})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_failed"

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/no-such-route")
        assert response.status_code == 404
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "not_found"
        assert body["error"]["message"] == "Not Found"

    def test_wrong_method_uses_envelope(self, client):
        response = client.get("/validate")
        assert response.status_code == 405
        assert response.json()["error"]["code"] == "validation_failed"
        assert "POST" in response.headers["Allow"]

    def test_http_exception_keeps_message_and_headers(self, client):
        response = client.get("/gone")
        assert response.status_code == 403
        assert response.headers["X-Blocked-By"] == "policy"
        assert response.json()["error"] == {"code": "forbidden", "message": "blocked", "details": None}

    def test_non_string_detail_is_not_echoed(self, client):
        response = client.get("/structured")
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_failed"
        assert error["message"] == "http error"
        assert error["details"] is None
