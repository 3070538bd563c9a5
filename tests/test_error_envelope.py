"""Tests for the error envelope format and exception handlers.

Error responses share one shape:
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
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel, ValidationError

from storeauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from storeauth.api.routes import _http_error
from storeauth.api.schemas import Envelope, ErrorBody
from storeauth.service.errors import (
    AccountDisabled,
    AccountLocked,
    InvalidCredentials,
    ServerError,
    TokenExpired,
    TwoFactorRequired,
)
from storeauth.storage.errors import ConstraintViolation


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_required_fields(self):
        """ErrorBody requires code and message."""
        error = ErrorBody(code="unauthorized", message="access denied")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_details_may_be_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_unknown_code_rejected(self):
        """Codes outside the stable set are refused."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_request_id_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_invalid_status_rejected(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestErrorCodeMapping:
    """HTTP status to stable error code."""

    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (423, "account_locked"),
            (429, "rate_limited"),
            (500, "server_error"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_every_mapped_code_is_valid(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="ok")

    def test_error_response_body(self):
        response = _error_response(404, "user not found", details=None)

        data = json.loads(response.body.decode())
        assert response.status_code == 404
        assert data["status"] == "error"
        assert data["error"] == {"code": "not_found", "message": "user not found", "details": None}
        assert "request_id" in data


class _Payload(BaseModel):
    quantity: int


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/invalid-credentials")
    async def invalid_credentials():
        raise InvalidCredentials()

    @app.get("/two-factor")
    async def two_factor():
        raise TwoFactorRequired()

    @app.get("/locked")
    async def locked():
        raise AccountLocked(detail={"locked_until": "2024-03-01T13:00:00+00:00"})

    @app.get("/disabled")
    async def disabled():
        raise AccountDisabled()

    @app.get("/server-error")
    async def server_error():
        raise ServerError("session store failed", detail={"backend": "redis://secret"})

    @app.get("/token")
    async def token():
        raise TokenExpired("expired")

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("username already exists", {"field": "username"})

    @app.get("/http")
    async def http():
        raise _http_error("forbidden", "access denied", status_code=403)

    @app.get("/boom")
    async def boom():
        raise RuntimeError("kaboom")

    @app.post("/payload")
    async def payload(body: _Payload):
        return {"quantity": body.quantity}

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    """Each failure type reaches the client as a stable envelope."""

    def test_invalid_credentials(self, client):
        response = client.get("/invalid-credentials")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_two_factor_required(self, client):
        response = client.get("/two-factor")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "two_factor_required"

    def test_locked_account_carries_unlock_time(self, client):
        response = client.get("/locked")
        body = response.json()
        assert response.status_code == 423
        assert body["error"]["code"] == "account_locked"
        assert body["error"]["details"] == {"locked_until": "2024-03-01T13:00:00+00:00"}

    def test_disabled_account(self, client):
        response = client.get("/disabled")
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "account_disabled"

    def test_server_error_hides_details(self, client):
        response = client.get("/server-error")
        body = response.json()
        assert response.status_code == 500
        assert body["error"]["code"] == "server_error"
        assert body["error"]["details"] is None

    def test_token_errors_are_unauthorized(self, client):
        response = client.get("/token")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"

    def test_constraint_violation_is_conflict(self, client):
        response = client.get("/constraint")
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "username"}

    def test_envelope_shaped_http_exception(self, client):
        response = client.get("/http")
        assert response.status_code == 403
        assert response.json()["error"] == {
            "code": "forbidden",
            "message": "access denied",
            "details": None,
        }

    def test_unhandled_exception(self, client):
        response = client.get("/boom")
        body = response.json()
        assert response.status_code == 500
        assert body["error"]["code"] == "server_error"
        assert "kaboom" not in json.dumps(body)

    def test_request_validation(self, client):
        response = client.post("/payload", json={"quantity": "many"})
        body = response.json()
        assert response.status_code == 400
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"][0]["loc"] == ["body", "quantity"]
