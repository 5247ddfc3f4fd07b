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
from pydantic import ValidationError

from casedesk.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from casedesk.api.schemas import Envelope, ErrorBody
from casedesk.service.errors import (
    ConflictError,
    OtpExpiredError,
    TokenExpiredError,
)
from casedesk.storage.errors import CheckViolation, StoreUnavailable, UniqueViolation


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid token.")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_unprocessable_code_accepted(self):
        error = ErrorBody(
            code="unprocessable_entity",
            message="Invalid rank provided.",
            details={"rank": "Invalid rank provided."},
        )
        assert error.details == {"rank": "Invalid rank provided."}


class TestEnvelope:
    def test_request_id_generated(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id and first.request_id != second.request_id

    def test_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status, code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "unprocessable_entity"),
            (429, "rate_limited"),
            (500, "server_error"),
        ],
    )
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_every_mapped_code_is_valid(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="x")

    def test_error_response_shape(self):
        response = _error_response(409, "Email already exists.", {"email": "taken"})
        body = json.loads(response.body)
        assert response.status_code == 409
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "conflict",
            "message": "Email already exists.",
            "details": {"email": "taken"},
        }
        assert body["request_id"]


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/conflict")
    async def conflict():
        raise ConflictError("User already exists. Please log in instead.")

    @app.get("/otp-expired")
    async def otp_expired():
        raise OtpExpiredError()

    @app.get("/token-expired")
    async def token_expired():
        raise TokenExpiredError()

    @app.get("/unique")
    async def unique():
        raise UniqueViolation(
            "duplicate key", constraint="accounts_email_key", field="email"
        )

    @app.get("/check")
    async def check():
        raise CheckViolation(
            "check failed", constraint="accounts_rank_check", field="rank"
        )

    @app.get("/store-down")
    async def store_down():
        raise StoreUnavailable("pool timeout")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    def test_service_error(self, client):
        response = client.get("/conflict")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_otp_error_carries_reason(self, client):
        response = client.get("/otp-expired")
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["message"] == "OTP has expired. Please request a new one."
        assert error["details"]["reason"] == "otp_expired"

    def test_token_expiry_is_distinguishable(self, client):
        response = client.get("/token-expired")
        assert response.status_code == 401
        assert response.json()["error"]["details"] == {"reason": "token_expired"}

    def test_unique_violation_hides_constraint(self, client):
        response = client.get("/unique")
        assert response.status_code == 409
        assert "accounts_email_key" not in response.text
        assert response.json()["error"]["details"] == {"email": "already exists"}

    def test_check_violation_is_unprocessable(self, client):
        response = client.get("/check")
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "unprocessable_entity"
        assert "accounts_rank_check" not in response.text

    def test_store_failure_is_server_error(self, client):
        response = client.get("/store-down")
        assert response.status_code == 500
        assert "pool timeout" not in response.text

    def test_unhandled_exception(self, client):
        response = client.get("/boom")
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
        assert "secret internals" not in response.text
