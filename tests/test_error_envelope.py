"""Tests for the error envelope format and exception mapping.

Every error response has the shape:
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

from consoleauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from consoleauth.api.routes import _http_error
from consoleauth.api.schemas import Envelope, ErrorBody
from consoleauth.service.errors import (
    AccountBlocked,
    ConflictError,
    InvalidCredentials,
    InvalidMFACode,
    MFARequired,
    PasswordRotationRequired,
    SecretFormatInvalid,
    WeakPassword,
)
from consoleauth.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="invalid session")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_with_details(self):
        error = ErrorBody(
            code="weak_password",
            message="password does not meet complexity requirements",
            details={"violations": ["must contain a digit"]},
        )
        assert error.details == {"violations": ["must contain a digit"]}

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="unauthorized")

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    @pytest.mark.parametrize(
        "code",
        [
            "invalid_credentials",
            "account_blocked",
            "mfa_required",
            "invalid_mfa_code",
            "password_rotation_required",
            "weak_password",
            "secret_format_invalid",
        ],
    )
    def test_domain_codes_accepted(self, code):
        assert ErrorBody(code=code, message="x").code == code


class TestEnvelope:
    def test_envelope_error_status(self):
        envelope = Envelope(status="error", error=ErrorBody(code="conflict", message="busy"))
        assert envelope.status == "error"
        assert envelope.data is None

    def test_envelope_request_id_auto_generated(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id
        assert first.request_id != second.request_id

    def test_envelope_request_id_custom(self):
        assert Envelope(status="ok", request_id="req-1").request_id == "req-1"

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestStatusCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (429, "rate_limited"),
            (500, "server_error"),
        ],
    )
    def test_mapping(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_mapped_codes_are_valid(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="x")


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(401, "invalid session")

        assert response.status_code == 401
        data = json.loads(response.body)
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["details"] is None
        assert data["request_id"]

    def test_error_response_custom_code_and_headers(self):
        response = _error_response(
            403, "two-factor code required", {"requires2FA": True},
            code="mfa_required", headers={"Retry-After": "1"},
        )
        data = json.loads(response.body)
        assert data["error"]["code"] == "mfa_required"
        assert data["error"]["details"] == {"requires2FA": True}
        assert response.headers["Retry-After"] == "1"


class _Body(BaseModel):
    password: str
    count: int


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    raisers = {
        "invalid_credentials": InvalidCredentials(),
        "account_blocked": AccountBlocked(),
        "mfa_required": MFARequired(),
        "invalid_mfa_code": InvalidMFACode(detail={"locked": True}),
        "rotation": PasswordRotationRequired(rotation_ticket="t-1"),
        "weak_password": WeakPassword(["must contain a digit"]),
        "secret_format_invalid": SecretFormatInvalid("secret must be base32 (A-Z, 2-7)"),
        "conflict": ConflictError("two-factor authentication is already enabled"),
    }

    @app.get("/raise/{name}")
    async def _raise(name: str):
        raise raisers[name]

    @app.get("/constraint")
    async def _constraint():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/http")
    async def _http():
        raise _http_error("rate_limited", "rate limit exceeded", 429, {"retry_after": 5})

    @app.get("/boom")
    async def _boom():
        raise RuntimeError("secret internals")

    @app.post("/validate")
    async def _validate(body: _Body):
        return {"ok": True}

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    @pytest.mark.parametrize(
        "name,status,code",
        [
            ("invalid_credentials", 401, "invalid_credentials"),
            ("account_blocked", 403, "account_blocked"),
            ("mfa_required", 403, "mfa_required"),
            ("invalid_mfa_code", 401, "invalid_mfa_code"),
            ("rotation", 403, "password_rotation_required"),
            ("weak_password", 400, "weak_password"),
            ("secret_format_invalid", 400, "secret_format_invalid"),
            ("conflict", 409, "conflict"),
        ],
    )
    def test_service_errors(self, client, name, status, code):
        resp = client.get(f"/raise/{name}")
        assert resp.status_code == status
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == code

    def test_service_error_details(self, client):
        assert client.get("/raise/mfa_required").json()["error"]["details"] == {"requires2FA": True}
        assert client.get("/raise/invalid_mfa_code").json()["error"]["details"] == {"locked": True}
        assert client.get("/raise/rotation").json()["error"]["details"] == {
            "requiresPasswordChange": True,
            "rotationTicket": "t-1",
        }
        assert client.get("/raise/weak_password").json()["error"]["details"] == {
            "violations": ["must contain a digit"]
        }

    def test_empty_detail_is_null(self, client):
        assert client.get("/raise/invalid_credentials").json()["error"]["details"] is None

    def test_constraint_violation_maps_to_conflict(self, client):
        resp = client.get("/constraint")
        assert resp.status_code == 409
        assert resp.json()["error"] == {
            "code": "conflict",
            "message": "email already exists",
            "details": {"field": "email"},
        }

    def test_http_exception_envelope(self, client):
        resp = client.get("/http")
        assert resp.status_code == 429
        assert resp.json()["error"]["details"] == {"retry_after": 5}

    def test_unhandled_exception_is_opaque(self, client):
        resp = client.get("/boom")
        assert resp.status_code == 500
        body = resp.json()
        assert body["error"]["code"] == "server_error"
        assert "secret internals" not in resp.text

    def test_validation_error_is_400_without_input_echo(self, client):
        resp = client.post("/validate", json={"password": "hunter2-secret", "count": "many"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"][0]["loc"] == ["body", "count"]
        assert "hunter2-secret" not in resp.text
