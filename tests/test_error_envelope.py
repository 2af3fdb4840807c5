"""Tests for the error envelope and the exception handlers that produce it.

Every error response has the shape:
{
    "status": "error",
    "error": {
        "code": "<AuthErrorCode>",
        "message": "<human_readable>",
        "status": <http status>,
        "details": <object|array|null>,
        "request_id": "<id>",
        "timestamp": "<iso8601>"
    },
    "request_id": "<id>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from authsvc.api.error_handling import _error_response, register_exception_handlers
from authsvc.api.schemas import Envelope, ErrorBody
from authsvc.service.errors import AuthError, AuthErrorCode, code_for_status
from authsvc.storage.errors import ConstraintViolation, StoreUnavailable


class TestErrorBody:
    def test_error_body_requires_known_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="not_a_code", message="nope", status=400)

    def test_error_body_fills_request_id_and_timestamp(self):
        error = ErrorBody(code=AuthErrorCode.NOT_FOUND, message="missing", status=404)
        assert error.request_id
        assert error.timestamp
        assert error.details is None

    def test_envelope_status_is_constrained(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestErrorCodes:
    @pytest.mark.parametrize(
        "code,status",
        [
            (AuthErrorCode.EMAIL_EXISTS, 409),
            (AuthErrorCode.INVALID_CREDENTIALS, 401),
            (AuthErrorCode.ACCOUNT_LOCKED, 423),
            (AuthErrorCode.INVALID_LOGIN_METHOD, 400),
            (AuthErrorCode.TOKEN_EXPIRED, 401),
            (AuthErrorCode.TOO_MANY_REQUESTS, 429),
            (AuthErrorCode.VALIDATION_ERROR, 422),
            (AuthErrorCode.USER_NOT_FOUND, 404),
            (AuthErrorCode.SERVER_ERROR, 500),
        ],
    )
    def test_http_status_mapping(self, code, status):
        assert code.http_status == status

    def test_every_code_has_a_status(self):
        for code in AuthErrorCode:
            assert 400 <= code.http_status < 600

    def test_code_for_unmapped_status(self):
        assert code_for_status(405) is AuthErrorCode.BAD_REQUEST
        assert code_for_status(502) is AuthErrorCode.SERVER_ERROR
        assert code_for_status(404) is AuthErrorCode.NOT_FOUND


class TestErrorResponse:
    def test_error_response_shape(self):
        response = _error_response(AuthErrorCode.INVALID_TOKEN, "invalid refresh token")
        body = json.loads(response.body)

        assert response.status_code == 401
        assert body["status"] == "error"
        assert body["error"]["code"] == "INVALID_TOKEN"
        assert body["error"]["status"] == 401
        assert body["request_id"] == body["error"]["request_id"]

    def test_status_override(self):
        response = _error_response(AuthErrorCode.SERVER_ERROR, "down", status_code=503)
        assert response.status_code == 503
        assert json.loads(response.body)["error"]["status"] == 503


@pytest.fixture
def error_app():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/auth-error")
    async def auth_error():
        raise AuthError(AuthErrorCode.TOO_MANY_REQUESTS, "slow down", detail={"retry_after": 42})

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/store-down")
    async def store_down():
        raise StoreUnavailable("database unavailable")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    def test_auth_error_sets_retry_after(self, error_app):
        response = error_app.get("/auth-error")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"
        assert response.json()["error"]["details"] == {"retry_after": 42}

    def test_constraint_violation_on_email_is_conflict(self, error_app):
        response = error_app.get("/constraint")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "EMAIL_EXISTS"

    def test_store_unavailable_is_503(self, error_app):
        response = error_app.get("/store-down")
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "SERVER_ERROR"

    def test_unknown_route_uses_not_found_code(self, error_app):
        response = error_app.get("/nowhere")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_uncaught_exception_hides_details(self, error_app):
        response = error_app.get("/boom")
        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "SERVER_ERROR"
        assert "secret internals" not in response.text
