from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from authsvc.api.schemas import Envelope, ErrorBody
from authsvc.logging import get_logger, sanitize_error_message
from authsvc.service.errors import AuthError, AuthErrorCode, code_for_status
from authsvc.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)


def _error_response(
    code: AuthErrorCode,
    message: str,
    details: Any = None,
    *,
    status_code: int | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    status = status_code or code.http_status
    body = ErrorBody(code=code, message=message, status=status, details=details or None)
    envelope = Envelope(status="error", error=body, request_id=body.request_id)
    return JSONResponse(
        status_code=status, content=envelope.model_dump(mode="json"), headers=headers
    )


def _validation_details(exc: RequestValidationError) -> list[dict]:
    details = []
    for error in exc.errors():
        details.append(
            {
                "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
                "message": str(error.get("msg", "invalid value")),
            }
        )
    return details


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as an error envelope carrying request id and timestamp."""

    @app.exception_handler(AuthError)
    async def handle_auth_error(request: Request, exc: AuthError):
        log_fn = logger.error if exc.status_code >= 500 else logger.info
        log_fn(
            "auth_error",
            path=request.url.path,
            method=request.method,
            error_code=exc.code.value,
            status_code=exc.status_code,
        )
        headers = None
        retry_after = exc.detail.get("retry_after") if exc.detail else None
        if retry_after:
            headers = {"Retry-After": str(retry_after)}
        return _error_response(exc.code, exc.message, exc.detail, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[d["field"] for d in details],
        )
        return _error_response(AuthErrorCode.VALIDATION_ERROR, "request validation failed", details)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        code = (
            AuthErrorCode.EMAIL_EXISTS
            if exc.detail.get("field") == "email"
            else AuthErrorCode.BAD_REQUEST
        )
        return _error_response(code, exc.message, exc.detail)

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error("store_unavailable", path=request.url.path, method=request.method)
        return _error_response(
            AuthErrorCode.SERVER_ERROR, "service temporarily unavailable", status_code=503
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        code = code_for_status(exc.status_code)
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        return _error_response(
            code, sanitize_error_message(message), status_code=exc.status_code
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(AuthErrorCode.SERVER_ERROR, "internal server error")
