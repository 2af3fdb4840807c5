from __future__ import annotations

from enum import Enum
from typing import Optional


class AuthErrorCode(str, Enum):
    """Closed set of error codes surfaced to API clients."""

    EMAIL_EXISTS = "EMAIL_EXISTS"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    INVALID_TOKEN = "INVALID_TOKEN"
    INVALID_LOGIN_METHOD = "INVALID_LOGIN_METHOD"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    TOO_MANY_REQUESTS = "TOO_MANY_REQUESTS"
    SERVER_ERROR = "SERVER_ERROR"
    BAD_REQUEST = "BAD_REQUEST"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    USER_NOT_FOUND = "USER_NOT_FOUND"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS = {
    AuthErrorCode.EMAIL_EXISTS: 409,
    AuthErrorCode.INVALID_CREDENTIALS: 401,
    AuthErrorCode.ACCOUNT_LOCKED: 423,
    AuthErrorCode.INVALID_TOKEN: 401,
    AuthErrorCode.INVALID_LOGIN_METHOD: 400,
    AuthErrorCode.TOKEN_EXPIRED: 401,
    AuthErrorCode.SESSION_EXPIRED: 401,
    AuthErrorCode.UNAUTHORIZED: 401,
    AuthErrorCode.FORBIDDEN: 403,
    AuthErrorCode.TOO_MANY_REQUESTS: 429,
    AuthErrorCode.SERVER_ERROR: 500,
    AuthErrorCode.BAD_REQUEST: 400,
    AuthErrorCode.NOT_FOUND: 404,
    AuthErrorCode.VALIDATION_ERROR: 422,
    AuthErrorCode.USER_NOT_FOUND: 404,
}

_STATUS_FALLBACK = {
    400: AuthErrorCode.BAD_REQUEST,
    401: AuthErrorCode.UNAUTHORIZED,
    403: AuthErrorCode.FORBIDDEN,
    404: AuthErrorCode.NOT_FOUND,
    409: AuthErrorCode.EMAIL_EXISTS,
    422: AuthErrorCode.VALIDATION_ERROR,
    423: AuthErrorCode.ACCOUNT_LOCKED,
    429: AuthErrorCode.TOO_MANY_REQUESTS,
}


def code_for_status(status_code: int) -> AuthErrorCode:
    """Best-effort code for errors raised outside the engine (framework 404s etc.)."""
    if status_code >= 500:
        return AuthErrorCode.SERVER_ERROR
    return _STATUS_FALLBACK.get(status_code, AuthErrorCode.BAD_REQUEST)


class AuthError(Exception):
    """A failure crossing the HTTP boundary.

    The engine itself returns ``Failure`` values; routes call ``unwrap()``
    which raises this, and the registered exception handler renders it.
    """

    def __init__(
        self,
        code: AuthErrorCode,
        message: str,
        *,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.detail = detail or {}

    @property
    def status_code(self) -> int:
        return self.code.http_status


class IdentityExchangeError(Exception):
    """The identity provider rejected or failed the authorization code exchange."""
