"""Error codes and the response envelope shared by every endpoint."""

from __future__ import annotations

from enum import Enum
from typing import Any

from fastapi import HTTPException, status


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "validation_error"
    RATE_LIMITED = "rate_limited"
    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_OR_EXPIRED_TOKEN = "invalid_or_expired_token"
    NOT_AUTHENTICATED = "not_authenticated"
    WEAK_PASSWORD = "weak_password"
    PASSWORD_MISMATCH = "password_mismatch"
    ALREADY_VERIFIED = "already_verified"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    VERIFICATION_COOLDOWN = "verification_cooldown"
    SERVICE_UNAVAILABLE = "service_unavailable"
    NOT_FOUND = "not_found"
    INTERNAL_ERROR = "internal_error"


# Fallback codes for plain HTTPExceptions raised by FastAPI or Starlette.
_STATUS_CODES: dict[int, ErrorCode] = {
    status.HTTP_401_UNAUTHORIZED: ErrorCode.NOT_AUTHENTICATED,
    status.HTTP_404_NOT_FOUND: ErrorCode.NOT_FOUND,
    status.HTTP_422_UNPROCESSABLE_ENTITY: ErrorCode.VALIDATION_ERROR,
    status.HTTP_429_TOO_MANY_REQUESTS: ErrorCode.RATE_LIMITED,
    status.HTTP_503_SERVICE_UNAVAILABLE: ErrorCode.SERVICE_UNAVAILABLE,
}


class APIError(HTTPException):
    """HTTP error carrying a stable machine-readable ``code``."""

    def __init__(
        self,
        status_code: int,
        code: ErrorCode,
        message: str,
        *,
        fields: dict[str, list[str]] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(status_code=status_code, detail=message, headers=headers)
        self.code = code
        self.message = message
        self.fields = fields


def code_for_status(status_code: int) -> ErrorCode:
    if status_code in _STATUS_CODES:
        return _STATUS_CODES[status_code]
    if status_code >= 500:
        return ErrorCode.INTERNAL_ERROR
    return ErrorCode.VALIDATION_ERROR


def error_body(
    code: ErrorCode,
    message: str,
    *,
    fields: dict[str, list[str]] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code.value, "message": message}
    if fields:
        error["fields"] = fields
    return {"success": False, "error": error}


def success_body(message: str, **extra: Any) -> dict[str, Any]:
    return {"success": True, "message": message, **extra}


def not_authenticated() -> APIError:
    return APIError(
        status.HTTP_401_UNAUTHORIZED,
        ErrorCode.NOT_AUTHENTICATED,
        "Authentication required.",
        headers={"WWW-Authenticate": "Bearer"},
    )


def invalid_token() -> APIError:
    return APIError(
        status.HTTP_400_BAD_REQUEST,
        ErrorCode.INVALID_OR_EXPIRED_TOKEN,
        "This link is invalid or has expired.",
    )
