"""Typed application errors and client-safe masking.

Every failure that crosses the HTTP boundary is an :class:`AppError`. Raw
driver errors are classified once (see :mod:`reportops.classifier`) and never
reach a response body; :func:`mask_error_for_client` maps whatever arrives at
a route handler to a generic, per-code message.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any

from loguru import logger


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTH_ERROR = "AUTH_ERROR"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    TIMEOUT = "TIMEOUT"
    DATABASE_ERROR = "DATABASE_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    SERVER_ERROR = "SERVER_ERROR"


class AppError(Exception):
    code: ErrorCode = ErrorCode.SERVER_ERROR
    status_code: int = 500

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, code={self.code.value}, status={self.status_code})"


class ValidationError(AppError):
    code = ErrorCode.VALIDATION_ERROR
    status_code = 400


class QueryBuildError(ValidationError):
    """Malformed QueryOptions (unknown dimension, bad depth). Never retried."""


class AuthError(AppError):
    code = ErrorCode.AUTH_ERROR
    status_code = 401


class PermissionDeniedError(AppError):
    code = ErrorCode.FORBIDDEN
    status_code = 403


class NotFoundError(AppError):
    code = ErrorCode.NOT_FOUND
    status_code = 404


class RequestTimeoutError(AppError):
    code = ErrorCode.TIMEOUT
    status_code = 408

    def __init__(
        self,
        message: str = "Request timeout - please try a shorter date range",
        details: dict[str, Any] | None = None,
        *,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, details, status_code=status_code)


class DatabaseError(AppError):
    code = ErrorCode.DATABASE_ERROR
    status_code = 500


class NetworkError(AppError):
    code = ErrorCode.NETWORK_ERROR
    status_code = 503


def normalize_error(error: BaseException) -> AppError:
    if isinstance(error, AppError):
        return error
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return RequestTimeoutError(str(error) or "Request timeout")
    return AppError(str(error) or "Unknown error occurred", {"type": type(error).__name__})


GENERIC_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.AUTH_ERROR: "Session expired - please sign in again",
    ErrorCode.FORBIDDEN: "You do not have permission to perform this action",
    ErrorCode.NOT_FOUND: "Resource not found",
    ErrorCode.TIMEOUT: "Request timeout - please try again with a shorter date range",
    ErrorCode.DATABASE_ERROR: "An error occurred while processing your request",
    ErrorCode.NETWORK_ERROR: "Network error - please check your connection and try again",
    ErrorCode.SERVER_ERROR: "An internal error occurred - please try again later",
}


def mask_error_for_client(error: BaseException, context: str | None = None) -> tuple[str, ErrorCode, int]:
    normalized = normalize_error(error)

    if context:
        logger.error(
            "[{}] {}: {} (code={}, status={}, details={})",
            context,
            type(normalized).__name__,
            normalized.message,
            normalized.code.value,
            normalized.status_code,
            normalized.details,
        )

    # Validation messages are written by us, not by a driver.
    if normalized.code is ErrorCode.VALIDATION_ERROR:
        message = normalized.message
    else:
        message = GENERIC_MESSAGES[normalized.code]
    return message, normalized.code, normalized.status_code
