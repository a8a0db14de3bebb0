"""Application-wide exception classes and handlers.

This module provides a consistent exception hierarchy for the application
and registers global exception handlers with FastAPI. The same hierarchy is
raised by the async messaging client, so callers on both sides of the wire
handle one taxonomy.
"""

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base exception for application errors.

    All custom exceptions should inherit from this class.
    """

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str = "INTERNAL_ERROR",
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}
        super().__init__(message)


class NotFoundError(AppError):
    """Resource not found error (404)."""

    def __init__(self, message: str = "Resource not found", resource: str | None = None):
        details = {"resource": resource} if resource else {}
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(AppError):
    """Validation error (400)."""

    def __init__(self, message: str = "Validation failed", field: str | None = None):
        details = {"field": field} if field else {}
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code="VALIDATION_ERROR",
            details=details,
        )


class ConflictError(AppError):
    """Resource conflict error (409)."""

    def __init__(self, message: str = "Resource conflict", resource: str | None = None):
        details = {"resource": resource} if resource else {}
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            error_code="CONFLICT",
            details=details,
        )


class UnauthorizedError(AppError):
    """Authentication required error (401)."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            error_code="UNAUTHORIZED",
        )


class ForbiddenError(AppError):
    """Access forbidden error (403)."""

    def __init__(self, message: str = "Access denied"):
        super().__init__(
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            error_code="FORBIDDEN",
        )


class TransientStoreError(AppError):
    """Storage or network failure that is expected to heal on retry (503)."""

    def __init__(self, message: str = "Service temporarily unavailable", operation: str | None = None):
        details = {"operation": operation} if operation else {}
        super().__init__(
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code="TRANSIENT_STORE_ERROR",
            details=details,
        )


async def app_exception_handler(request: Request, exc: AppError) -> JSONResponse:
    """Handle AppError and return consistent JSON response."""
    logger.error(
        "AppException: %s (code=%s, status=%d)",
        exc.message,
        exc.error_code,
        exc.status_code,
        extra={"details": exc.details},
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": {
                "code": exc.error_code,
                "message": exc.message,
                "details": exc.details if exc.details else None,
            },
        },
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions with a generic error response."""
    logger.exception("Unhandled exception: %s", str(exc))

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
                "details": None,
            },
        },
    )


def register_exception_handlers(app: FastAPI, *, debug: bool = False) -> None:
    """Register exception handlers with the FastAPI app.

    Args:
        app: The FastAPI application instance.
        debug: If True, unhandled exceptions propagate with stack traces.
    """
    app.add_exception_handler(AppError, app_exception_handler)  # type: ignore[arg-type]
    if not debug:
        app.add_exception_handler(Exception, unhandled_exception_handler)


_ERRORS_BY_CODE: dict[str, type[AppError]] = {
    "NOT_FOUND": NotFoundError,
    "VALIDATION_ERROR": ValidationError,
    "CONFLICT": ConflictError,
    "UNAUTHORIZED": UnauthorizedError,
    "FORBIDDEN": ForbiddenError,
    "TRANSIENT_STORE_ERROR": TransientStoreError,
}


def error_from_payload(status_code: int, payload: dict[str, Any] | None) -> AppError:
    """Rebuild an AppError from an error envelope produced by app_exception_handler.

    Used by API clients so a 404 on the wire is a NotFoundError in the caller.
    """
    error = (payload or {}).get("error") or {}
    message = error.get("message") or f"HTTP {status_code}"
    code = error.get("code")

    exc_class = _ERRORS_BY_CODE.get(code) if code else None
    if exc_class is None:
        if status_code == status.HTTP_404_NOT_FOUND:
            exc_class = NotFoundError
        elif status_code in (status.HTTP_400_BAD_REQUEST, status.HTTP_422_UNPROCESSABLE_ENTITY):
            exc_class = ValidationError
        elif status_code == status.HTTP_409_CONFLICT:
            exc_class = ConflictError
        elif status_code == status.HTTP_401_UNAUTHORIZED:
            exc_class = UnauthorizedError
        elif status_code == status.HTTP_403_FORBIDDEN:
            exc_class = ForbiddenError
        elif status_code >= 500:
            exc_class = TransientStoreError
        else:
            return AppError(message, status_code=status_code)

    exc = exc_class(message)
    exc.details = error.get("details") or {}
    return exc
