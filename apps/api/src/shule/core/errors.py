"""
Service Errors and Exception Handlers

All business-rule failures are raised as ServiceError subclasses and rendered
by the handlers below as a single JSON envelope:

    {"status": "error", "error": "<CODE>", "message": "<safe text>"}

Internal detail (stack traces, driver messages) is logged, never returned.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import InterfaceError, OperationalError
from starlette.exceptions import HTTPException

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(
        self,
        message: str,
        error_code: str,
        status_code: int = 400,
        headers: dict[str, str] | None = None,
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.headers = headers
        super().__init__(message)


class ValidationError(ServiceError):
    """Raised when input fails a business validation rule."""

    def __init__(self, message: str, error_code: str = "VALIDATION_ERROR"):
        super().__init__(message=message, error_code=error_code, status_code=400)


class ConflictError(ServiceError):
    """Raised when a unique resource (email, phone, code) already exists."""

    def __init__(self, message: str, error_code: str = "CONFLICT"):
        super().__init__(message=message, error_code=error_code, status_code=409)


class AuthenticationError(ServiceError):
    """Raised when credentials or tokens are rejected."""

    def __init__(
        self,
        message: str = "Invalid email or password.",
        error_code: str = "INVALID_CREDENTIALS",
        status_code: int = 401,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            headers={"WWW-Authenticate": "Bearer"} if status_code == 401 else None,
        )


class EmailNotVerifiedError(AuthenticationError):
    """Raised when an unverified user tries to log in."""

    def __init__(self, message: str = "Please verify your email before logging in."):
        super().__init__(message=message, error_code="EMAIL_NOT_VERIFIED", status_code=403)


class AuthorizationError(ServiceError):
    """Raised when an authenticated user may not perform an action."""

    def __init__(
        self,
        message: str = "You do not have permission to perform this action.",
        error_code: str = "FORBIDDEN",
    ):
        super().__init__(message=message, error_code=error_code, status_code=403)


class SchoolInactiveError(AuthorizationError):
    """Raised when the user's school is not active."""

    def __init__(self, message: str = "School account is not active."):
        super().__init__(message=message, error_code="SCHOOL_INACTIVE")


class NotFoundError(ServiceError):
    """Raised when a requested resource does not exist."""

    def __init__(self, message: str = "Resource not found.", error_code: str = "NOT_FOUND"):
        super().__init__(message=message, error_code=error_code, status_code=404)


class RateLimitError(ServiceError):
    """Raised when too many attempts were made in a time window."""

    def __init__(
        self,
        message: str = "Too many attempts. Please try again later.",
        retry_after_seconds: int = 300,
    ):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            message=message,
            error_code="RATE_LIMIT_EXCEEDED",
            status_code=429,
            headers={"Retry-After": str(retry_after_seconds)},
        )


class DependencyError(ServiceError):
    """Raised when a required external dependency (database, email) fails."""

    def __init__(
        self,
        message: str = "Service temporarily unavailable. Please try again.",
        error_code: str = "SERVICE_UNAVAILABLE",
    ):
        super().__init__(message=message, error_code=error_code, status_code=503)


def error_body(error_code: str, message: str) -> dict[str, str]:
    """Build the standard error envelope."""
    return {"status": "error", "error": error_code, "message": message}


async def _service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.error_code, exc.message),
        headers=exc.headers,
    )


async def _http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict):
        code = str(detail.get("error", "HTTP_ERROR"))
        message = str(detail.get("message", ""))
    else:
        code = "NOT_FOUND" if exc.status_code == 404 else "HTTP_ERROR"
        message = str(detail)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(code, message),
        headers=getattr(exc, "headers", None),
    )


async def _validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    message = "Invalid request."
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        text = str(first.get("msg", "")).removeprefix("Value error, ")
        message = f"{field}: {text}" if field else text
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body("VALIDATION_ERROR", message),
    )


async def _unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Dependency failure on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=error_body(
            "SERVICE_UNAVAILABLE", "Service temporarily unavailable. Please try again."
        ),
    )


async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body("INTERNAL_ERROR", "An unexpected error occurred."),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Attach the error envelope handlers to the application."""
    app.add_exception_handler(ServiceError, _service_error_handler)
    app.add_exception_handler(HTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)
    app.add_exception_handler(OperationalError, _unavailable_handler)
    app.add_exception_handler(InterfaceError, _unavailable_handler)
    app.add_exception_handler(TimeoutError, _unavailable_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)


__all__ = [
    "ServiceError",
    "ValidationError",
    "ConflictError",
    "AuthenticationError",
    "EmailNotVerifiedError",
    "AuthorizationError",
    "SchoolInactiveError",
    "NotFoundError",
    "RateLimitError",
    "DependencyError",
    "error_body",
    "register_exception_handlers",
]
