"""
Consistent error handling for the couple pairing backend.

All API errors MUST use these standard error classes and shapes.
Stack traces are NEVER returned to clients.

Standard HTTP status codes:
- 400: Invalid argument (malformed code, bad payload)
- 401: Unauthenticated (no/expired token)
- 403: Permission denied (admin secret mismatch)
- 404: Not found (unknown code, missing account, no partner)
- 409: Conflict (code already used, already connected, concurrent write)
- 410: Deadline exceeded (pairing code expired)
- 429: Too many requests (rate limit)
- 500: Internal error
- 503: Service unavailable (strict rate limiter with store down)
"""

import logging
import uuid
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class AppError(Exception):
    """
    Base application error with consistent error shape.

    All custom errors should inherit from this class.
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.headers = headers or {}

    @property
    def reason(self) -> Optional[str]:
        return self.details.get("reason")

    def to_dict(self) -> dict:
        """Convert to API error response format."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


def _with_reason(details: Optional[dict[str, Any]], reason: Optional[str]) -> dict[str, Any]:
    merged = dict(details or {})
    if reason:
        merged["reason"] = reason
    return merged


class InvalidArgumentError(AppError):
    """Malformed input (400)."""

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            code="INVALID_ARGUMENT",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=_with_reason(details, reason),
        )


class AuthenticationError(AppError):
    """Authentication failure (401)."""

    def __init__(self, message: str = "Authentication required", details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="UNAUTHENTICATED",
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            details=details,
            headers={"WWW-Authenticate": "Bearer"},
        )


class PermissionDeniedError(AppError):
    """Permission denied (403)."""

    def __init__(self, message: str = "Permission denied", details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="PERMISSION_DENIED",
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            details=details,
        )


class NotFoundError(AppError):
    """Resource not found (404)."""

    def __init__(
        self,
        resource: str,
        identifier: Optional[str] = None,
        reason: Optional[str] = None,
    ):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} '{identifier}' not found"
        super().__init__(
            code="NOT_FOUND",
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details=_with_reason(None, reason),
        )


class ConflictError(AppError):
    """Resource conflict (409)."""

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            code="CONFLICT",
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=_with_reason(details, reason),
        )


class ConcurrentModificationError(ConflictError):
    """A transaction kept losing write races and gave up (409)."""

    def __init__(self, message: str = "Concurrent modification, please retry", attempts: int = 0):
        super().__init__(
            message,
            reason="concurrent-modification",
            details={"attempts": attempts},
        )


class CodeExpiredError(AppError):
    """Pairing code past its expiry (410)."""

    def __init__(self, message: str = "Pairing code has expired"):
        super().__init__(
            code="DEADLINE_EXCEEDED",
            message=message,
            status_code=status.HTTP_410_GONE,
            details={"reason": "expired"},
        )


class RateLimitError(AppError):
    """Rate limit exceeded (429)."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[int] = None,
        operation: Optional[str] = None,
    ):
        details: dict[str, Any] = {}
        headers: dict[str, str] = {}
        if retry_after:
            details["retry_after_seconds"] = retry_after
            headers["Retry-After"] = str(retry_after)
        if operation:
            details["operation"] = operation
        super().__init__(
            code="RATE_LIMIT_EXCEEDED",
            message=message,
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            details=details,
            headers=headers,
        )
        self.retry_after = retry_after


class InternalError(AppError):
    """Internal failure surfaced deliberately (500)."""

    def __init__(self, message: str = "An internal error occurred", details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="INTERNAL_ERROR",
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
        )


class ServiceUnavailableError(AppError):
    """Service unavailable (503)."""

    def __init__(self, message: str = "Service temporarily unavailable"):
        super().__init__(
            code="SERVICE_UNAVAILABLE",
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


def generate_correlation_id() -> str:
    """Generate a unique correlation ID for request tracing."""
    return str(uuid.uuid4())


def get_correlation_id(request: Request) -> str:
    """
    Get correlation ID from request or generate new one.

    Checks X-Correlation-ID header first, then request state.
    """
    correlation_id = request.headers.get(CORRELATION_HEADER)
    if correlation_id:
        return correlation_id

    if hasattr(request.state, "correlation_id"):
        return request.state.correlation_id

    return generate_correlation_id()


def _error_response(error: AppError, correlation_id: str) -> JSONResponse:
    headers = dict(error.headers)
    headers[CORRELATION_HEADER] = correlation_id
    return JSONResponse(
        status_code=error.status_code,
        content=error.to_dict(),
        headers=headers,
    )


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    correlation_id = get_correlation_id(request)
    if exc.status_code >= 500:
        logger.error(
            "Application error",
            extra={
                "correlation_id": correlation_id,
                "error_code": exc.code,
                "status_code": exc.status_code,
                "path": request.url.path,
                "method": request.method,
            },
        )
    else:
        logger.warning(
            "Application error",
            extra={
                "correlation_id": correlation_id,
                "error_code": exc.code,
                "status_code": exc.status_code,
                "reason": exc.reason,
                "path": request.url.path,
                "method": request.method,
            },
        )
    return _error_response(exc, correlation_id)


def register_error_handlers(app: FastAPI) -> None:
    """Render AppError subclasses raised by routes and dependencies."""
    app.add_exception_handler(AppError, app_error_handler)


def _unexpected_error_response(correlation_id: str) -> JSONResponse:
    body = InternalError("An unexpected error occurred", details={"correlation_id": correlation_id})
    return _error_response(body, correlation_id)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Stamps every response with X-Correlation-ID and converts anything that
    escaped the exception handlers into a generic 500.

    Stack traces are NEVER returned to clients.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = get_correlation_id(request)
        request.state.correlation_id = correlation_id

        try:
            response = await call_next(request)
        except AppError as e:
            return _error_response(e, correlation_id)
        except Exception as e:
            logger.exception(
                "Unhandled exception",
                extra={
                    "correlation_id": correlation_id,
                    "error_type": type(e).__name__,
                    "path": request.url.path,
                    "method": request.method,
                }
            )
            return _unexpected_error_response(correlation_id)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
