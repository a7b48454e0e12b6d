"""
Consistent error handling for the entitlement and billing API.

All API errors MUST use these standard error classes and shapes.
Stack traces are NEVER returned to clients.

Standard HTTP status codes:
- 400: Bad Request (missing fields, unknown product/price identifiers)
- 401: Unauthorized (missing or invalid caller identity)
- 403: Forbidden (non-admin calling an admin-only action)
- 404: Not Found (subscription, content, team or invite)
- 409: Conflict (invite already answered, team full)
- 502: Bad Gateway (payments or verification provider failed)
- 500: Internal Server Error
"""

import logging
import uuid
from typing import Any, Optional

from fastapi import FastAPI, Request, HTTPException, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


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
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict:
        """Convert to API error response format."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class ValidationError(AppError):
    """Validation error (400)."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )


class AuthenticationError(AppError):
    """Authentication failure (401)."""

    def __init__(self, message: str = "Authentication required", details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="AUTHENTICATION_ERROR",
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            details=details,
        )


class AuthorizationError(AppError):
    """Caller is authenticated but lacks the required role (403)."""

    def __init__(self, message: str = "Administrator role required", details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="AUTHORIZATION_ERROR",
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            details=details,
        )


class NotFoundError(AppError):
    """Resource not found (404)."""

    def __init__(self, resource: str, identifier: Optional[str] = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with id '{identifier}' not found"
        super().__init__(
            code="NOT_FOUND",
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
        )


class ConflictError(AppError):
    """Resource conflict (409)."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="CONFLICT",
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=details,
        )


class ExternalProviderError(AppError):
    """
    A payments or verification provider rejected or failed the call (502).

    The provider's own message is surfaced to the caller.
    """

    def __init__(
        self,
        provider: str,
        message: str,
        provider_code: Optional[str] = None,
    ):
        details: dict[str, Any] = {"provider": provider}
        if provider_code:
            details["provider_code"] = provider_code
        super().__init__(
            code="EXTERNAL_PROVIDER_ERROR",
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            details=details,
        )
        self.provider = provider
        self.provider_code = provider_code


def generate_correlation_id() -> str:
    """Generate a unique correlation ID for request tracing."""
    return str(uuid.uuid4())


def get_correlation_id(request: Request) -> str:
    """
    Get correlation ID from request or generate new one.

    Checks X-Correlation-ID header first, then request state.
    """
    correlation_id = request.headers.get("X-Correlation-ID")
    if correlation_id:
        return correlation_id

    if hasattr(request.state, "correlation_id"):
        return request.state.correlation_id

    return generate_correlation_id()


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render an AppError raised inside a route as its structured payload."""
    correlation_id = get_correlation_id(request)
    logger.warning(
        "Application error",
        extra={
            "correlation_id": correlation_id,
            "error_code": exc.code,
            "status_code": exc.status_code,
            "path": request.url.path,
            "method": request.method,
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={"X-Correlation-ID": correlation_id},
    )


_REQUEST_LOCATIONS = ("body", "query", "path", "header", "cookie")


def validation_error_from_request(exc: RequestValidationError) -> ValidationError:
    """Convert FastAPI's request validation failure into a 400 ValidationError."""
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in _REQUEST_LOCATIONS]
        errors.append({
            "field": ".".join(loc) or None,
            "message": err.get("msg"),
            "type": err.get("type"),
        })

    missing = [e["field"] for e in errors if e["type"] == "missing" and e["field"]]
    if missing:
        message = f"Missing required field(s): {', '.join(missing)}"
    else:
        message = "Request validation failed"
    return ValidationError(message, details={"errors": errors})


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Missing or malformed request fields answer 400 in the standard error shape."""
    return await app_error_handler(request, validation_error_from_request(exc))


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Middleware that catches all exceptions and returns consistent error responses.

    IMPORTANT: Stack traces are NEVER returned to clients.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = get_correlation_id(request)
        request.state.correlation_id = correlation_id

        try:
            response = await call_next(request)
            response.headers["X-Correlation-ID"] = correlation_id
            return response

        except AppError as e:
            return await app_error_handler(request, e)

        except HTTPException as e:
            logger.warning(
                "HTTP exception",
                extra={
                    "correlation_id": correlation_id,
                    "status_code": e.status_code,
                    "detail": e.detail,
                    "path": request.url.path,
                    "method": request.method,
                }
            )
            return JSONResponse(
                status_code=e.status_code,
                content={
                    "error": {
                        "code": "HTTP_ERROR",
                        "message": str(e.detail),
                        "details": {},
                    }
                },
                headers={"X-Correlation-ID": correlation_id},
            )

        except Exception as e:
            # Full exception is logged server-side only
            logger.exception(
                "Unhandled exception",
                extra={
                    "correlation_id": correlation_id,
                    "error_type": type(e).__name__,
                    "path": request.url.path,
                    "method": request.method,
                }
            )
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "error": {
                        "code": "INTERNAL_ERROR",
                        "message": "An unexpected error occurred",
                        "details": {"correlation_id": correlation_id},
                    }
                },
                headers={"X-Correlation-ID": correlation_id},
            )


def install_error_handling(app: FastAPI) -> None:
    """Register the AppError and request validation handlers and the catch-all middleware."""
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_middleware(ErrorHandlerMiddleware)
