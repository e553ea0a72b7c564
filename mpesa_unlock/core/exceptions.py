from typing import Any

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ConfigurationError(AppError):
    def __init__(self, message: str = "Payment not configured", details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code="CONFIGURATION",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
        )


class ForbiddenError(AppError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class ValidationError(BadRequestError):
    def __init__(self, message: str = "Validation error", details: dict[str, Any] | None = None):
        super().__init__(message, details=details)
        self.code = "VALIDATION_ERROR"


class InvalidPhoneError(ValidationError):
    def __init__(self, message: str = "Invalid Kenyan phone number format"):
        super().__init__(message)
        self.code = "INVALID_PHONE"


class RateLimitedError(AppError):
    def __init__(self, message: str = "Too many attempts. Try later."):
        super().__init__(message, code="RATE_LIMITED", status_code=status.HTTP_429_TOO_MANY_REQUESTS)


class GatewayTransientError(AppError):
    """Gateway unreachable or erroring after the one-shot retry."""

    def __init__(self, message: str = "Payment gateway unavailable", details: dict[str, Any] | None = None):
        super().__init__(message, code="GATEWAY_UNAVAILABLE", status_code=status.HTTP_502_BAD_GATEWAY, details=details)


class GatewayRejectedError(AppError):
    """Gateway answered but refused the charge. Never retried."""

    def __init__(self, message: str = "STK push failed", details: dict[str, Any] | None = None):
        super().__init__(message, code="GATEWAY_REJECTED", status_code=status.HTTP_502_BAD_GATEWAY, details=details)


def _body(request: Request, message: str, code: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"success": False, "error": message, "code": code}
    if details:
        body["details"] = details
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return body


# Error bodies are never cacheable (status polls rely on this for 404s).
NO_STORE = {"Cache-Control": "no-store"}


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    return ORJSONResponse(
        status_code=exc.status_code,
        content=_body(request, exc.message, exc.code, exc.details),
        headers=NO_STORE,
    )


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ())[1:]) or "body"
    if first.get("type") == "missing":
        message = f"{field} required"
    else:
        message = f"{field}: {first.get('msg', 'invalid')}"
    return ORJSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_body(request, message, "VALIDATION_ERROR", {"errors": jsonable_encoder(errors)}),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from mpesa_unlock.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_body(request, "Internal server error", "INTERNAL_ERROR"),
    )
