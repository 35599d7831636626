"""Response envelope and API error types.

Every route answers ``{success, data | error, meta: {request_id, timestamp}}``.
Errors carry a machine-readable ``code`` next to the human message.
"""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError as FastAPIRequestValidationError
from fastapi.responses import JSONResponse

from services.errors import (
    BrokerNotConfiguredError,
    ConfigValidationError,
    EntityNotFoundError,
    InvalidTransitionError,
    RequestValidationError,
    ServiceError,
)
from services.errors import StateConflictError as ServiceStateConflictError
from utils.logger import api_logger as logger
from utils.utcnow import utc_iso

REQUEST_ID_HEADER = "X-Request-ID"


class AppError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(
        self,
        message: str,
        details: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ):
        self.message = message
        self.details = details
        self.headers = headers
        super().__init__(message)


class ValidationError(AppError):
    status_code = 400
    code = "invalid_request"


class StateConflictError(AppError):
    status_code = 400
    code = "invalid_state"


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"


class RateLimitError(AppError):
    status_code = 429
    code = "rate_limit_exceeded"

    def __init__(self, message: str, *, limit: int, window: str, retry_after: int):
        super().__init__(
            message,
            details={"limit": limit, "window": window, "retry_after": retry_after},
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": "0",
            },
        )


class ServiceUnavailableError(AppError):
    status_code = 503
    code = "service_unavailable"


# ==================== REQUEST ID / ENVELOPE ====================


def get_request_id(request: Request) -> str:
    """FastAPI dependency: the caller's ``X-Request-ID`` or a fresh UUID4."""
    existing = getattr(request.state, "request_id", None)
    if existing:
        return existing
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    request.state.request_id = request_id
    return request_id


def meta(request_id: str) -> dict[str, str]:
    return {"request_id": request_id, "timestamp": utc_iso()}


def ok(data: Any, request_id: str) -> dict[str, Any]:
    return {"success": True, "data": data, "meta": meta(request_id)}


def fail(
    code: str,
    message: str,
    request_id: str,
    details: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return {"success": False, "error": error, "meta": meta(request_id)}


def error_response(exc: AppError, request_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=fail(exc.code, exc.message, request_id, exc.details),
        headers=exc.headers,
    )


# ==================== SERVICE ERROR TRANSLATION ====================


def to_app_error(exc: Exception) -> AppError:
    if isinstance(exc, AppError):
        return exc
    if isinstance(exc, EntityNotFoundError):
        return NotFoundError(str(exc))
    if isinstance(exc, ConfigValidationError):
        return ValidationError(str(exc), details=exc.details)
    if isinstance(exc, RequestValidationError):
        return ValidationError(str(exc), details=exc.details or None)
    if isinstance(exc, ServiceStateConflictError):
        details = {"current_status": exc.current_status} if exc.current_status else None
        return StateConflictError(str(exc), details=details)
    if isinstance(exc, InvalidTransitionError):
        return StateConflictError(str(exc), details={"current_status": exc.current})
    if isinstance(exc, BrokerNotConfiguredError):
        return ServiceUnavailableError(str(exc))
    return AppError("Internal server error")


@contextmanager
def service_errors():
    """Re-raise service-layer failures as the matching ``AppError``."""
    try:
        yield
    except (ServiceError, InvalidTransitionError) as exc:
        raise to_app_error(exc) from exc


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def _app_error(request: Request, exc: AppError):
        return error_response(exc, get_request_id(request))

    @app.exception_handler(ServiceError)
    async def _service_error(request: Request, exc: ServiceError):
        return error_response(to_app_error(exc), get_request_id(request))

    @app.exception_handler(FastAPIRequestValidationError)
    async def _request_validation(request: Request, exc: FastAPIRequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "Invalid request")
        if field:
            message = f"{field}: {message}"
        return error_response(
            ValidationError(message, details={"errors": _jsonable_errors(errors)}),
            get_request_id(request),
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.exception(
            "Unhandled exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
        )
        return error_response(AppError("Internal server error"), get_request_id(request))


def _jsonable_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg"), "type": err.get("type")}
        for err in errors
    ]
