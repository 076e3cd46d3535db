"""kpiscore API error handling.

Provides KpiHttpError, the translation of service-layer rejections into it,
and the FastAPI exception handlers that render the error envelope.

Global exception handlers:
- KpiHttpError: Application-specific errors with structured envelope
- StorageUnavailableError: 503, retriable by the caller
- HTTPException: Starlette HTTP exceptions, including router 404/405 and FastAPI's subclass
- RequestValidationError: Pydantic validation errors
- Exception: Catch-all for unhandled exceptions (fail closed, no stack traces)
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException

from kpiscore.api.error_model import get_error_code_for_status, make_error_response
from kpiscore.persistence.db import StorageUnavailableError
from kpiscore.services.errors import (
    AlreadyVerifiedError,
    DuplicatePeriodError,
    ForbiddenError,
    InvalidIndicatorError,
    InvalidPeriodError,
    KpiServiceError,
    NotFoundError,
    RoleMismatchError,
    ScoreValidationError,
    WeightExceededError,
)

logger = logging.getLogger(__name__)


class ErrorResponse(BaseModel):
    """Error envelope schema, used in route ``responses=`` declarations."""

    code: str
    message: str
    details: dict[str, Any] | None = None
    request_id: str | None = None


ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    status: {"model": ErrorResponse} for status in (400, 401, 403, 404, 409, 503)
}


class KpiHttpError(Exception):
    """Application-level HTTP error with structured error envelope.

    Attributes:
        status_code: HTTP status code (e.g., 401, 404, 409).
        code: Machine-readable error code (e.g., "WEIGHT_EXCEEDED").
        message: Human-readable error message.
        details: Optional dict with additional error context.
    """

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details


def to_http_error(exc: KpiServiceError) -> KpiHttpError:
    """Translate a service-layer rejection into its HTTP form.

    Unknown subclasses fall back to 400 so a new business error can never
    surface as a 500.
    """
    message = str(exc)
    if isinstance(exc, WeightExceededError):
        return KpiHttpError(
            409,
            "WEIGHT_EXCEEDED",
            message,
            {"role": exc.role, "current_total": exc.current_total},
        )
    if isinstance(exc, DuplicatePeriodError):
        return KpiHttpError(
            409,
            "DUPLICATE_PERIOD",
            message,
            {"subject_id": exc.subject_id, "indicator_id": exc.indicator_id, "period": exc.period},
        )
    if isinstance(exc, AlreadyVerifiedError):
        return KpiHttpError(409, "ALREADY_VERIFIED", message, {"score_id": exc.score_id})
    if isinstance(exc, RoleMismatchError):
        return KpiHttpError(
            403,
            "ROLE_MISMATCH",
            message,
            {"indicator_role": exc.indicator_role, "subject_role": exc.subject_role},
        )
    if isinstance(exc, ForbiddenError):
        return KpiHttpError(403, "FORBIDDEN", message, {"reason": exc.reason})
    if isinstance(exc, NotFoundError):
        return KpiHttpError(
            404,
            "NOT_FOUND",
            message,
            {"resource_type": exc.resource_type, "resource_id": exc.resource_id},
        )
    if isinstance(exc, ScoreValidationError):
        return KpiHttpError(400, "VALIDATION_ERROR", message, {"field": exc.field})
    if isinstance(exc, InvalidIndicatorError):
        return KpiHttpError(400, "INVALID_INDICATOR", message)
    if isinstance(exc, InvalidPeriodError):
        return KpiHttpError(400, "INVALID_PERIOD", message)
    return KpiHttpError(400, "BAD_REQUEST", message)


async def kpi_http_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """FastAPI exception handler for KpiHttpError."""
    assert isinstance(exc, KpiHttpError)

    return make_error_response(
        request,
        code=exc.code,
        message=exc.message,
        http_status=exc.status_code,
        details=exc.details,
    )


async def storage_unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render StorageUnavailableError as 503 STORAGE_UNAVAILABLE."""
    assert isinstance(exc, StorageUnavailableError)

    logger.error(
        "Storage unavailable: %s",
        exc,
        extra={"request_id": getattr(request.state, "request_id", None)},
    )
    return make_error_response(
        request,
        code="STORAGE_UNAVAILABLE",
        message="Storage is temporarily unavailable",
        http_status=503,
        details={"operation": exc.operation},
    )


async def http_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Exception handler for starlette HTTPException (and FastAPI's subclass)."""
    assert isinstance(exc, HTTPException)

    code = get_error_code_for_status(exc.status_code)
    message = str(exc.detail) if exc.detail else f"HTTP {exc.status_code}"

    return make_error_response(
        request,
        code=code,
        message=message,
        http_status=exc.status_code,
        details=None,
    )


async def request_validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """FastAPI exception handler for RequestValidationError.

    Reports field paths and messages only; raw input values are not echoed.
    """
    assert isinstance(exc, RequestValidationError)

    safe_details: list[dict[str, Any]] = []
    for error in exc.errors():
        loc = error.get("loc", ())
        safe_loc = [str(part) for part in loc if part not in ("body", "query", "path")]
        safe_details.append(
            {
                "field": ".".join(safe_loc) if safe_loc else "request",
                "message": error.get("msg", "Validation error"),
            }
        )

    return make_error_response(
        request,
        code="REQUEST_VALIDATION_FAILED",
        message="Request validation failed",
        http_status=422,
        details={"errors": safe_details} if safe_details else None,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler: 500 with a generic message, exception logged."""
    request_id = getattr(request.state, "request_id", None)

    logger.exception(
        "Unhandled exception: %s",
        type(exc).__name__,
        extra={"request_id": request_id},
    )

    return make_error_response(
        request,
        code="INTERNAL_ERROR",
        message="An internal error occurred",
        http_status=500,
        details=None,
    )
