"""
Error handler middleware and custom exceptions.

Every error response has the shape
``{"error": {"message", "type", "details"}, "correlation_id"}`` whether it
comes from a route, from the sync engine's error taxonomy, or from request
validation.
"""
import logging
from typing import Optional, Dict, Any
from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from bema_sync.lib.errors import CampaignNotFound, SyncError, ValidationError
from bema_sync.lib.logging import get_logger

logger = get_logger(__name__)


# Custom exception classes
class AppException(Exception):
    """Base application exception."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundException(AppException):
    """Resource not found exception."""

    def __init__(self, resource: str, resource_id: Optional[str] = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with id '{resource_id}' not found"
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "resource_id": resource_id},
        )


class ConflictException(AppException):
    """Another sync holds the lock."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=details or {},
        )


def _error_body(request: Request, message: str, error_type: str, details: Optional[Dict[str, Any]] = None) -> dict:
    return {
        "error": {
            "message": message,
            "type": error_type,
            "details": details or {},
        },
        "correlation_id": getattr(request.state, "correlation_id", "unknown"),
    }


def sync_error_status(exc: SyncError) -> int:
    """HTTP status for an engine error."""
    if isinstance(exc, CampaignNotFound):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR


# Exception handlers
async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """
    Handler for custom application exceptions.
    """
    log_level = logging.WARNING if exc.status_code < 500 else logging.ERROR
    logger.log(
        log_level,
        f"Application error: {exc.message}",
        extra={"extra_fields": {
            "correlation_id": getattr(request.state, "correlation_id", "unknown"),
            "status_code": exc.status_code,
            "path": request.url.path,
            "method": request.method,
            "details": exc.details,
        }},
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.message, exc.__class__.__name__, exc.details),
    )


async def sync_exception_handler(request: Request, exc: SyncError) -> JSONResponse:
    """
    Handler for the sync engine's error taxonomy.

    Validation errors become 400, unknown campaigns 404, the rest 500. The
    ``retryable`` flag is passed through so callers can decide to resubmit.
    """
    status_code = sync_error_status(exc)
    log_level = logging.WARNING if status_code < 500 else logging.ERROR
    logger.log(
        log_level,
        f"Sync error: {exc.message}",
        extra={"extra_fields": {
            "correlation_id": getattr(request.state, "correlation_id", "unknown"),
            "status_code": status_code,
            "path": request.url.path,
            "error_type": exc.__class__.__name__,
            "retryable": exc.retryable,
        }},
    )

    return JSONResponse(
        status_code=status_code,
        content=_error_body(
            request,
            exc.message,
            exc.__class__.__name__,
            {**exc.context, "retryable": exc.retryable},
        ),
    )


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """
    Handler for Pydantic validation errors.
    """
    errors = [
        {
            "loc": list(error["loc"]),
            "msg": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]

    logger.warning(
        "Validation error",
        extra={"extra_fields": {
            "correlation_id": getattr(request.state, "correlation_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
            "errors": errors,
        }},
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_body(request, "Validation error", "RequestValidationError", {"errors": errors}),
    )


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """
    Handler for Starlette HTTP exceptions.
    """
    logger.warning(
        f"HTTP exception: {exc.detail}",
        extra={"extra_fields": {
            "correlation_id": getattr(request.state, "correlation_id", "unknown"),
            "status_code": exc.status_code,
            "path": request.url.path,
            "method": request.method,
        }},
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, str(exc.detail), "HTTPException"),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Handler for unhandled exceptions.

    Logs full stack trace and returns generic error message.
    """
    logger.error(
        f"Unhandled exception: {exc}",
        extra={"extra_fields": {
            "correlation_id": getattr(request.state, "correlation_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        }},
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body(request, "Internal server error", "InternalError"),
    )
