"""
API middleware module.
"""
from bema_sync.api.middleware.error_handler import (
    AppException,
    NotFoundException,
    ConflictException,
    app_exception_handler,
    sync_exception_handler,
    validation_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
)

__all__ = [
    "AppException",
    "NotFoundException",
    "ConflictException",
    "app_exception_handler",
    "sync_exception_handler",
    "validation_exception_handler",
    "http_exception_handler",
    "unhandled_exception_handler",
]
