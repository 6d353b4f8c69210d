"""Middleware module"""

from app.middleware.error_handler import (
    error_handler_middleware,
    app_error_handler,
    validation_error_handler,
    AppError,
    ErrorCategory,
    DatabaseError,
    DeliveryError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)

__all__ = [
    "error_handler_middleware",
    "app_error_handler",
    "validation_error_handler",
    "AppError",
    "ErrorCategory",
    "DatabaseError",
    "DeliveryError",
    "ExternalServiceError",
    "NotFoundError",
    "ValidationError",
]
