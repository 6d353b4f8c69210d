"""
Error Handler Middleware

Maps everything the request path can raise onto one JSON error shape:

    {"error": {"category", "message", "timestamp", "path", ...details}}

Redis and HTTP collaborators never reach this layer; their callers log
and degrade (push, receipts, task updates) or convert to
ExternalServiceError (user directory).
"""

import logging
from typing import Callable, Optional
from datetime import datetime
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError, IntegrityError, OperationalError

logger = logging.getLogger(__name__)


class ErrorCategory:
    """Error categories for structured error handling"""
    VALIDATION = "validation_error"
    DATABASE = "database_error"
    EXTERNAL_SERVICE = "external_service_error"
    DELIVERY = "delivery_error"
    NOT_FOUND = "not_found_error"
    INTERNAL = "internal_error"


class AppError(Exception):
    """Base application error with structured information"""

    def __init__(
        self,
        message: str,
        category: str = ErrorCategory.INTERNAL,
        status_code: int = 500,
        details: Optional[dict] = None,
        retry_after: Optional[int] = None
    ):
        self.message = message
        self.category = category
        self.status_code = status_code
        self.details = details or {}
        self.retry_after = retry_after
        super().__init__(self.message)


class DatabaseError(AppError):
    """Message/notification storage is unavailable"""
    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(
            message=message,
            category=ErrorCategory.DATABASE,
            status_code=503,
            details=details,
            retry_after=30
        )


class ExternalServiceError(AppError):
    """External service errors (user directory, push provider)"""
    def __init__(self, message: str, service: str, details: Optional[dict] = None):
        super().__init__(
            message=message,
            category=ErrorCategory.EXTERNAL_SERVICE,
            status_code=502,
            details={"service": service, **(details or {})},
            retry_after=10
        )


class ValidationError(AppError):
    """Malformed input: empty content, missing ids, unknown enum values"""
    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(
            message=message,
            category=ErrorCategory.VALIDATION,
            status_code=400,
            details=details
        )


class NotFoundError(AppError):
    """Referenced record does not exist or does not belong to the caller"""
    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            message=f"{resource} not found",
            category=ErrorCategory.NOT_FOUND,
            status_code=404,
            details={"resource": resource, "id": resource_id}
        )


class DeliveryError(AppError):
    """
    A live emission or remote push failed.

    Never rolls back persistence and is never surfaced to a sender as a
    failed send; the dispatcher logs it and moves on.
    """
    def __init__(self, message: str, user_id: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(
            message=message,
            category=ErrorCategory.DELIVERY,
            status_code=502,
            details={"user_id": user_id, **(details or {})}
        )


def _error_response(
    request: Request,
    status_code: int,
    category: str,
    message: str,
    retry_after: Optional[int] = None,
    **extra,
) -> JSONResponse:
    headers = {"Retry-After": str(retry_after)} if retry_after else {}
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "category": category,
                "message": message,
                "timestamp": datetime.utcnow().isoformat(),
                "path": request.url.path,
                **extra,
            }
        },
        headers=headers,
    )


async def error_handler_middleware(request: Request, call_next: Callable) -> Response:
    """
    Global error handling middleware.

    Catches all unhandled exceptions and returns structured error responses.
    """
    try:
        return await call_next(request)

    except AppError as e:
        return handle_app_error(e, request)

    except RequestValidationError as e:
        return handle_validation_error(e, request)

    except SQLAlchemyError as e:
        return handle_database_error(e, request)

    except Exception as e:
        return handle_unexpected_error(e, request)


def handle_app_error(error: AppError, request: Request) -> JSONResponse:
    """Handle structured application errors"""

    log = logger.warning if error.status_code < 500 else logger.error
    log(
        f"Application error: {error.category}",
        extra={
            "category": error.category,
            "error_message": error.message,
            "status_code": error.status_code,
            "path": request.url.path,
            "method": request.method,
            "details": error.details
        }
    )

    return _error_response(
        request,
        error.status_code,
        error.category,
        error.message,
        retry_after=error.retry_after,
        **error.details,
    )


def handle_validation_error(error: RequestValidationError, request: Request) -> JSONResponse:
    """Request body, path or query did not match the route's schema"""

    errors = [
        {
            "field": ".".join(str(loc) for loc in err["loc"]),
            "message": err["msg"],
            "type": err["type"],
        }
        for err in error.errors()
    ]

    logger.warning(
        f"Validation error on {request.url.path}",
        extra={"errors": errors, "method": request.method}
    )

    return _error_response(
        request,
        400,
        ErrorCategory.VALIDATION,
        "Request validation failed",
        validation_errors=errors,
    )


def handle_database_error(error: SQLAlchemyError, request: Request) -> JSONResponse:
    """
    Storage failed mid-request. Connection loss is retryable (503); a
    constraint violation is the caller's data (500, no retry hint).
    """

    is_connection_error = isinstance(error, OperationalError)

    if is_connection_error:
        message, status_code, retry_after = "Message store unavailable. Please try again.", 503, 30
    elif isinstance(error, IntegrityError):
        message, status_code, retry_after = "Message store rejected the write.", 500, None
    else:
        message, status_code, retry_after = "Message store operation failed.", 500, 10

    logger.error(
        f"Database error: {type(error).__name__}",
        extra={
            "error": str(error),
            "path": request.url.path,
            "method": request.method,
            "is_connection_error": is_connection_error,
        },
        exc_info=True
    )

    return _error_response(
        request,
        status_code,
        ErrorCategory.DATABASE,
        message,
        retry_after=retry_after,
        type=type(error).__name__,
    )


def handle_unexpected_error(error: Exception, request: Request) -> JSONResponse:
    """Anything else: logged with traceback, reported without internals"""

    logger.critical(
        f"Unexpected error: {type(error).__name__}",
        extra={
            "error": str(error),
            "path": request.url.path,
            "method": request.method
        },
        exc_info=True
    )

    return _error_response(
        request,
        500,
        ErrorCategory.INTERNAL,
        "An unexpected error occurred.",
        error_id=datetime.utcnow().strftime("%Y%m%d%H%M%S"),
    )


# Exception handlers for FastAPI
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return handle_app_error(exc, request)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return handle_validation_error(exc, request)
