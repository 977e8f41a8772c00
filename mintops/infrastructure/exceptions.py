"""
Exception types and global exception handling for the mintops API.

Provides structured JSON error responses for all exception types,
preventing stack traces from leaking to clients.
"""

from datetime import datetime, timezone

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import structlog

logger = structlog.get_logger(__name__)


class AutomationException(Exception):
    """Base exception for automation core errors."""
    def __init__(self, message: str, status_code: int = 500, details: dict = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class InvalidRequestError(AutomationException):
    """Raised for input rejected before anything is persisted."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message=message, status_code=400, details=details)


class NoChannelsConfiguredError(AutomationException):
    """Raised when a dispatch is requested but no channel is configured."""
    def __init__(self):
        super().__init__(
            message="No notification channels configured",
            status_code=503,
        )


class ChannelDeliveryError(AutomationException):
    """Raised by a channel adapter when a send attempt fails."""
    def __init__(self, channel: str, message: str):
        super().__init__(
            message=message,
            status_code=502,
            details={"channel": channel},
        )


class DatabaseNotInitializedError(AutomationException):
    """Raised when the engine is used before init_database()."""
    def __init__(self):
        super().__init__(
            message="Database not initialized. Call init_database() first.",
            status_code=503,
        )


def _error_response(status_code: int, message: str, error_type: str, **extra) -> JSONResponse:
    """Uniform ``{"error": {...}}`` envelope shared by every handler."""
    error = {"message": message, "type": error_type, **extra}
    error["timestamp"] = datetime.now(timezone.utc).isoformat()
    return JSONResponse(status_code=status_code, content={"error": error})


def _request_context(request: Request) -> dict:
    return {"path": request.url.path, "method": request.method}


async def _automation_exception_handler(request: Request, exc: AutomationException) -> JSONResponse:
    error_id = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "automation_exception",
        error_id=error_id,
        error_type=type(exc).__name__,
        message=exc.message,
        details=exc.details,
        **_request_context(request),
    )
    return _error_response(
        exc.status_code,
        exc.message,
        type(exc).__name__,
        error_id=error_id,
        details=exc.details,
    )


async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort: log with traceback, answer with an opaque 500."""
    error_id = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
    logger.error(
        "unhandled_exception",
        error_id=error_id,
        error_type=type(exc).__name__,
        error_message=str(exc),
        exc_info=exc,
        **_request_context(request),
    )
    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal server error",
        "InternalServerError",
        error_id=error_id,
    )


async def _validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # ctx can carry the raw exception object, which is not JSON serializable
    errors = [
        {key: value for key, value in error.items() if key != "ctx"}
        for error in exc.errors()
    ]
    logger.warning("request_validation_failed", errors=errors, **_request_context(request))
    return _error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Validation error",
        "ValidationError",
        details=jsonable_encoder(errors),
    )


async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error_response(exc.status_code, exc.detail, "HTTPException", status_code=exc.status_code)


def register_exception_handlers(app: FastAPI):
    """Register all exception handlers with the FastAPI app."""
    app.add_exception_handler(AutomationException, _automation_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)
    logger.info("exception_handlers_registered")
