"""
Shared API Middleware
======================

Common middleware and exception handlers for the FastAPI application.

Every error body has the same shape::

    {"error": {"code": ..., "message": ..., "errors": [...]}, "correlation_id": ...}
"""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from ticketdesk.core import ApplicationException
from ticketdesk.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

_SERVER_ERROR_MESSAGES = {
    500: "Internal server error",
    502: "Upstream service error",
    503: "Service temporarily unavailable",
}


def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", "unknown")


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """
    Adds correlation ID to requests for tracing.

    The id is echoed back in the ``X-Correlation-ID`` header and in every
    error body, so support can find the matching log lines.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Get existing correlation ID or generate new one
        correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))

        # Store in request state for access in endpoints
        request.state.correlation_id = correlation_id

        # Add to response header
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs all requests and responses."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = _correlation_id(request)
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "Request failed",
                extra={
                    "correlation_id": correlation_id,
                    "method": request.method,
                    "path": request.url.path,
                    "error": str(e),
                    "response_time_ms": int((time.perf_counter() - start_time) * 1000)
                }
            )
            raise

        logger.info(
            "Request completed",
            extra={
                "correlation_id": correlation_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "actor_id": request.headers.get("X-Actor-Id"),
                "response_time_ms": int((time.perf_counter() - start_time) * 1000)
            }
        )
        return response


def error_response(request: Request, status_code: int, error: dict) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "correlation_id": _correlation_id(request)},
        headers={"X-Correlation-ID": _correlation_id(request)},
    )


async def application_exception_handler(request: Request, exc: ApplicationException) -> JSONResponse:
    """
    Render domain/application errors with their stable code.

    Server-side failures keep their code but get a generic message; the
    driver text stays in the log.
    """
    extra = {
        "correlation_id": _correlation_id(request),
        "path": request.url.path,
        "code": exc.code,
        "status_code": exc.status_code,
        "error_message": exc.message,
    }
    if exc.status_code < 500:
        logger.info("Request rejected", extra=extra)
        return error_response(request, exc.status_code, exc.to_dict())

    logger.error("Request failed", extra=extra, exc_info=exc)
    return error_response(request, exc.status_code, {
        "code": exc.code,
        "message": _SERVER_ERROR_MESSAGES.get(exc.status_code, _SERVER_ERROR_MESSAGES[500]),
    })


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Re-shape FastAPI's request errors into a VALIDATION_ERROR field list."""
    errors = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path", "header")]
        errors.append({"field": ".".join(loc) or "body", "message": error.get("msg", "Invalid value")})
    return error_response(request, 400, {
        "code": "VALIDATION_ERROR",
        "message": f"{len(errors)} invalid field(s)",
        "errors": errors,
    })


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.

    Internals never reach the client; the correlation id links the
    response to the logged traceback.
    """
    logger.error(
        "Unhandled exception",
        extra={
            "correlation_id": _correlation_id(request),
            "path": request.url.path,
            "method": request.method,
            "error_type": type(exc).__name__,
            "error_message": str(exc)
        },
        exc_info=exc
    )
    return error_response(request, 500, {
        "code": "INTERNAL_ERROR",
        "message": "An unexpected error occurred",
    })
