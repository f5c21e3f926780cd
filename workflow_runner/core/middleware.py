"""Middleware for error handling and logging."""

import time
import uuid
from datetime import datetime, timezone
from typing import Callable
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import (
    ConfigurationError, EnvironmentScopeError, InvalidInputError, InvalidTransitionError,
    NotFoundError, WorkflowEngineError, create_error_response
)
from .logging import get_logger, set_logging_context, clear_logging_context


logger = get_logger(__name__)


def get_status_code_for_error(error: WorkflowEngineError) -> int:
    """Determine the HTTP status code for a workflow engine error."""
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, (ConfigurationError, InvalidInputError, InvalidTransitionError)):
        return 400
    if isinstance(error, EnvironmentScopeError):
        return 403
    return 500


async def workflow_engine_error_handler(request: Request, error: WorkflowEngineError) -> JSONResponse:
    """Exception handler rendering engine errors as JSON error bodies."""
    status_code = get_status_code_for_error(error)
    log = logger.warning if status_code < 500 else logger.error
    log(
        f"Workflow engine error: {request.method} {request.url.path} - "
        f"Error: {error.error_code} - {error.message}"
    )
    return JSONResponse(status_code=status_code, content=create_error_response(error))


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Middleware for request tracing and last-resort error handling."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request with error handling."""
        # Generate request ID for tracing
        request_id = str(uuid.uuid4())
        start_time = time.time()

        # Set logging context
        set_logging_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else "unknown"
        )

        try:
            # Log request start
            logger.info(f"Request started: {request.method} {request.url.path}")

            # Process request
            response = await call_next(request)

            # Log successful response
            duration = time.time() - start_time
            logger.info(
                f"Request completed: {request.method} {request.url.path} - "
                f"Status: {response.status_code} - Duration: {duration:.3f}s"
            )

            # Add request ID to response headers
            response.headers["X-Request-ID"] = request_id
            return response

        except WorkflowEngineError as e:
            # Handle known workflow engine errors
            duration = time.time() - start_time
            logger.warning(
                f"Workflow engine error: {request.method} {request.url.path} - "
                f"Error: {e.error_code} - Duration: {duration:.3f}s",
                extra={"extra_fields": {"error_details": e.to_dict()}}
            )
            return JSONResponse(
                status_code=get_status_code_for_error(e),
                content=create_error_response(e),
                headers={"X-Request-ID": request_id}
            )

        except Exception as e:
            # Handle unexpected errors
            duration = time.time() - start_time
            logger.error(
                f"Unexpected error: {request.method} {request.url.path} - "
                f"Error: {str(e)} - Duration: {duration:.3f}s",
                exc_info=True
            )
            return JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "details": {
                        "error_type": type(e).__name__,
                        "timestamp": datetime.now(timezone.utc).isoformat()
                    },
                    "request_id": request_id
                },
                headers={"X-Request-ID": request_id}
            )

        finally:
            # Clear logging context
            clear_logging_context()


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for detailed request/response logging."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Log request and response details."""
        start_time = time.time()

        # Log request details
        logger.debug(
            f"Request details: {request.method} {request.url} - "
            f"Query params: {dict(request.query_params)}"
        )

        # Process request
        response = await call_next(request)

        duration = time.time() - start_time
        logger.debug(
            f"Response details: Status {response.status_code} - "
            f"Duration: {duration:.3f}s"
        )

        return response


class PerformanceMonitoringMiddleware(BaseHTTPMiddleware):
    """Middleware for performance monitoring and alerting."""

    def __init__(self, app, slow_request_threshold: float = 5.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Monitor request performance."""
        start_time = time.time()

        response = await call_next(request)

        duration = time.time() - start_time
        # Check for slow requests
        if duration > self.slow_request_threshold:
            logger.warning(
                f"Slow request detected: {request.method} {request.url.path} - "
                f"Duration: {duration:.3f}s (threshold: {self.slow_request_threshold}s)"
            )

        # Add performance headers
        response.headers["X-Response-Time"] = f"{duration:.3f}s"
        return response
