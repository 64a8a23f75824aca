"""
Custom middleware for request processing.
"""
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
import time
import uuid
import logging
from typing import Callable

from ..config import settings
from ..models.schemas import ErrorResponse

logger = logging.getLogger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tag every request with an id, honouring an incoming X-Request-ID."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        logger.debug(f"Request started: {request.method} {request.url.path} [{request_id}]")

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class TimingMiddleware(BaseHTTPMiddleware):
    """Add request timing information."""

    def __init__(self, app, slow_request_threshold: float = 1.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.perf_counter()

        response = await call_next(request)

        process_time = time.perf_counter() - start_time
        response.headers["X-Process-Time"] = f"{process_time:.4f}"

        if process_time > self.slow_request_threshold:
            logger.warning(
                f"Slow request: {request.method} {request.url.path} "
                f"took {process_time:.2f}s"
            )

        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Turn anything that escapes the route handlers into a JSON 500."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)

        except Exception as e:
            request_id = getattr(request.state, "request_id", "unknown")
            logger.error(
                f"Unhandled exception in request {request_id}: {e}",
                exc_info=True
            )

            error = ErrorResponse(
                error="Internal server error",
                message=str(e) if settings.debug else "An unexpected error occurred",
                request_id=request_id
            )
            return JSONResponse(status_code=500, content=error.model_dump())


__all__ = ['RequestIDMiddleware', 'TimingMiddleware', 'ErrorHandlingMiddleware']
