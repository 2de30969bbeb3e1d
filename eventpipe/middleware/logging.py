"""
Logging middleware for request/response logging.

Logs every HTTP request with timing. Headers are never logged, so
provider signatures stay out of the log stream.
"""
import time
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from eventpipe.logging_config import get_logger

logger = get_logger(component="HTTP")


class LoggingMiddleware(BaseHTTPMiddleware):
    """Adds route, method, status and duration_ms to every request log."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.monotonic()

        request_logger = logger.bind(
            route=request.url.path,
            method=request.method,
            client=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.monotonic() - start_time) * 1000
            request_logger.error(
                "request_failed",
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e)
            )
            raise

        duration_ms = (time.monotonic() - start_time) * 1000

        request_logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2)
        )

        return response
