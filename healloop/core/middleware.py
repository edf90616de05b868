"""
HealLoop - HTTP Middleware
Request logging, timing and request/project context
"""

import time
from typing import Callable, Set

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from healloop.core.logging_config import (
    logger,
    set_request_id,
    set_project_id,
    generate_request_id,
)


SKIP_LOGGING_PATHS: Set[str] = {
    "/health",
    "/",
    "/docs",
    "/redoc",
    "/openapi.json",
}

# NDJSON streams; duration covers the whole stream so no slow-request warning
STREAMING_PATH_PREFIXES = ("/api/v1/execution/",)

PROJECT_PATH_MARKERS = ("/sandbox/", "/execution/")

SLOW_REQUEST_MS = 1000


def extract_project_id(path: str) -> str:
    """Project id from /sandbox/{id}/... or /execution/{id}/... paths"""
    for marker in PROJECT_PATH_MARKERS:
        if marker in path:
            candidate = path.split(marker, 1)[1].split("/")[0]
            if candidate and candidate != "stream":
                return candidate
    return ""


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs every request with its duration and tags it with an X-Request-ID.

    The request and project ids are stored in context variables so that
    sandbox and heal logs emitted while serving the request carry them.
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or generate_request_id()
        set_request_id(request_id)

        path = request.url.path
        project_id = extract_project_id(path)
        if project_id:
            set_project_id(project_id)

        skip_logging = path in SKIP_LOGGING_PATHS
        is_streaming = path.startswith(STREAMING_PATH_PREFIXES)
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.error(
                f"✗ {request.method} {path} - Exception ({duration_ms:.2f}ms): {type(exc).__name__}",
                exc_info=True,
                extra={
                    "event_type": "http_request_error",
                    "http_method": request.method,
                    "http_path": path,
                    "duration_ms": duration_ms,
                    "error_type": type(exc).__name__,
                }
            )
            raise
        finally:
            set_request_id("")
            set_project_id("")

        duration_ms = (time.perf_counter() - start_time) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

        if not skip_logging:
            logger.log_request(request.method, path, response.status_code, duration_ms,
                               is_streaming=is_streaming)
            if duration_ms > SLOW_REQUEST_MS and not is_streaming:
                logger.warning(
                    f"Slow request: {request.method} {path} took {duration_ms:.2f}ms",
                    extra={"event_type": "slow_request", "duration_ms": duration_ms}
                )

        return response
