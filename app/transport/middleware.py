# app/transport/middleware.py
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from app.infra.logging_config import LogContext, get_logger
from app.infra.metrics import inc_counter, observe_histogram

logger = get_logger(__name__)

# Paths polled by load balancers; logged at debug only
QUIET_PATHS = frozenset({"/health", "/ready"})


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a request ID (client-supplied or generated) for tracing"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log each request with status and duration; record HTTP metrics"""

    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled:
            return await call_next(request)

        request_id = getattr(request.state, "request_id", "unknown")
        log_ctx = LogContext(logger, request_id=request_id)
        path = request.url.path
        quiet = path in QUIET_PATHS
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            log_ctx.error(
                f"Request failed: {request.method} {path} "
                f"error={exc.__class__.__name__} duration={duration_ms:.2f}ms",
                extra={"method": request.method, "path": path, "duration_ms": duration_ms},
                exc_info=True,
            )
            raise

        duration_ms = (time.perf_counter() - start_time) * 1000
        message = (
            f"{request.method} {path} status={response.status_code} duration={duration_ms:.2f}ms"
        )
        extra = {
            "method": request.method,
            "path": path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
        if quiet:
            log_ctx.debug(message, extra=extra)
        elif response.status_code >= 500:
            log_ctx.error(message, extra=extra)
        else:
            log_ctx.info(message, extra=extra)

        inc_counter("http_requests_total", method=request.method, status=str(response.status_code))
        observe_histogram("http_request_duration_seconds", duration_ms / 1000, method=request.method)
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Turn any unhandled exception into the standard JSON error body"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = getattr(request.state, "request_id", "unknown")

            logger.error(
                f"Unhandled exception: {exc.__class__.__name__}: {exc}",
                extra={"request_id": request_id},
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content={
                    "ok": False,
                    "error": "Internal server error",
                    "error_code": "internal_error",
                    "request_id": request_id,
                },
            )
