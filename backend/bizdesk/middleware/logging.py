"""Structured request logging middleware."""

import time
from typing import Callable

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from bizdesk.config import get_settings

logger = structlog.get_logger()
settings = get_settings()

# Polled by load balancers and Prometheus; logged at debug only
QUIET_PATHS = ("/health", "/metrics", f"{settings.api_prefix}/health")


def is_quiet_path(path: str) -> bool:
    return any(path == prefix or path.startswith(prefix + "/") for prefix in QUIET_PATHS)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request with its duration.

    The request ID and route are bound to structlog's context variables, so
    generation and reminder events emitted during the request carry them
    too. Rule and invoice IDs from the path are bound as well.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.perf_counter()
        request_id = getattr(request.state, "request_id", "unknown")
        path = request.url.path

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=path,
            client_ip=request.client.host if request.client else "unknown",
        )

        log = logger.debug if is_quiet_path(path) else logger.info
        log("request_started")

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
            logger.exception("request_failed", error=str(exc), duration_ms=duration_ms)
            raise

        duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
        path_params = {
            key: value
            for key, value in request.path_params.items()
            if key in ("rule_id", "invoice_id")
        }
        log(
            "request_completed",
            status_code=response.status_code,
            duration_ms=duration_ms,
            **path_params,
        )
        response.headers["X-Process-Time"] = str(duration_ms)
        return response
