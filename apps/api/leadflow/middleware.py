from __future__ import annotations

import logging
import time
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from leadflow.context import reset_correlation_id, set_correlation_id
from leadflow.metrics import observe_http_request, route_label


logger = logging.getLogger("leadflow.request")

_QUIET_PATHS = {"/health", "/metrics"}


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = request.headers.get("x-correlation-id") or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers["x-correlation-id"] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        except Exception:
            logger.error("http_error", exc_info=True, extra={"method": method, "path": request.url.path})
            raise
        finally:
            # The route is only resolved once the router has run.
            path = route_label(request)
            duration = time.perf_counter() - started
            observe_http_request(method=method, path=path, status=status_code, duration=duration)
            if path not in _QUIET_PATHS:
                logger.info(
                    "http_request",
                    extra={
                        "method": method,
                        "path": path,
                        "status_code": status_code,
                        "duration_ms": round(duration * 1000, 2),
                    },
                )
