import logging
import time
import uuid
from typing import Callable

from fastapi import FastAPI, Request
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware

from taskhub.infra.logging import clear_log_context, update_log_context

access_logger = logging.getLogger("taskhub.request")

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
}


def _caller_fields(request: Request) -> dict[str, str]:
    principal = getattr(request.state, "principal", None)
    if principal is None:
        return {}
    return {"user_id": str(principal.user_id), "role": principal.role.value}


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assign a request id, echo it back and emit one access log line per request."""

    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        update_log_context(request_id=request_id, method=request.method, path=request.url.path)
        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("request_id", request_id)

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            latency_ms = int((time.perf_counter() - started) * 1000)
            update_log_context(status_code=status_code, latency_ms=latency_ms, **_caller_fields(request))
            access_logger.info("request")
            clear_log_context()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        response = await call_next(request)
        for header, value in _SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: FastAPI, metrics_client) -> None:
        super().__init__(app)
        self.metrics = metrics_client

    async def dispatch(self, request: Request, call_next: Callable):
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            # Route templates keep label cardinality bounded; ids never become labels.
            route = getattr(request.scope.get("route"), "path", "unmatched")
            self.metrics.record_http_latency(
                request.method, route, status_code, time.perf_counter() - started
            )
            self.metrics.record_http_request(request.method, route, status_code)
            if status_code >= 500:
                self.metrics.record_http_5xx(request.method, route)
