"""FastAPI middleware for metrics, correlation IDs and request logging."""

import logging
import re
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from app.core.logging import correlation_scope, log_error, log_info, mask_secret
from app.core.metrics import (
    HTTP_REQUEST_DURATION_SECONDS,
    HTTP_REQUESTS_IN_PROGRESS,
    HTTP_REQUESTS_TOTAL,
)

logger = logging.getLogger("app.requests")

_UUID_RE = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
    re.IGNORECASE,
)
_NUMERIC_RE = re.compile(r"/\d+(?=/|$)")
_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

# Query parameters the gateway redirects carry that must not be logged
SENSITIVE_QUERY_PARAMS = frozenset({"authKey", "paymentKey"})


def endpoint_label(request: Request) -> str:
    """Route template for metric labels, falling back to a normalized path."""
    route = request.scope.get("route")
    if route is not None and getattr(route, "path", None):
        return route.path
    path = _UUID_RE.sub("{id}", request.url.path)
    return _NUMERIC_RE.sub("/{id}", path)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Collects request count, latency and in-flight gauges."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method
        in_progress = HTTP_REQUESTS_IN_PROGRESS.labels(method=method)
        in_progress.inc()
        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            endpoint = endpoint_label(request)
            HTTP_REQUEST_DURATION_SECONDS.labels(method=method, endpoint=endpoint).observe(
                time.perf_counter() - start_time
            )
            HTTP_REQUESTS_TOTAL.labels(
                method=method, endpoint=endpoint, status_code=str(status_code)
            ).inc()
            in_progress.dec()


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds an ``X-Correlation-ID`` to the request and echoes it back.

    A caller-supplied ID is reused only if it looks like an identifier;
    anything else is replaced with a fresh one.
    """

    CORRELATION_ID_HEADER = "X-Correlation-ID"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        supplied = request.headers.get(self.CORRELATION_ID_HEADER)
        if supplied is not None and not _CORRELATION_ID_RE.match(supplied):
            supplied = None

        with correlation_scope(supplied) as correlation_id:
            response = await call_next(request)
            response.headers[self.CORRELATION_ID_HEADER] = correlation_id
            return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs one line when a request starts and one when it ends."""

    def __init__(self, app: ASGIApp, log_query: bool = False):
        super().__init__(app)
        self.log_query = log_query

    @staticmethod
    def _safe_query(request: Request) -> str:
        return "&".join(
            f"{key}={mask_secret(value) if key in SENSITIVE_QUERY_PARAMS else value}"
            for key, value in request.query_params.multi_items()
        )

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.perf_counter()
        fields = {"method": request.method, "path": request.url.path}
        if self.log_query and request.query_params:
            fields["query"] = self._safe_query(request)
        log_info(
            logger,
            "Request started",
            client_ip=request.client.host if request.client else None,
            **fields,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            log_error(
                logger,
                "Request failed",
                exception=e,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                **fields,
            )
            raise

        log_info(
            logger,
            "Request completed",
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            **fields,
        )
        return response


__all__ = [
    "MetricsMiddleware",
    "CorrelationIdMiddleware",
    "RequestLoggingMiddleware",
    "endpoint_label",
]
