"""Prometheus middleware collecting HTTP request metrics."""

import re
import time
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..monitoring.prometheus_metrics import prometheus_metrics

_ULID_SEGMENT = re.compile(r"^[0-9A-HJKMNP-TV-Z]{26}$")


def _normalize_path(raw_path: str) -> str:
    # /api/v1/benefit-bookings/01HF.../cancel -> /api/v1/benefit-bookings/:id/cancel
    return "/".join(
        ":id" if _ULID_SEGMENT.match(segment) else segment for segment in raw_path.split("/")
    )


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware to collect Prometheus metrics for HTTP requests."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path == "/metrics/prometheus":
            return await call_next(request)

        method = request.method
        path = _normalize_path(request.url.path)
        start_time = time.time()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            prometheus_metrics.record_http_request(
                method=method,
                endpoint=path,
                duration=time.time() - start_time,
                status_code=status_code,
            )
