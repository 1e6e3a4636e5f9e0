"""
Starlette middleware that records RED metrics and a span for every request.
"""

import logging
import time
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from signvault.observability.metrics import (
    http_request_duration_seconds,
    http_requests_in_progress,
    http_requests_total,
)
from signvault.observability.tracing import add_span_attribute, trace_operation

logger = logging.getLogger(__name__)


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Record request count, latency and in-flight gauge per normalized endpoint."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method
        path = request.url.path
        endpoint = self._get_endpoint_label(path)

        http_requests_in_progress.labels(method=method, endpoint=endpoint).inc()
        start_time = time.time()

        try:
            with trace_operation(
                f"HTTP {method} {endpoint}",
                attributes={"http.method": method, "http.path": path},
            ):
                response = await call_next(request)
                add_span_attribute("http.status_code", response.status_code)
                self._record_request_metrics(
                    method, endpoint, response.status_code, time.time() - start_time
                )
                return response

        except Exception:
            duration = time.time() - start_time
            self._record_request_metrics(method, endpoint, 500, duration)
            logger.error(
                f"Request failed: {method} {path}",
                exc_info=True,
                extra={"method": method, "path": path, "duration_seconds": duration},
            )
            raise

        finally:
            http_requests_in_progress.labels(method=method, endpoint=endpoint).dec()

    def _get_endpoint_label(self, path: str) -> str:
        """Collapse dynamic path segments so label cardinality stays bounded."""
        if path.startswith("/health/"):
            return "/health/*"

        # /webhooks/{provider} and /oauth/{provider}/... keep the provider name
        parts = path.strip("/").split("/")
        if parts[0] == "webhooks" and len(parts) >= 2:
            return f"/webhooks/{parts[1]}"
        if parts[0] == "oauth" and len(parts) >= 3:
            return f"/oauth/{parts[1]}/{parts[2]}"

        if path.startswith("/api/v1/documents/"):
            suffix = parts[4] if len(parts) > 4 else ""
            return "/api/v1/documents/{id}" + (f"/{suffix}" if suffix else "")

        return path

    def _record_request_metrics(
        self, method: str, endpoint: str, status_code: int, duration: float
    ) -> None:
        http_requests_total.labels(
            method=method, endpoint=endpoint, status_code=str(status_code)
        ).inc()
        http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(
            duration
        )

        if duration > 1.0:
            logger.warning(
                f"Slow request: {method} {endpoint} took {duration:.3f}s",
                extra={
                    "method": method,
                    "endpoint": endpoint,
                    "status_code": status_code,
                    "duration_seconds": duration,
                },
            )
