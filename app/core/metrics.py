"""Prometheus metrics for the application."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# --- Metrics ---

APP_INFO = Info("app", "Media generation gateway info")
APP_INFO.info({"version": "1.0.0", "name": "media_gateway"})

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

GENERATION_REQUESTS = Counter(
    "generation_requests_total",
    "Chat completion generation requests by outcome",
    ["model", "status"],
)

GENERATION_DURATION = Histogram(
    "generation_duration_seconds",
    "End-to-end generation time",
    ["modality"],
    buckets=[1, 5, 15, 30, 60, 120, 300, 600, 900],
)

ADMISSION_REJECTIONS = Counter(
    "admission_rejections_total",
    "Requests rejected because every credential was at its concurrency budget",
)

CREDENTIALS_IN_USE = Gauge(
    "credential_slots_in_use",
    "Admission slots currently held across all credentials",
)

CACHE_EVENTS = Counter(
    "artifact_cache_events_total",
    "Artifact cache events",
    ["event"],  # hit | miss | store | evict | error
)


# --- Middleware ---


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Collect HTTP request metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = request.url.path

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        REQUEST_COUNT.labels(method=method, path=path, status=response.status_code).inc()
        REQUEST_DURATION.labels(method=method, path=path).observe(duration)

        return response


def metrics_response() -> Response:
    """Generate Prometheus /metrics response."""
    return Response(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
