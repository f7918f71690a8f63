"""
HTTP side of the scanner's Prometheus metrics.

Exposes ``GET /metrics/prometheus`` returning Prometheus text-format metrics
from the shared registry in ``options_scanner.core.metrics``.

Defined here:
  - ``http_requests_total``            Counter: HTTP requests by method, path, status
  - ``http_request_duration_seconds``  Histogram: request latency by method and path

The pipeline counters and gauges (collection cycles, setup changes,
provider responses, cache and tracked-symbol gauges) are defined in
``core.metrics``. The gauges are refreshed from the running
``CollectorService`` each time the endpoint is scraped.

Usage:
    from options_scanner.services.data.api.metrics import router as metrics_router, PrometheusMiddleware
    app.include_router(metrics_router)
    app.add_middleware(PrometheusMiddleware)
"""

import logging
import time

from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response as StarletteResponse

from options_scanner.core.metrics import (
    get_registry,
    record_collection_cycle,
    record_setup,
    refresh_from_stats,
)
from options_scanner.services.data.api.dependencies import get_collector_or_none
from options_scanner.services.data.api.rate_limit import get_limiter, route_limit

__all__ = [
    "PrometheusMiddleware",
    "get_registry",
    "record_collection_cycle",
    "record_setup",
    "router",
]

logger = logging.getLogger("api.metrics")

# ---------------------------------------------------------------------------
# HTTP metric definitions
# ---------------------------------------------------------------------------

HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests received",
    labelnames=["method", "path", "status"],
    registry=get_registry(),
)

HTTP_REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    labelnames=["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    registry=get_registry(),
)


# ---------------------------------------------------------------------------
# Path normalization for HTTP metrics
# ---------------------------------------------------------------------------

_PATH_PREFIXES_TO_NORMALIZE = [
    "/scanner/",
    "/collector/start/",
    "/collector/stop/",
    "/collector/collect/",
    "/watchlist/",
]


def _normalize_path(path: str) -> str:
    """Collapse the symbol segment so each route is one label value.

        /scanner/AAPL            → /scanner/{id}
        /collector/start/TSLA    → /collector/start/{id}
    """
    if not path:
        return "/"

    for prefix in _PATH_PREFIXES_TO_NORMALIZE:
        if path.startswith(prefix) and len(path) > len(prefix):
            rest = path[len(prefix) :]
            slash_pos = rest.find("/")
            if slash_pos == -1:
                return prefix + "{id}"
            return prefix + "{id}" + rest[slash_pos:]

    return path


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Records HTTP request count and latency for every request."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> StarletteResponse:
        method = request.method
        path = _normalize_path(request.url.path)

        start = time.perf_counter()
        status_code = "500"

        try:
            response = await call_next(request)
            status_code = str(response.status_code)
        finally:
            duration = time.perf_counter() - start
            HTTP_REQUESTS_TOTAL.labels(method=method, path=path, status=status_code).inc()
            HTTP_REQUEST_DURATION.labels(method=method, path=path).observe(duration)

        return response


# ---------------------------------------------------------------------------
# Refresh gauges from the running collector when scraped
# ---------------------------------------------------------------------------


def _collect_live_gauges() -> None:
    collector = get_collector_or_none()
    refresh_from_stats(collector.stats() if collector is not None else None)


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

router = APIRouter(tags=["Metrics"])
limiter = get_limiter()


@router.get(
    "/metrics/prometheus",
    response_class=Response,
    summary="Prometheus metrics",
    description="Returns all application metrics in Prometheus text exposition format.",
)
@limiter.limit(route_limit("/metrics"))
def prometheus_metrics(request: Request):
    """Serve metrics in Prometheus text exposition format.

    Scrape target configuration for ``prometheus.yml``::

        scrape_configs:
          - job_name: 'options-scanner'
            scrape_interval: 15s
            static_configs:
              - targets: ['scanner:8000']
            metrics_path: '/metrics/prometheus'
    """
    try:
        _collect_live_gauges()
    except Exception as exc:
        logger.warning("Failed to refresh live gauges: %s", exc)

    return Response(content=generate_latest(get_registry()), media_type=CONTENT_TYPE_LATEST)
