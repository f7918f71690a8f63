"""
Health check and metrics API router.

Provides:
    GET /health   Service health check (collector, provider, database)
    GET /metrics  Lightweight operational metrics as JSON
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from options_scanner.services.data.api.dependencies import get_collector_or_none
from options_scanner.services.data.api.rate_limit import get_limiter, route_limit

logger = logging.getLogger("api.health")

router = APIRouter(tags=["health"])
limiter = get_limiter()


@router.get("/health")
@limiter.limit(route_limit("/health"))
def health(request: Request):
    """Service health check.

    ``status`` is ``ok`` when the collector is running and the live
    provider is reachable, ``degraded`` while the breaker is open (data
    comes from the synthetic fallback) or before startup completes.
    """
    collector = get_collector_or_none()

    collector_status = "not_initialized"
    provider_status = {"status": "unknown"}
    data_source = "unknown"
    db_path = None

    if collector is not None:
        try:
            stats = collector.stats()
            collector_status = "running"
            data_source = stats["sources"]["active"]
            provider = stats.get("provider")
            if provider is not None:
                provider_status = {
                    "status": "degraded" if provider["degraded"] else "ok",
                    "state": provider["state"],
                    "last_reason": provider["last_reason"],
                    "retry_in_seconds": provider["retry_in_seconds"],
                }
            db_path = collector.config.db_path if collector.store is not None else None
        except Exception as exc:
            logger.warning("Health check could not read collector stats: %s", exc)
            collector_status = f"error: {exc}"

    healthy = collector_status == "running" and provider_status.get("status") != "degraded"
    return {
        "status": "ok" if healthy else "degraded",
        "timestamp": datetime.now(tz=timezone.utc).isoformat(),
        "components": {
            "collector": {"status": collector_status},
            "provider": provider_status,
            "data_source": data_source,
            "database": {"path": db_path},
        },
    }


@router.get("/metrics")
@limiter.limit(route_limit("/metrics"))
def metrics(request: Request):
    """Counts and cache figures for quick monitoring without Prometheus."""
    collector = get_collector_or_none()

    result = {
        "timestamp": datetime.now(tz=timezone.utc).isoformat(),
        "collector_running": False,
        "tracked_symbols": 0,
        "symbols": [],
        "cache": {},
        "sources": {},
        "provider": None,
        "setup_counts": {},
    }

    if collector is not None:
        stats = collector.stats()
        cache = dict(stats["cache"])
        cache.pop("keys", None)
        result.update(
            collector_running=True,
            tracked_symbols=stats["tracked_symbols"],
            symbols=stats["symbols"],
            cache=cache,
            sources=stats["sources"],
            provider=stats["provider"],
            setup_counts=collector.get_scanner_results()["setupCounts"],
        )

    return result
