"""
Pipeline metrics shared by the engine, the provider client and the API.

Everything lives in one custom ``CollectorRegistry`` so tests can read
values without touching the process-global default. The HTTP layer adds
its request metrics to the same registry and serves it at
``/metrics/prometheus``.

Tracked here:
  - ``collection_cycles_total``   Counter: collector iterations by feed and outcome
                                  (ok / error / discarded)
  - ``setup_changes_total``       Counter: classification changes by setup type
  - ``provider_responses_total``  Counter: upstream answers by status
                                  (HTTP code or ``transport_error``)
  - ``provider_degraded``         Gauge: 1 while the provider breaker is open
  - ``cache_entries``             Gauge: live cache entries
  - ``cache_lookups``             Gauge: cache lookups by result (hit / stale / miss)
  - ``tracked_symbols``           Gauge: symbols with running collection loops

Counters are incremented where the event happens; the gauges are snapshots
that ``refresh_from_stats`` copies out of ``CollectorService.stats()``.
"""

from typing import Any, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge

_registry = CollectorRegistry()

COLLECTION_CYCLES_TOTAL = Counter(
    "collection_cycles_total",
    "Collector loop iterations",
    labelnames=["feed", "outcome"],
    registry=_registry,
)

SETUP_CHANGES_TOTAL = Counter(
    "setup_changes_total",
    "Per-symbol setup classification changes",
    labelnames=["setup_type"],
    registry=_registry,
)

PROVIDER_RESPONSES_TOTAL = Counter(
    "provider_responses_total",
    "Upstream provider answers by status",
    labelnames=["status"],
    registry=_registry,
)

PROVIDER_DEGRADED = Gauge(
    "provider_degraded",
    "Whether the provider circuit breaker is open (1=yes, 0=no)",
    registry=_registry,
)

CACHE_ENTRIES = Gauge(
    "cache_entries",
    "Entries currently held by the response cache",
    registry=_registry,
)

CACHE_LOOKUPS = Gauge(
    "cache_lookups",
    "Cache lookups since start by result",
    labelnames=["result"],
    registry=_registry,
)

TRACKED_SYMBOLS = Gauge(
    "tracked_symbols",
    "Symbols with running collection loops",
    registry=_registry,
)


def get_registry() -> CollectorRegistry:
    """Return the application's Prometheus CollectorRegistry."""
    return _registry


def record_collection_cycle(feed: str, outcome: str) -> None:
    """Record one collector iteration ('ok', 'error' or 'discarded')."""
    COLLECTION_CYCLES_TOTAL.labels(feed=feed, outcome=outcome).inc()


def record_setup(setup_type: str) -> None:
    SETUP_CHANGES_TOTAL.labels(setup_type=setup_type).inc()


def record_provider_response(status: str) -> None:
    PROVIDER_RESPONSES_TOTAL.labels(status=status).inc()


def refresh_from_stats(stats: Optional[dict[str, Any]]) -> None:
    """Copy a ``CollectorService.stats()`` snapshot into the gauges."""
    if stats is None:
        TRACKED_SYMBOLS.set(0)
        return

    TRACKED_SYMBOLS.set(stats["tracked_symbols"])

    cache = stats["cache"]
    CACHE_ENTRIES.set(cache["size"])
    CACHE_LOOKUPS.labels(result="hit").set(cache["hits"])
    CACHE_LOOKUPS.labels(result="stale").set(cache["stale_hits"])
    CACHE_LOOKUPS.labels(result="miss").set(cache["misses"])

    provider = stats.get("provider")
    if provider:
        PROVIDER_DEGRADED.set(1 if provider["degraded"] else 0)
