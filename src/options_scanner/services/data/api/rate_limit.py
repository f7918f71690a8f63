"""
Inbound rate limiting for the scanner API using ``slowapi``.

Limits (per client):
  - Public endpoints (``/health``, ``/metrics``):            60 req/min
  - Read and calculator endpoints (``/scanner``, ``/risk``,
    ``/watchlist``, default):                                30 req/min
  - Collector control (start / stop / provider reset):      20 req/min
  - Manual collection (``/collector/collect``, start_default): 5 req/min

Configuration via environment variables:
  - ``RATE_LIMIT_ENABLED``   "1" to enable, "0" to disable (default: "1")
  - ``RATE_LIMIT_DEFAULT``   default limit string (default: "30/minute")
  - ``RATE_LIMIT_PUBLIC``    public endpoint limit (default: "60/minute")
  - ``RATE_LIMIT_CONTROL``   collector control limit (default: "20/minute")
  - ``RATE_LIMIT_HEAVY``     manual collection limit (default: "5/minute")
  - ``RATE_LIMIT_STORAGE``   limits storage URI (default: "memory://")

Every route is decorated with ``@limiter.limit(route_limit(prefix))`` and
accepts a ``request: Request`` argument. The limit string is resolved per
request, so the enabled toggle and the configured limits are read when a
request arrives rather than at import. When ``RATE_LIMIT_ENABLED=0`` the
limiter is still installed but with a limit so high it never blocks.
"""

import logging
import os
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

logger = logging.getLogger("api.rate_limit")

_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "1").strip().lower() in ("1", "true", "yes")
_DEFAULT_LIMIT = os.getenv("RATE_LIMIT_DEFAULT", "30/minute")
_PUBLIC_LIMIT = os.getenv("RATE_LIMIT_PUBLIC", "60/minute")
_CONTROL_LIMIT = os.getenv("RATE_LIMIT_CONTROL", "20/minute")
_HEAVY_LIMIT = os.getenv("RATE_LIMIT_HEAVY", "5/minute")
_STORAGE_URI = os.getenv("RATE_LIMIT_STORAGE", "memory://")

_DISABLED_LIMIT = "999999/second"


def _get_effective_limit(configured: str) -> str:
    if not _ENABLED:
        return _DISABLED_LIMIT
    return configured


PUBLIC_LIMIT = _get_effective_limit(_PUBLIC_LIMIT)
CONTROL_LIMIT = _get_effective_limit(_CONTROL_LIMIT)
HEAVY_LIMIT = _get_effective_limit(_HEAVY_LIMIT)
DEFAULT_LIMIT = _get_effective_limit(_DEFAULT_LIMIT)

# More specific prefixes first. Values are the configured limits.
_PATH_LIMITS: list[tuple[str, str]] = [
    ("/collector/collect", _HEAVY_LIMIT),
    ("/collector/start_default", _HEAVY_LIMIT),
    ("/collector/start", _CONTROL_LIMIT),
    ("/collector/stop", _CONTROL_LIMIT),
    ("/collector/provider", _CONTROL_LIMIT),
    ("/health", _PUBLIC_LIMIT),
    ("/metrics", _PUBLIC_LIMIT),
]


def limit_for(path: str) -> str:
    """Return the effective limit string that applies to *path*."""
    for prefix, limit in _PATH_LIMITS:
        if path.startswith(prefix):
            return _get_effective_limit(limit)
    return _get_effective_limit(_DEFAULT_LIMIT)


def route_limit(path: str) -> Callable[[], str]:
    """Limit provider for ``@limiter.limit``, evaluated on every request."""
    return lambda: limit_for(path)


def _client_key_func(request: Request) -> str:
    """Bucket by API key when present, then forwarded IP, then peer address."""
    api_key = request.headers.get("x-api-key")
    if api_key:
        return f"apikey:{api_key[:8]}"

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"

    return f"ip:{get_remote_address(request)}"


_limiter: Optional[Limiter] = None


def get_limiter() -> Limiter:
    """Return the process-wide ``Limiter``, creating it on first use."""
    global _limiter
    if _limiter is None:
        _limiter = Limiter(
            key_func=_client_key_func,
            storage_uri=_STORAGE_URI,
            strategy="fixed-window",
            enabled=_ENABLED,
        )
        logger.info(
            "Rate limiter initialised: enabled=%s default=%s storage=%s",
            _ENABLED,
            DEFAULT_LIMIT,
            _STORAGE_URI,
        )
    return _limiter


def reset_limiter() -> None:
    """Clear recorded hits (tests)."""
    if _limiter is not None:
        _limiter.reset()


def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    detail = exc.detail or "unknown"
    logger.warning(
        "Rate limit exceeded: %s %s from %s (limit %s)",
        request.method,
        request.url.path,
        _client_key_func(request),
        detail,
    )
    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limit_exceeded",
            "detail": f"Rate limit exceeded: {detail}",
        },
        headers={"Retry-After": "60"},
    )


def setup_rate_limiting(app: FastAPI) -> Limiter:
    """Attach the limiter to ``app.state`` and register the 429 handler."""
    limiter = get_limiter()
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)
    logger.info(
        "Rate limiting configured: enabled=%s default=%s public=%s control=%s heavy=%s",
        _ENABLED,
        DEFAULT_LIMIT,
        PUBLIC_LIMIT,
        CONTROL_LIMIT,
        HEAVY_LIMIT,
    )
    return limiter


def is_rate_limiting_enabled() -> bool:
    return _ENABLED
