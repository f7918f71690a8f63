"""
Runtime configuration for the scanner pipeline.

All knobs come from environment variables and are read once into a
``ScannerConfig``. The service is constructed from a config object, so
tests build one directly instead of patching the environment.

Environment variables (defaults in brackets):

  Provider
    PROVIDER_BASE_URL           [https://query1.finance.yahoo.com]
    PROVIDER_CALLS_PER_MINUTE   [30]
    PROVIDER_MAX_ATTEMPTS       [3]
    PROVIDER_BASE_DELAY         [2.0]   seconds
    PROVIDER_CAP_DELAY          [10.0]  seconds
    PROVIDER_TIMEOUT            [10.0]  seconds
    DEGRADED_COOLDOWN           [300]   seconds the breaker stays open

  Cache
    CACHE_TTL                   [300]   seconds
    CACHE_STALE_TTL             [900]   seconds past expiry stale data stays usable
    CACHE_CLEANUP_INTERVAL      [60]    seconds

  Collection cadences (seconds)
    QUOTE_INTERVAL              [20]
    HISTORICAL_INTERVAL         [1800]
    OPTIONS_INTERVAL            [900]
    SUMMARY_INTERVAL            [3600]
    DEFAULT_TICKERS             [TSLA,AAPL,AMZN,MSFT,NVDA,GOOGL,META,NFLX,AMD,INTC]
    AUTOSTART_COLLECTION        [0]

  Persistence
    DB_PATH                     [options_scanner.db]
"""

import os
from dataclasses import dataclass, field, replace
from typing import Optional

DEFAULT_TICKERS: tuple[str, ...] = (
    "TSLA",
    "AAPL",
    "AMZN",
    "MSFT",
    "NVDA",
    "GOOGL",
    "META",
    "NFLX",
    "AMD",
    "INTC",
)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes")


def _env_tickers(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return DEFAULT_TICKERS
    return tuple(t.strip().upper() for t in raw.split(",") if t.strip())


@dataclass(frozen=True)
class ScannerConfig:
    # Provider
    provider_base_url: str = "https://query1.finance.yahoo.com"
    calls_per_minute: int = 30
    max_attempts: int = 3
    base_delay: float = 2.0
    cap_delay: float = 10.0
    request_timeout: float = 10.0
    degraded_cooldown: float = 300.0

    # Cache
    cache_ttl: float = 300.0
    cache_stale_ttl: float = 900.0
    cache_cleanup_interval: float = 60.0
    quote_ttl: float = 10.0
    historical_ttl: float = 3600.0
    options_ttl: float = 300.0

    # Collection cadences
    quote_interval: float = 20.0
    historical_interval: float = 30 * 60.0
    options_interval: float = 15 * 60.0
    summary_interval: float = 60 * 60.0
    max_initial_delay: float = 5.0
    jitter_ratio: float = 0.1
    default_tickers: tuple[str, ...] = field(default=DEFAULT_TICKERS)
    autostart: bool = False

    # History request shape
    history_period: str = "3mo"
    history_interval: str = "1d"

    # Persistence
    db_path: str = "options_scanner.db"

    @classmethod
    def from_env(cls) -> "ScannerConfig":
        """Build a config from the process environment."""
        return cls(
            provider_base_url=os.getenv(
                "PROVIDER_BASE_URL", "https://query1.finance.yahoo.com"
            ),
            calls_per_minute=_env_int("PROVIDER_CALLS_PER_MINUTE", 30),
            max_attempts=_env_int("PROVIDER_MAX_ATTEMPTS", 3),
            base_delay=_env_float("PROVIDER_BASE_DELAY", 2.0),
            cap_delay=_env_float("PROVIDER_CAP_DELAY", 10.0),
            request_timeout=_env_float("PROVIDER_TIMEOUT", 10.0),
            degraded_cooldown=_env_float("DEGRADED_COOLDOWN", 300.0),
            cache_ttl=_env_float("CACHE_TTL", 300.0),
            cache_stale_ttl=_env_float("CACHE_STALE_TTL", 900.0),
            cache_cleanup_interval=_env_float("CACHE_CLEANUP_INTERVAL", 60.0),
            quote_interval=_env_float("QUOTE_INTERVAL", 20.0),
            historical_interval=_env_float("HISTORICAL_INTERVAL", 1800.0),
            options_interval=_env_float("OPTIONS_INTERVAL", 900.0),
            summary_interval=_env_float("SUMMARY_INTERVAL", 3600.0),
            default_tickers=_env_tickers("DEFAULT_TICKERS"),
            autostart=_env_bool("AUTOSTART_COLLECTION", False),
            db_path=os.getenv("DB_PATH", "options_scanner.db"),
        )

    def with_overrides(self, **changes) -> "ScannerConfig":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def interval_for(self, feed: str) -> Optional[float]:
        return {
            "quote": self.quote_interval,
            "historical": self.historical_interval,
            "options": self.options_interval,
            "summary": self.summary_interval,
        }.get(feed)
