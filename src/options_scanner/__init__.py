"""
options_scanner: market-data acquisition pipeline for the options setup scanner.

Sub-packages:

    # Core infrastructure
    from options_scanner.core.cache import Cache
    from options_scanner.core.config import ScannerConfig
    from options_scanner.core.store import SqliteStore
    from options_scanner.core.logging_config import setup_logging, get_logger

    # Analysis (pure functions)
    from options_scanner.analysis.indicators import ema, rsi, stochastic_rsi
    from options_scanner.analysis.options_metrics import compute_options_metrics
    from options_scanner.analysis.setup_classifier import classify_setup

    # External integrations
    from options_scanner.integrations.provider_client import RateLimitedClient
    from options_scanner.integrations.sources import DataSourceRouter

Services:

    from options_scanner.services.engine.collector import CollectorService
    from options_scanner.services.data.main import app

Install in editable mode for development:

    pip install -e ".[test]"
"""

__version__ = "0.4.0"
