"""
Options Scanner Data Service: FastAPI + background collector
=============================================================
Runs the per-symbol collection loops (quote, historical, options, daily
summary) and exposes the classified results to the dashboard.

Usage:
    uvicorn options_scanner.services.data.main:app --host 0.0.0.0 --port 8000

or:
    python -m options_scanner.services.data.main
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from options_scanner import __version__
from options_scanner.core.config import ScannerConfig
from options_scanner.core.logging_config import get_logger, setup_logging
from options_scanner.services.data.api.collector import router as collector_router
from options_scanner.services.data.api.dependencies import set_collector
from options_scanner.services.data.api.health import router as health_router
from options_scanner.services.data.api.metrics import PrometheusMiddleware
from options_scanner.services.data.api.metrics import router as metrics_router
from options_scanner.services.data.api.rate_limit import setup_rate_limiting
from options_scanner.services.data.api.risk import router as risk_router
from options_scanner.services.data.api.scanner import router as scanner_router
from options_scanner.services.data.api.watchlist import router as watchlist_router
from options_scanner.services.engine.collector import CollectorService

setup_logging(service="data-service")
logger = get_logger("data_service")


# ---------------------------------------------------------------------------
# Lifespan: build the collector on startup, stop every loop on shutdown
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    config = ScannerConfig.from_env()
    logger.info(
        "data_service_starting",
        provider=config.provider_base_url,
        calls_per_minute=config.calls_per_minute,
        db_path=config.db_path,
    )

    collector = CollectorService(config)
    app.state.collector = collector
    set_collector(collector)

    if config.autostart:
        symbols = await collector.start_default()
        logger.info("default_collection_started", symbols=symbols)

    logger.info("data_service_ready")

    yield

    logger.info("data_service_stopping")
    try:
        await collector.shutdown()
    except Exception as exc:
        logger.warning("collector_shutdown_error", error=str(exc))
    set_collector(None)
    logger.info("data_service_stopped")


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Options Scanner Data Service",
    description=(
        "Collects quotes, price history and options chains per symbol, "
        "derives technical and options indicators, and classifies each "
        "symbol into a bullish / bearish / neutral trade setup."
    ),
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(PrometheusMiddleware)
setup_rate_limiting(app)

# /scanner/results, /scanner/{symbol}, /scanner/{symbol}/history
app.include_router(scanner_router, prefix="/scanner", tags=["Scanner"])

# /collector/start/{symbol}, /collector/stop/{symbol}, /collector/status, ...
app.include_router(collector_router, prefix="/collector", tags=["Collector"])

# /risk/position-size, /risk/reward, /risk/stop-loss
app.include_router(risk_router, prefix="/risk", tags=["Risk"])

# /watchlist, /watchlist/{symbol}
app.include_router(watchlist_router, prefix="/watchlist", tags=["Watchlist"])

# /health, /metrics (no prefix)
app.include_router(health_router, tags=["Health"])

# /metrics/prometheus
app.include_router(metrics_router)


@app.get("/")
def root():
    """Service info and links to docs."""
    return {
        "service": "options-scanner-data-service",
        "version": __version__,
        "status": "running",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "results": "/scanner/results",
            "analysis": "/scanner/{symbol}",
            "history": "/scanner/{symbol}/history",
            "start": "/collector/start/{symbol}",
            "stop": "/collector/stop/{symbol}",
            "collect": "/collector/collect/{symbol}",
            "status": "/collector/status",
            "position_size": "/risk/position-size",
            "risk_reward": "/risk/reward",
            "stop_loss": "/risk/stop-loss",
            "watchlist": "/watchlist",
            "health": "/health",
            "metrics": "/metrics",
            "prometheus": "/metrics/prometheus",
        },
    }


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    host = os.getenv("DATA_SERVICE_HOST", "0.0.0.0")
    port = int(os.getenv("DATA_SERVICE_PORT", "8000"))

    uvicorn.run(
        "options_scanner.services.data.main:app",
        host=host,
        port=port,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    run()
