"""
Collector API router: control the per-symbol collection loops.

Provides:
    POST /collector/start/{symbol}     Start (or restart) collection for a symbol
    POST /collector/stop/{symbol}      Stop collection and discard its status
    POST /collector/start_default      Start the default ticker list
    POST /collector/collect/{symbol}   Run all four collection steps now
    GET  /collector/status             Per-symbol feed freshness and recent errors
    GET  /collector/provider           Provider breaker / throttle state
    POST /collector/provider/reset     Close the provider circuit breaker
"""

import logging
import re
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from options_scanner.services.data.api.dependencies import get_collector
from options_scanner.services.data.api.rate_limit import get_limiter, route_limit
from options_scanner.services.engine.collector import CollectorService

logger = logging.getLogger("api.collector")

router = APIRouter(tags=["Collector"])
limiter = get_limiter()

_SYMBOL_RE = re.compile(r"^[A-Z][A-Z0-9.\-^]{0,9}$")


def _validated(symbol: str) -> str:
    symbol = symbol.strip().upper()
    if not _SYMBOL_RE.match(symbol):
        raise HTTPException(status_code=422, detail=f"Invalid symbol: {symbol!r}")
    return symbol


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class CollectionAction(BaseModel):
    status: str
    symbol: str
    message: str


class DefaultStartResponse(BaseModel):
    status: str
    symbols: list[str]


class CollectOnceResponse(BaseModel):
    symbol: str
    results: dict[str, bool] = Field(..., description="Per-feed success")
    analysis: Optional[dict[str, Any]] = None


class SymbolStatus(BaseModel):
    last_quote_at: Optional[str] = None
    last_historical_at: Optional[str] = None
    last_options_at: Optional[str] = None
    last_summary_at: Optional[str] = None
    quote_status: str = "not_started"
    historical_status: str = "not_started"
    options_status: str = "not_started"
    summary_status: str = "not_started"
    errors: list[str] = Field(default_factory=list)
    last_errors: list[str] = Field(default_factory=list)


class CollectorStatusResponse(BaseModel):
    symbols: dict[str, SymbolStatus]
    active_source: str
    provider: Optional[dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/start/{symbol}", response_model=CollectionAction)
@limiter.limit(route_limit("/collector/start"))
async def start_collection(
    request: Request, symbol: str, collector: CollectorService = Depends(get_collector)
):
    symbol = _validated(symbol)
    restarted = collector.is_tracking(symbol)
    await collector.start(symbol)
    verb = "Restarted" if restarted else "Started"
    return CollectionAction(
        status="success", symbol=symbol, message=f"{verb} data collection for {symbol}"
    )


@router.post("/stop/{symbol}", response_model=CollectionAction)
@limiter.limit(route_limit("/collector/stop"))
async def stop_collection(
    request: Request, symbol: str, collector: CollectorService = Depends(get_collector)
):
    symbol = _validated(symbol)
    if not await collector.stop(symbol):
        raise HTTPException(status_code=404, detail=f"{symbol} is not being collected")
    return CollectionAction(
        status="success", symbol=symbol, message=f"Stopped data collection for {symbol}"
    )


@router.post("/start_default", response_model=DefaultStartResponse)
@limiter.limit(route_limit("/collector/start_default"))
async def start_default(request: Request, collector: CollectorService = Depends(get_collector)):
    """Start collection for every ticker in ``DEFAULT_TICKERS``."""
    symbols = await collector.start_default()
    logger.info("Default collection started for %d symbols", len(symbols))
    return DefaultStartResponse(status="success", symbols=symbols)


@router.post("/collect/{symbol}", response_model=CollectOnceResponse)
@limiter.limit(route_limit("/collector/collect"))
async def collect_now(
    request: Request, symbol: str, collector: CollectorService = Depends(get_collector)
):
    """Run quote, historical, options and summary steps once, in order.

    Failures are reported per feed and recorded in the symbol's status;
    they never turn into an HTTP error.
    """
    symbol = _validated(symbol)
    results = await collector.collect_once(symbol)
    return CollectOnceResponse(
        symbol=symbol, results=results, analysis=collector.get_analysis(symbol)
    )


@router.get("/status", response_model=CollectorStatusResponse)
@limiter.limit(route_limit("/collector/status"))
def collector_status(request: Request, collector: CollectorService = Depends(get_collector)):
    stats = collector.stats()
    return CollectorStatusResponse(
        symbols=collector.get_status(),
        active_source=stats["sources"]["active"],
        provider=stats["provider"],
    )


@router.get("/provider")
@limiter.limit(route_limit("/collector/status"))
def provider_state(request: Request, collector: CollectorService = Depends(get_collector)):
    if collector.client is None:
        return {"configured": False}
    return {"configured": True, **collector.client.stats()}


@router.post("/provider/reset")
@limiter.limit(route_limit("/collector/provider"))
def reset_provider(request: Request, collector: CollectorService = Depends(get_collector)):
    """Close the circuit breaker so the next request goes to the live provider."""
    if collector.client is None:
        raise HTTPException(status_code=404, detail="No live provider configured")
    collector.client.reset()
    return {"status": "success", "provider": collector.client.stats()}
