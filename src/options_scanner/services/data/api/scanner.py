"""
Scanner API router: the dashboard's read side.

Provides:
    GET /scanner/results                 All classified symbols + market summary
    GET /scanner/{symbol}                One symbol's full projection
    GET /scanner/{symbol}/history        Persisted setups / sentiment / summaries
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from options_scanner.core.models import SetupType
from options_scanner.services.data.api.dependencies import get_collector
from options_scanner.services.data.api.rate_limit import get_limiter, route_limit
from options_scanner.services.engine.collector import CollectorService

logger = logging.getLogger("api.scanner")

router = APIRouter(tags=["Scanner"])
limiter = get_limiter()


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class SetupCounts(BaseModel):
    bullish: int = 0
    bearish: int = 0
    neutral: int = 0


class MarketSummary(BaseModel):
    sentiment: str
    gexAggregate: float = 0.0
    pcrAggregate: Optional[float] = None


class VolumeInfo(BaseModel):
    current: int = 0
    percentChange: float = 0.0


class KeyLevelsOut(BaseModel):
    support: list[float] = Field(default_factory=list)
    resistance: list[float] = Field(default_factory=list)
    maxPain: Optional[float] = None


class RecommendationOut(BaseModel):
    action: str
    target: Any = None
    stop: Any = None
    expiration: Optional[str] = None
    strike: Optional[float] = None


class TradeLevels(BaseModel):
    entry: Optional[float] = None
    target: Optional[float] = None
    stop: Optional[float] = None
    riskReward: Optional[float] = None


class SymbolAnalysis(BaseModel):
    """Stable UI projection of one symbol."""

    symbol: str
    price: Optional[float] = None
    setupType: str
    setupStrength: int
    emaTrend: str
    pcr: Optional[float] = None
    rsi: Optional[float] = None
    stochasticRsi: Optional[float] = None
    volume: VolumeInfo
    iv: Optional[float] = None
    gex: Optional[float] = None
    keyLevels: KeyLevelsOut
    recommendation: Optional[RecommendationOut] = None
    tradeLevels: TradeLevels
    scores: dict[str, int] = Field(default_factory=dict)
    ivPercentile: Optional[float] = None
    historicalData: list[dict[str, Any]] = Field(default_factory=list)
    dataSource: str = "live"
    updatedAt: Optional[str] = None


class ScannerResults(BaseModel):
    timestamp: str
    setupCounts: SetupCounts
    marketSummary: MarketSummary
    results: list[SymbolAnalysis]


class SymbolHistory(BaseModel):
    symbol: str
    setups: list[dict[str, Any]] = Field(default_factory=list)
    sentiment: list[dict[str, Any]] = Field(default_factory=list)
    summaries: list[dict[str, Any]] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/results", response_model=ScannerResults)
@limiter.limit(route_limit("/scanner"))
def scanner_results(
    request: Request,
    setup_type: Optional[SetupType] = Query(None, description="Filter by setup type"),
    collector: CollectorService = Depends(get_collector),
):
    """Every symbol that has been classified at least once.

    Counts and the market summary always cover all symbols; ``setup_type``
    only filters ``results``.
    """
    return collector.get_scanner_results(setup_type.value if setup_type else None)


@router.get("/{symbol}", response_model=SymbolAnalysis)
@limiter.limit(route_limit("/scanner"))
def symbol_analysis(request: Request, symbol: str, collector: CollectorService = Depends(get_collector)):
    analysis = collector.get_analysis(symbol)
    if analysis is None:
        raise HTTPException(status_code=404, detail=f"No analysis for {symbol.upper()} yet")
    return analysis


@router.get("/{symbol}/history", response_model=SymbolHistory)
@limiter.limit(route_limit("/scanner"))
def symbol_history(
    request: Request,
    symbol: str,
    days: int = Query(30, ge=1, le=365),
    collector: CollectorService = Depends(get_collector),
):
    """Persisted history for *symbol*; empty lists when persistence is off."""
    symbol = symbol.upper()
    store = collector.store
    if store is None:
        return SymbolHistory(symbol=symbol)

    try:
        setups = store.get_trade_setups(symbol=symbol)
        sentiment = store.get_market_sentiment(symbol, days=days)
        summaries = store.get_daily_summaries(symbol, days=days)
    except Exception as exc:
        logger.error("History lookup failed for %s: %s", symbol, exc)
        raise HTTPException(status_code=500, detail="History lookup failed") from exc

    return SymbolHistory(symbol=symbol, setups=setups, sentiment=sentiment, summaries=summaries)
