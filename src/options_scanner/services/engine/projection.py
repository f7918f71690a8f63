"""
Per-symbol collection state and its JSON projection for the UI.

``SymbolSnapshot`` is the collector's working memory for one symbol: the
latest quote, history, indicators, options chain and derived results.
``project_symbol`` turns it into the stable camelCase shape the dashboard
consumes; ``summarize_market`` aggregates many projections into the
scanner header.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from options_scanner.analysis.options_metrics import OpenInterestWalls
from options_scanner.analysis.setup_classifier import Classification, ClassifierInputs
from options_scanner.core.models import (
    IndicatorSet,
    KeyLevels,
    OptionsChain,
    OptionsMetrics,
    PricePoint,
    Quote,
    Recommendation,
    TradeSetup,
)


@dataclass
class SymbolSnapshot:
    symbol: str
    quote: Optional[Quote] = None
    history: list[PricePoint] = field(default_factory=list)
    indicators: list[IndicatorSet] = field(default_factory=list)
    chain: Optional[OptionsChain] = None
    metrics: Optional[OptionsMetrics] = None
    iv_percentile: Optional[float] = None
    walls: Optional[OpenInterestWalls] = None
    key_levels: Optional[KeyLevels] = None
    inputs: Optional[ClassifierInputs] = None
    classification: Optional[Classification] = None
    recommendation: Optional[Recommendation] = None
    setup: Optional[TradeSetup] = None
    data_source: str = "live"
    updated_at: Optional[float] = None

    @property
    def price(self) -> Optional[float]:
        if self.quote is not None:
            return self.quote.close
        if self.history:
            return self.history[-1].close
        return None

    @property
    def latest_indicators(self) -> Optional[IndicatorSet]:
        return self.indicators[-1] if self.indicators else None


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _round(value: Optional[float], digits: int = 2) -> Optional[float]:
    return None if value is None else round(value, digits)


def _history_rows(snapshot: SymbolSnapshot) -> list[dict[str, Any]]:
    rows = []
    for i, point in enumerate(snapshot.history):
        row = point.to_dict()
        ind = snapshot.indicators[i] if i < len(snapshot.indicators) else None
        row.update(
            {
                "ema10": _round(ind.ema10) if ind else None,
                "ema20": _round(ind.ema20) if ind else None,
                "ema50": _round(ind.ema50) if ind else None,
                "rsi": _round(ind.rsi14) if ind else None,
                "stochasticRsi": _round(ind.stoch_rsi) if ind else None,
            }
        )
        rows.append(row)
    return rows


def project_symbol(snapshot: SymbolSnapshot) -> Optional[dict[str, Any]]:
    """UI projection of one symbol, or ``None`` before the first classification."""
    inputs, result = snapshot.inputs, snapshot.classification
    if inputs is None or result is None:
        return None

    quote = snapshot.quote
    volume = quote.volume if quote else (snapshot.history[-1].volume if snapshot.history else 0)
    key_levels = snapshot.key_levels or KeyLevels(support=(), resistance=())
    recommendation = snapshot.recommendation.to_dict() if snapshot.recommendation else None

    return {
        "symbol": snapshot.symbol,
        "price": _round(inputs.price),
        "setupType": result.setup_type.value,
        "setupStrength": result.strength,
        "emaTrend": inputs.ema_trend,
        "pcr": _round(inputs.pcr, 3),
        "rsi": _round(inputs.rsi),
        "stochasticRsi": _round(inputs.stochastic_rsi),
        "volume": {
            "current": volume,
            "percentChange": _round(quote.volume_percent_change()) if quote else 0.0,
        },
        "iv": _round(inputs.iv),
        "gex": _round(inputs.gex, 0),
        "keyLevels": key_levels.to_dict(),
        "recommendation": recommendation,
        "tradeLevels": {
            "entry": _round(result.entry_price),
            "target": _round(result.target_price),
            "stop": _round(result.stop_loss),
            "riskReward": _round(result.risk_reward_ratio),
        },
        "scores": dict(result.scores),
        "ivPercentile": _round(snapshot.iv_percentile),
        "historicalData": _history_rows(snapshot),
        "dataSource": snapshot.data_source,
        "updatedAt": _iso(snapshot.updated_at),
    }


def summarize_market(projections: Sequence[dict[str, Any]]) -> dict[str, Any]:
    """Scanner header: setup counts, overall sentiment and aggregate GEX / PCR."""
    counts = {"bullish": 0, "bearish": 0, "neutral": 0}
    for p in projections:
        counts[p["setupType"]] = counts.get(p["setupType"], 0) + 1

    if counts["bullish"] > counts["bearish"]:
        sentiment = "moderately bullish"
    elif counts["bearish"] > counts["bullish"]:
        sentiment = "moderately bearish"
    else:
        sentiment = "neutral"

    pcrs = [p["pcr"] if p["pcr"] is not None else 1.0 for p in projections]
    return {
        "setupCounts": counts,
        "marketSummary": {
            "sentiment": sentiment,
            "gexAggregate": sum(p["gex"] or 0.0 for p in projections),
            "pcrAggregate": round(sum(pcrs) / len(pcrs), 3) if pcrs else None,
        },
    }
