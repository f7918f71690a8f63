"""
Weighted rule evaluation that turns indicators and options sentiment into a
trade setup.

Each setup type scores the sum of the weights of its satisfied criteria.
Types are evaluated in a fixed order, bullish → bearish → neutral, and the
first one reaching its threshold is emitted, even if a later type scores
higher. When none reaches its threshold the result is a monitor-only
neutral with no trade levels.

  Bullish (threshold 70)                    Bearish (threshold 70)
    EMA10 > EMA20 > EMA50           30        EMA10 < EMA20 < EMA50           30
    PCR < 0.5 / 0.8 / 0.7 (IV tier) 20        PCR > 1.5 / 1.2 / 1.3 (IV tier) 20
    RSI in [55, 80]                 15        RSI in [20, 45]                 15
    StochRSI > 60                   15        StochRSI < 40                   15
    GEX > +5e8                      10        GEX < −5e8                      10
    price within 2% of support       5        price within 2% of resistance    5
    heavy call OI above price        5        heavy put OI below price         5

  Neutral (threshold 75)
    EMAs flat within 1%             25
    PCR in [0.8, 1.2]               20
    IV <= 30                        15
    RSI in [45, 65]                 15
    StochRSI in [25, 75]            15
    price within 2% of max pain      5
    high gamma near price            5

IV tiers: IV > 50 is "high", IV > 30 "moderate", anything else (including
unknown IV) "low". IV is in percent.

Trade levels on emission:
  - bullish: target = nearest resistance above entry (else +5%),
             stop   = nearest support below entry (else −5%)
  - bearish: mirrored
  - neutral: target = max pain, stop = just beyond the one-week expected
             move on the side away from max pain
  - risk_reward_ratio = |target − entry| / |entry − stop|
"""

import math
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Callable, Optional, Sequence

from options_scanner.analysis.indicators import ema_trend, is_flat
from options_scanner.analysis.key_levels import (
    nearest_above,
    nearest_below,
    within,
)
from options_scanner.analysis.options_metrics import OpenInterestWalls
from options_scanner.core.models import (
    IndicatorSet,
    KeyLevels,
    OptionsMetrics,
    Recommendation,
    SetupType,
    TradeSetup,
)

EPSILON = 1e-10

BULLISH_THRESHOLD = 70
BEARISH_THRESHOLD = 70
NEUTRAL_THRESHOLD = 75

GEX_THRESHOLD = 500_000_000
NEAR_LEVEL = 0.02
FALLBACK_MOVE = 0.05
RECOMMENDATION_DAYS = 30


@dataclass(frozen=True)
class ClassifierInputs:
    """Everything the classifier looks at for one symbol at one instant."""

    price: float
    ema_trend: str
    rsi: Optional[float]
    stochastic_rsi: Optional[float]
    pcr: Optional[float]
    gex: Optional[float]
    iv: Optional[float] = None
    emas_flat: Optional[bool] = None
    price_near_support: bool = False
    price_near_resistance: bool = False
    price_near_max_pain: bool = False
    call_oi_above: bool = False
    put_oi_below: bool = False
    high_gamma_near_price: bool = False
    support_levels: tuple[float, ...] = ()
    resistance_levels: tuple[float, ...] = ()
    max_pain: Optional[float] = None

    @property
    def flat(self) -> bool:
        if self.emas_flat is not None:
            return self.emas_flat
        return self.ema_trend == "flat"

    @classmethod
    def from_market(
        cls,
        price: float,
        indicators: Optional[IndicatorSet],
        metrics: Optional[OptionsMetrics],
        key_levels: KeyLevels,
        walls: Optional[OpenInterestWalls] = None,
    ) -> "ClassifierInputs":
        """Build inputs from the latest collected data.

        Indicators that are not available yet stay ``None`` and satisfy no
        criterion. Without all three EMAs the stack is neither ordered nor
        flat.
        """
        ind = indicators or IndicatorSet(None, None, None, None, None)
        e10, e20, e50 = ind.ema10, ind.ema20, ind.ema50
        has_emas = None not in (e10, e20, e50)
        walls = walls or OpenInterestWalls(False, False, False)

        max_pain = metrics.max_pain if metrics is not None else key_levels.max_pain
        support = tuple(sorted(set(key_levels.support) | set(walls.support_strikes)))
        resistance = tuple(
            sorted(set(key_levels.resistance) | set(walls.resistance_strikes))
        )
        return cls(
            price=price,
            ema_trend=ema_trend(e10, e20, e50),
            rsi=ind.rsi14,
            stochastic_rsi=ind.stoch_rsi,
            pcr=metrics.pcr if metrics is not None else None,
            gex=metrics.gamma_exposure if metrics is not None else None,
            iv=metrics.volume_weighted_iv * 100.0 if metrics is not None else None,
            emas_flat=has_emas and is_flat(e10, e20, e50),
            price_near_support=any(within(price, s, NEAR_LEVEL) for s in support),
            price_near_resistance=any(within(price, r, NEAR_LEVEL) for r in resistance),
            price_near_max_pain=bool(max_pain) and within(price, max_pain, NEAR_LEVEL),
            call_oi_above=walls.call_oi_above,
            put_oi_below=walls.put_oi_below,
            high_gamma_near_price=walls.high_gamma_near_price,
            support_levels=support,
            resistance_levels=resistance,
            max_pain=max_pain,
        )


# ---------------------------------------------------------------------------
# Criteria
# ---------------------------------------------------------------------------

Criterion = tuple[str, int, Callable[[ClassifierInputs], bool]]


def _between(value: Optional[float], lo: float, hi: float) -> bool:
    return value is not None and lo <= value <= hi


def _bullish_pcr_limit(iv: Optional[float]) -> float:
    if iv is not None and iv > 50:
        return 0.5
    if iv is not None and iv > 30:
        return 0.8
    return 0.7


def _bearish_pcr_limit(iv: Optional[float]) -> float:
    if iv is not None and iv > 50:
        return 1.5
    if iv is not None and iv > 30:
        return 1.2
    return 1.3


BULLISH_CRITERIA: list[Criterion] = [
    ("ema_stack", 30, lambda x: x.ema_trend == "10>20>50"),
    ("pcr", 20, lambda x: x.pcr is not None and x.pcr < _bullish_pcr_limit(x.iv)),
    ("rsi", 15, lambda x: _between(x.rsi, 55, 80)),
    ("stochastic_rsi", 15, lambda x: x.stochastic_rsi is not None and x.stochastic_rsi > 60),
    ("gex", 10, lambda x: x.gex is not None and x.gex > GEX_THRESHOLD),
    ("near_support", 5, lambda x: x.price_near_support),
    ("call_oi_above", 5, lambda x: x.call_oi_above),
]

BEARISH_CRITERIA: list[Criterion] = [
    ("ema_stack", 30, lambda x: x.ema_trend == "10<20<50"),
    ("pcr", 20, lambda x: x.pcr is not None and x.pcr > _bearish_pcr_limit(x.iv)),
    ("rsi", 15, lambda x: _between(x.rsi, 20, 45)),
    ("stochastic_rsi", 15, lambda x: x.stochastic_rsi is not None and x.stochastic_rsi < 40),
    ("gex", 10, lambda x: x.gex is not None and x.gex < -GEX_THRESHOLD),
    ("near_resistance", 5, lambda x: x.price_near_resistance),
    ("put_oi_below", 5, lambda x: x.put_oi_below),
]

NEUTRAL_CRITERIA: list[Criterion] = [
    ("flat_emas", 25, lambda x: x.flat),
    ("pcr", 20, lambda x: _between(x.pcr, 0.8, 1.2)),
    ("low_iv", 15, lambda x: x.iv is not None and x.iv <= 30),
    ("rsi", 15, lambda x: _between(x.rsi, 45, 65)),
    ("stochastic_rsi", 15, lambda x: _between(x.stochastic_rsi, 25, 75)),
    ("near_max_pain", 5, lambda x: x.price_near_max_pain),
    ("gamma_near_price", 5, lambda x: x.high_gamma_near_price),
]

# Evaluation order is the tie-break.
_RULES: list[tuple[SetupType, list[Criterion], int]] = [
    (SetupType.BULLISH, BULLISH_CRITERIA, BULLISH_THRESHOLD),
    (SetupType.BEARISH, BEARISH_CRITERIA, BEARISH_THRESHOLD),
    (SetupType.NEUTRAL, NEUTRAL_CRITERIA, NEUTRAL_THRESHOLD),
]


def score(inputs: ClassifierInputs, criteria: Sequence[Criterion]) -> tuple[int, list[str]]:
    """Sum of satisfied weights and the names of the satisfied criteria."""
    total = 0
    met = []
    for name, weight, check in criteria:
        if check(inputs):
            total += weight
            met.append(name)
    return total, met


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Classification:
    setup_type: SetupType
    strength: int
    entry_price: float
    stop_loss: Optional[float]
    target_price: Optional[float]
    risk_reward_ratio: Optional[float]
    emitted: bool
    scores: dict[str, int] = field(default_factory=dict)
    criteria: dict[str, list[str]] = field(default_factory=dict)

    @property
    def action(self) -> str:
        if not self.emitted:
            return "Monitor"
        return {
            SetupType.BULLISH: "Buy calls",
            SetupType.BEARISH: "Buy puts",
            SetupType.NEUTRAL: "Sell iron condor",
        }[self.setup_type]

    def to_trade_setup(self, symbol: str, on_date: str = "", timestamp: int = 0) -> TradeSetup:
        return TradeSetup(
            symbol=symbol,
            setup_type=self.setup_type,
            strength=self.strength,
            entry_price=self.entry_price,
            stop_loss=self.stop_loss,
            target_price=self.target_price,
            risk_reward_ratio=self.risk_reward_ratio,
            date=on_date,
            timestamp=timestamp,
        )

    def breakdown(self) -> dict[str, Any]:
        return {"scores": dict(self.scores), "criteria": {k: list(v) for k, v in self.criteria.items()}}


def risk_reward(entry: float, target: float, stop: float) -> float:
    return abs(target - entry) / max(abs(entry - stop), EPSILON)


def _trade_levels(setup_type: SetupType, x: ClassifierInputs) -> tuple[float, float]:
    entry = x.price
    if setup_type is SetupType.BULLISH:
        target = nearest_above(entry, x.resistance_levels)
        stop = nearest_below(entry, x.support_levels)
        return (
            target if target is not None else entry * (1 + FALLBACK_MOVE),
            stop if stop is not None else entry * (1 - FALLBACK_MOVE),
        )
    if setup_type is SetupType.BEARISH:
        target = nearest_below(entry, x.support_levels)
        stop = nearest_above(entry, x.resistance_levels)
        return (
            target if target is not None else entry * (1 - FALLBACK_MOVE),
            stop if stop is not None else entry * (1 + FALLBACK_MOVE),
        )

    target = x.max_pain if x.max_pain else entry
    expected_move = entry * (x.iv or 0.0) * 0.01 * math.sqrt(7 / 365)
    if entry > target:
        stop = (entry + expected_move) * 1.02
    else:
        stop = (entry - expected_move) * 0.98
    return target, stop


def classify_setup(inputs: ClassifierInputs) -> Classification:
    scores: dict[str, int] = {}
    criteria: dict[str, list[str]] = {}
    for setup_type, rules, _ in _RULES:
        total, met = score(inputs, rules)
        scores[setup_type.value] = total
        criteria[setup_type.value] = met

    for setup_type, _, threshold in _RULES:
        strength = scores[setup_type.value]
        if strength >= threshold:
            target, stop = _trade_levels(setup_type, inputs)
            return Classification(
                setup_type=setup_type,
                strength=strength,
                entry_price=inputs.price,
                stop_loss=stop,
                target_price=target,
                risk_reward_ratio=risk_reward(inputs.price, target, stop),
                emitted=True,
                scores=scores,
                criteria=criteria,
            )

    return Classification(
        setup_type=SetupType.NEUTRAL,
        strength=scores[SetupType.NEUTRAL.value],
        entry_price=inputs.price,
        stop_loss=None,
        target_price=None,
        risk_reward_ratio=None,
        emitted=False,
        scores=scores,
        criteria=criteria,
    )


def build_recommendation(
    price: float,
    classification: Classification,
    key_levels: KeyLevels,
    today: Optional[date] = None,
) -> Recommendation:
    """Options trade suggestion for the UI, anchored on the key levels."""
    expiration = ((today or date.today()) + timedelta(days=RECOMMENDATION_DAYS)).isoformat()
    support, resistance = key_levels.support, key_levels.resistance
    if not classification.emitted:
        return Recommendation("Monitor", None, None, expiration, round(price))
    if classification.setup_type is SetupType.BULLISH:
        return Recommendation(
            "Buy calls", resistance[-1], support[0], expiration, round(resistance[0])
        )
    if classification.setup_type is SetupType.BEARISH:
        return Recommendation(
            "Buy puts", support[0], resistance[-1], expiration, round(support[-1])
        )
    return Recommendation(
        "Sell iron condor",
        "50% premium",
        f"Price breaks {resistance[0]}/{support[0]}",
        expiration,
        round(price),
    )
