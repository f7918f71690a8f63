"""
Trade risk calculators: position sizing, risk/reward and stop-loss plans.

All three are pure functions over plain numbers. A required input that is
missing (``None`` or zero) for the chosen position or stop type raises
``RiskInputError``; the HTTP layer turns that into a 400.

Option dollar figures use a 100-share contract multiplier. Position sizing
treats ``option_premium`` as the cost of one contract.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from options_scanner.core.errors import RiskInputError

CONTRACT_MULTIPLIER = 100
HIGH_IV = 60.0
LOW_IV = 20.0
ATR_MULTIPLIER = 2.5
MAX_ACCOUNT_RISK_PCT = 2.0


class GexAdjustment(str, Enum):
    CONSERVATIVE = "conservative"
    NEUTRAL = "neutral"
    AGGRESSIVE = "aggressive"


class PositionType(str, Enum):
    LONG = "long"
    SHORT = "short"
    CALL = "call"
    PUT = "put"
    SPREAD = "spread"
    CONDOR = "condor"

    @property
    def is_option(self) -> bool:
        return self in (PositionType.CALL, PositionType.PUT)

    @property
    def is_multi_leg(self) -> bool:
        return self in (PositionType.SPREAD, PositionType.CONDOR)


class TradeType(str, Enum):
    CALL = "call"
    PUT = "put"
    STOCK = "stock"
    SPREAD = "spread"


class StopType(str, Enum):
    TECHNICAL = "technical"
    PERCENTAGE = "percentage"
    ATR = "atr"
    FIXED = "fixed"
    TIME = "time"


def _require(value: Optional[float], name: str, context: str) -> float:
    if not value:
        raise RiskInputError(f"Missing {name} for {context}")
    return value


# ---------------------------------------------------------------------------
# Position sizing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PositionSize:
    contracts: int
    initial_contracts: int
    adjustment_factor: float
    max_risk: float
    max_risk_pct: float
    notional_value: float
    iv_adjustment: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "contractsToTrade": self.contracts,
            "initialContractsCalculated": self.initial_contracts,
            "adjustmentFactor": self.adjustment_factor,
            "maxRisk": self.max_risk,
            "maxRiskPercentage": self.max_risk_pct,
            "notionalValue": self.notional_value,
            "ivAdjustment": self.iv_adjustment,
        }


def size_position(
    account_size: float,
    risk_pct: float,
    option_premium: float,
    iv: Optional[float] = None,
    gex_adjustment: GexAdjustment = GexAdjustment.NEUTRAL,
) -> PositionSize:
    """Contracts to buy so that *risk_pct* of the account covers the premium.

    High IV (> 60) scales the count by 0.8, low IV (< 20) by 1.2; the GEX
    stance applies another 0.8 / 1.2. At least one contract is returned.
    """
    _require(account_size, "account_size", "position sizing")
    _require(risk_pct, "risk_percentage", "position sizing")
    _require(option_premium, "option_premium", "position sizing")

    initial = math.floor(account_size * risk_pct / 100 / option_premium)

    factor = 1.0
    if iv is not None and iv > HIGH_IV:
        factor *= 0.8
        iv_note = "Applied High IV reduction"
    elif iv is not None and iv < LOW_IV:
        factor *= 1.2
        iv_note = "Applied Low IV increase"
    else:
        iv_note = "No IV adjustment"

    if gex_adjustment is GexAdjustment.CONSERVATIVE:
        factor *= 0.8
    elif gex_adjustment is GexAdjustment.AGGRESSIVE:
        factor *= 1.2

    contracts = max(1, math.floor(initial * factor))
    max_risk = contracts * option_premium
    return PositionSize(
        contracts=contracts,
        initial_contracts=initial,
        adjustment_factor=factor,
        max_risk=max_risk,
        max_risk_pct=max_risk / account_size * 100,
        notional_value=contracts * option_premium * CONTRACT_MULTIPLIER,
        iv_adjustment=iv_note,
    )


# ---------------------------------------------------------------------------
# Risk / reward
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RiskRewardAnalysis:
    risk_amount: float
    reward_amount: float
    risk_reward_ratio: float
    win_probability: float
    expected_value: float
    dollar_risk: float
    dollar_reward: float
    adjusted_risk_reward_ratio: float
    risk_score: float
    recommendations: tuple[str, ...]

    @property
    def trade_quality(self) -> str:
        if self.risk_score >= 7:
            return "excellent"
        if self.risk_score >= 5:
            return "good"
        if self.risk_score >= 3:
            return "fair"
        return "poor"

    def to_dict(self) -> dict[str, Any]:
        return {
            "riskAmount": self.risk_amount,
            "rewardAmount": self.reward_amount,
            "riskRewardRatio": round(self.risk_reward_ratio, 2),
            "winProbability": round(self.win_probability, 1),
            "expectedValue": round(self.expected_value, 2),
            "dollarRisk": round(self.dollar_risk, 2),
            "dollarReward": round(self.dollar_reward, 2),
            "adjustedRiskRewardRatio": round(self.adjusted_risk_reward_ratio, 2),
            "riskScore": round(self.risk_score, 1),
            "recommendations": list(self.recommendations),
            "tradeQuality": self.trade_quality,
        }


def estimate_win_probability(
    position_type: PositionType,
    entry: float,
    strike: Optional[float] = None,
    iv: Optional[float] = None,
) -> float:
    """Rough odds in percent, clamped to 10..90.

    Stock positions start at 55 and multi-leg credit positions at 60.
    Single options start at 65 in the money and 50 at the money, lose one
    point per percent out of the money and ``0.2 · iv`` on top.
    """
    if position_type.is_option:
        if strike and iv:
            ratio = strike / entry
            otm = ratio - 1.0 if position_type is PositionType.CALL else 1.0 - ratio
            if otm <= 0:
                probability = 65 - iv * 0.2
            else:
                probability = 50 - otm * 100 - iv * 0.2
        else:
            probability = 50.0
    elif position_type.is_multi_leg:
        probability = 60.0
    else:
        probability = 55.0
    return max(10.0, min(90.0, probability))


def _legs(
    entry: float,
    target: float,
    stop: float,
    position_type: PositionType,
    option_premium: Optional[float],
    strike: Optional[float],
    quantity: Optional[float],
) -> tuple[float, float, float, float]:
    """(risk, reward, dollar_risk, dollar_reward) per position type."""
    if position_type.is_option:
        premium = _require(option_premium, "option_premium", f"{position_type.value} position")
        strike = _require(strike, "strike", f"{position_type.value} option")
        if position_type is PositionType.CALL:
            intrinsic = max(0.0, target - strike)
        else:
            intrinsic = max(0.0, strike - target)
        risk, reward = premium, intrinsic - premium
        contracts = (quantity or 1) * CONTRACT_MULTIPLIER
        return risk, reward, risk * contracts, reward * contracts

    if position_type.is_multi_leg:
        _require(option_premium, "option_premium", f"{position_type.value} position")
        risk, reward = abs(entry - stop), abs(target - entry)
        contracts = (quantity or 1) * CONTRACT_MULTIPLIER
        return risk, reward, risk * contracts, reward * contracts

    if position_type is PositionType.LONG:
        risk, reward = abs(entry - stop), abs(target - entry)
    else:
        risk, reward = abs(stop - entry), abs(entry - target)
    shares = quantity or 1
    return risk, reward, risk * shares, reward * shares


def analyze_risk_reward(
    entry: float,
    target: float,
    stop: float,
    position_type: PositionType,
    *,
    iv: Optional[float] = None,
    win_probability: Optional[float] = None,
    option_premium: Optional[float] = None,
    strike: Optional[float] = None,
    days_to_expiration: Optional[int] = None,
    quantity: Optional[float] = None,
) -> RiskRewardAnalysis:
    """Reward-to-risk, expected value and a 1-10 risk score for one trade.

    Options risk the premium and are rewarded with intrinsic value at the
    target minus that premium. Spreads and condors use the entry-to-stop
    and entry-to-target distances. *win_probability* is estimated when not
    given. The score is ``2 · R:R`` scaled by ``probability / 50`` and, for
    single options, by ``1 − iv / 100``.
    """
    _require(entry, "entry_price", "risk/reward analysis")
    _require(target, "target_price", "risk/reward analysis")
    _require(stop, "stop_loss_price", "risk/reward analysis")

    risk, reward, dollar_risk, dollar_reward = _legs(
        entry, target, stop, position_type, option_premium, strike, quantity
    )
    if risk == 0:
        raise RiskInputError("Stop loss equals entry price, so nothing is at risk")

    ratio = reward / risk
    probability = win_probability or estimate_win_probability(position_type, entry, strike, iv)
    expected = dollar_reward * probability / 100 - dollar_risk * (1 - probability / 100)

    score = ratio * 2 * (probability / 50)
    if iv and position_type.is_option:
        score *= 1 - iv / 100
    score = min(10.0, max(1.0, score))

    notes = []
    if ratio < 1:
        notes.append("Risk exceeds the potential reward. Adjust entry, target or stop to improve the ratio.")
    elif ratio < 2:
        notes.append("Moderate risk/reward. Consider a smaller position or a better entry.")
    elif ratio >= 3:
        notes.append("Excellent risk/reward. A larger position may fit within your risk tolerance.")
    if probability < 40:
        notes.append("Low probability trade. Size it for its speculative nature.")
    if expected <= 0:
        notes.append("Negative expected value over repeated trades.")
    if position_type.is_option and days_to_expiration:
        if days_to_expiration < 14:
            notes.append("Short-dated option. Theta decay accelerates, so take profits early.")
        if iv and iv > HIGH_IV:
            notes.append("High implied volatility. A spread or condor reduces vega exposure.")

    return RiskRewardAnalysis(
        risk_amount=risk,
        reward_amount=reward,
        risk_reward_ratio=ratio,
        win_probability=probability,
        expected_value=expected,
        dollar_risk=dollar_risk,
        dollar_reward=dollar_reward,
        adjusted_risk_reward_ratio=ratio * probability / 100,
        risk_score=score,
        recommendations=tuple(notes),
    )


# ---------------------------------------------------------------------------
# Stop-loss plans
# ---------------------------------------------------------------------------

_STOP_PROFILES = {
    StopType.TECHNICAL: (
        "high",
        "A support or resistance level gives a clear point where the trade idea is invalid.",
    ),
    StopType.PERCENTAGE: (
        "medium",
        "A fixed percentage standardises risk across positions but ignores current volatility.",
    ),
    StopType.ATR: (
        "high",
        "An ATR multiple widens in volatile markets and tightens in quiet ones.",
    ),
    StopType.FIXED: (
        "medium",
        "A fixed dollar amount keeps the maximum loss constant whatever the position size.",
    ),
    StopType.TIME: (
        "low",
        "A time stop limits theta decay and opportunity cost; pair it with a price stop.",
    ),
}


@dataclass(frozen=True)
class StopLossPlan:
    entry_price: float
    trade_type: TradeType
    stop_type: StopType
    stop_loss_price: Optional[float]
    stop_loss_amount: Optional[float]
    max_loss: Optional[float]
    confidence: str
    description: str
    recommendations: tuple[str, ...]
    stop_loss_pct: Optional[float]

    def to_dict(self) -> dict[str, Any]:
        return {
            "entryPrice": self.entry_price,
            "tradeType": self.trade_type.value,
            "stopType": self.stop_type.value,
            "stopLossPrice": self.stop_loss_price,
            "stopLossAmount": self.stop_loss_amount,
            "maxLoss": self.max_loss,
            "riskDescription": self.description,
            "confidenceLevel": self.confidence,
            "additionalRecommendations": list(self.recommendations),
            "stopLossPercentage": self.stop_loss_pct,
        }


def plan_stop_loss(
    entry: float,
    trade_type: TradeType,
    stop_type: StopType,
    *,
    option_premium: Optional[float] = None,
    days_to_expiration: Optional[int] = None,
    iv: Optional[float] = None,
    atr: Optional[float] = None,
    account_size: Optional[float] = None,
    risk_pct: Optional[float] = None,
    technical_level: Optional[float] = None,
    percentage: Optional[float] = None,
    fixed_amount: Optional[float] = None,
    time_days: Optional[int] = None,
) -> StopLossPlan:
    """Where to exit and how much that costs for one stop strategy.

    Long calls and stock stop out below entry, long puts above. Spreads
    stop on premium rather than on a price level, so several strategies
    leave ``stop_loss_price`` empty for them.
    """
    _require(entry, "entry_price", "stop-loss strategy")
    context = f"{stop_type.value} stop"
    price: Optional[float] = None
    amount: Optional[float] = None
    notes: list[str] = []

    if stop_type is StopType.TECHNICAL:
        price = _require(technical_level, "technical_level", context)
        if trade_type in (TradeType.CALL, TradeType.STOCK):
            if price >= entry:
                raise RiskInputError("Technical stop must sit below entry for long calls or stock")
            amount = entry - price
        elif trade_type is TradeType.PUT:
            if price <= entry:
                raise RiskInputError("Technical stop must sit above entry for long puts")
            amount = price - entry
        notes.append("Add a time limit: exit if the target is not reached within your timeframe.")

    elif stop_type is StopType.PERCENTAGE:
        pct = _require(percentage, "percentage_value", context) / 100
        if trade_type is TradeType.STOCK:
            amount = entry * pct
            price = entry - amount
        else:
            premium = _require(option_premium, "option_premium", context)
            amount = premium * pct
            price = entry * (1 + pct) if trade_type is TradeType.PUT else entry * (1 - pct)
        if iv and iv > 40:
            notes.append("High IV: widen percentage stops to absorb larger swings.")

    elif stop_type is StopType.ATR:
        offset = _require(atr, "atr_value", context) * ATR_MULTIPLIER
        if trade_type in (TradeType.CALL, TradeType.STOCK):
            price = entry - offset
            amount = offset
        elif trade_type is TradeType.PUT:
            price = entry + offset
            amount = offset
        else:
            amount = _require(option_premium, "option_premium", "spread ATR stop") * 0.5
        notes.append("Use the 14-day ATR and tune the multiplier to the trade's timeframe.")

    elif stop_type is StopType.FIXED:
        amount = _require(fixed_amount, "fixed_dollar_amount", context)
        if trade_type is TradeType.STOCK:
            price = entry - amount
        if account_size:
            share = amount / account_size * 100
            if share > MAX_ACCOUNT_RISK_PCT:
                notes.append(
                    f"Warning: the fixed stop is {share:.2f}% of the account, above the "
                    f"{MAX_ACCOUNT_RISK_PCT:g}% maximum."
                )

    elif stop_type is StopType.TIME:
        days = _require(time_days, "time_days", context)
        if trade_type is not TradeType.STOCK and option_premium and days_to_expiration:
            amount = option_premium / days_to_expiration * days
        notes.append("Combine a time stop with at least one price-based stop.")
        if days_to_expiration and days > days_to_expiration * 0.5:
            notes.append(
                f"Warning: the time stop covers more than half the time to expiration "
                f"({days} days vs {days_to_expiration} DTE)."
            )

    max_loss = None
    if account_size and risk_pct:
        max_loss = account_size * risk_pct / 100
        if amount and amount > max_loss:
            notes.append(
                f"Warning: the stop loss amount ({amount:.2f}) exceeds the maximum risk of "
                f"${max_loss:.2f} ({risk_pct:g}% of the account)."
            )

    confidence, description = _STOP_PROFILES[stop_type]
    return StopLossPlan(
        entry_price=entry,
        trade_type=trade_type,
        stop_type=stop_type,
        stop_loss_price=price,
        stop_loss_amount=amount,
        max_loss=max_loss,
        confidence=confidence,
        description=description,
        recommendations=tuple(notes),
        stop_loss_pct=round(amount / option_premium * 100, 2) if amount and option_premium else None,
    )
