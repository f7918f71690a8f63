"""
Domain records passed between the pipeline layers.

Provider payloads are normalised into these records once, at the source
boundary (``integrations.yahoo`` / ``integrations.synthetic``). Everything
downstream can rely on the field types below and never sees raw JSON.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class SetupType(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class OptionKind(str, Enum):
    CALL = "call"
    PUT = "put"


class Feed(str, Enum):
    """The four independently scheduled collection loops."""

    QUOTE = "quote"
    HISTORICAL = "historical"
    OPTIONS = "options"
    SUMMARY = "summary"


def epoch_to_date(timestamp: float) -> str:
    """Format an epoch-seconds timestamp as a UTC ``YYYY-MM-DD`` string."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")


@dataclass(frozen=True)
class PricePoint:
    date: str
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "timestamp": self.timestamp,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


@dataclass(frozen=True)
class Quote:
    symbol: str
    date: str
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: int
    average_volume: Optional[float] = None
    source: str = "live"

    def volume_percent_change(self) -> float:
        """Current volume relative to the average, in percent (0 when unknown)."""
        if not self.average_volume:
            return 0.0
        return (self.volume - self.average_volume) / self.average_volume * 100.0


@dataclass(frozen=True)
class IndicatorSet:
    """Indicator values at one index of a series; ``None`` = not yet available."""

    ema10: Optional[float]
    ema20: Optional[float]
    ema50: Optional[float]
    rsi14: Optional[float]
    stoch_rsi: Optional[float]

    @property
    def complete(self) -> bool:
        return None not in (
            self.ema10,
            self.ema20,
            self.ema50,
            self.rsi14,
            self.stoch_rsi,
        )

    @property
    def has_technicals(self) -> bool:
        """Enough history for the EMA stack and RSI to be meaningful."""
        return None not in (self.ema10, self.ema20, self.ema50, self.rsi14)


@dataclass(frozen=True)
class OptionContract:
    kind: OptionKind
    strike: float
    open_interest: int = 0
    volume: int = 0
    implied_volatility: float = 0.0
    delta: Optional[float] = None
    gamma: Optional[float] = None


@dataclass(frozen=True)
class OptionsChain:
    symbol: str
    expiration_date: str
    calls: tuple[OptionContract, ...] = ()
    puts: tuple[OptionContract, ...] = ()
    expiration_dates: tuple[str, ...] = ()
    source: str = "live"

    @property
    def strikes(self) -> list[float]:
        return sorted({c.strike for c in self.calls} | {p.strike for p in self.puts})


@dataclass(frozen=True)
class OptionsMetrics:
    pcr: float
    max_pain: float
    gamma_exposure: float
    volume_weighted_iv: float
    total_call_oi: int = 0
    total_put_oi: int = 0
    total_call_volume: int = 0
    total_put_volume: int = 0


@dataclass(frozen=True)
class KeyLevels:
    support: tuple[float, ...]
    resistance: tuple[float, ...]
    max_pain: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "support": list(self.support),
            "resistance": list(self.resistance),
            "maxPain": self.max_pain,
        }


@dataclass(frozen=True)
class Recommendation:
    action: str
    target: Any
    stop: Any
    expiration: str
    strike: Optional[float]

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "target": self.target,
            "stop": self.stop,
            "expiration": self.expiration,
            "strike": self.strike,
        }


@dataclass(frozen=True)
class TradeSetup:
    symbol: str
    setup_type: SetupType
    strength: int
    entry_price: float
    stop_loss: Optional[float]
    target_price: Optional[float]
    risk_reward_ratio: Optional[float]
    date: str = ""
    timestamp: int = 0

    @property
    def actionable(self) -> bool:
        return self.stop_loss is not None and self.target_price is not None

    def to_record(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "date": self.date,
            "timestamp": self.timestamp,
            "setup_type": self.setup_type.value,
            "strength": self.strength,
            "entry_price": self.entry_price,
            "stop_loss": self.stop_loss,
            "target_price": self.target_price,
            "risk_reward_ratio": self.risk_reward_ratio,
        }


ERROR_RING_SIZE = 10


@dataclass
class CollectionStatus:
    """Per-symbol health record; lives from ``start(symbol)`` to ``stop(symbol)``."""

    last_quote_at: Optional[float] = None
    last_historical_at: Optional[float] = None
    last_options_at: Optional[float] = None
    last_summary_at: Optional[float] = None
    recent_errors: deque = field(default_factory=lambda: deque(maxlen=ERROR_RING_SIZE))

    def mark(self, feed: Feed, when: float) -> None:
        setattr(self, f"last_{feed.value}_at", when)

    def last_at(self, feed: Feed) -> Optional[float]:
        return getattr(self, f"last_{feed.value}_at")

    def record_error(self, feed: Feed, message: str, when: datetime) -> None:
        self.recent_errors.append(f"[{when.isoformat()}] {feed.value}: {message}")
