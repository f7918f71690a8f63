"""
Technical indicators over a closing-price series.

All functions are pure and return one value per input index, with ``None``
where the lookback window is not yet satisfied:

  - ``ema(closes, period)``        → ``period - 1`` leading ``None``
  - ``rsi(closes, period)``        → ``period`` leading ``None`` (needs
                                     ``period`` deltas, i.e. ``period + 1``
                                     closes)
  - ``stochastic_rsi(rsi, period)`` → ``None`` until ``period`` consecutive
                                     RSI values exist

Design decisions:
  - EMA is seeded with the simple mean of the first ``period`` closes and
    updated as ``prev + k * (close - prev)`` with ``k = 2 / (period + 1)``.
    This is algebraically ``close*k + prev*(1-k)`` but keeps a constant
    series exactly constant in floating point.
  - RSI uses Wilder's smoothing (RMA, alpha = 1/period), matching
    TA-Lib / TradingView. ``avg_loss == 0`` is replaced by ``EPSILON`` so
    a rising series reads ~100 instead of dividing by zero; a series with
    no movement at all reads 50.
  - Stochastic RSI divides by ``max(max - min, EPSILON)``.
  - Nothing here ever returns ``NaN``; consumers treat ``None`` as
    "not yet available", never as zero.

Usage:
    from options_scanner.analysis.indicators import compute_indicator_set, ema_trend

    sets = compute_indicator_set(series)
    latest = sets[-1]
    trend = ema_trend(latest.ema10, latest.ema20, latest.ema50)  # "10>20>50"
"""

import logging
from typing import Optional, Sequence

import numpy as np

from options_scanner.core.models import IndicatorSet, PricePoint

logger = logging.getLogger("indicators")

EPSILON = 1e-10

EMA_SHORT = 10
EMA_MEDIUM = 20
EMA_LONG = 50
RSI_PERIOD = 14
STOCH_RSI_PERIOD = 14

FLAT_TOLERANCE = 0.01

Series = list[Optional[float]]


# ---------------------------------------------------------------------------
# Moving averages
# ---------------------------------------------------------------------------


def ema(closes: Sequence[float], period: int) -> Series:
    """Exponential moving average seeded with the SMA of the first *period* closes."""
    if period <= 0:
        raise ValueError("period must be positive")
    n = len(closes)
    out: Series = [None] * n
    if n < period:
        return out

    values = np.asarray(closes, dtype=float)
    k = 2.0 / (period + 1)
    prev = float(np.mean(values[:period]))
    out[period - 1] = prev
    for i in range(period, n):
        prev = prev + k * (values[i] - prev)
        out[i] = prev
    return out


# ---------------------------------------------------------------------------
# Oscillators
# ---------------------------------------------------------------------------


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_gain == 0 and avg_loss == 0:
        return 50.0
    rs = avg_gain / max(avg_loss, EPSILON)
    return 100.0 - 100.0 / (1.0 + rs)


def rsi(closes: Sequence[float], period: int = RSI_PERIOD) -> Series:
    """Relative Strength Index with Wilder's smoothing.

    The first value sits at index *period*: it averages the gains and
    losses of deltas ``1..period``. Each later value folds in one delta:
      avg = (avg * (period - 1) + current) / period
    """
    if period <= 0:
        raise ValueError("period must be positive")
    n = len(closes)
    out: Series = [None] * n
    if n <= period:
        return out

    deltas = np.diff(np.asarray(closes, dtype=float))
    gains = np.where(deltas > 0, deltas, 0.0)
    losses = np.where(deltas < 0, -deltas, 0.0)

    avg_gain = float(np.mean(gains[:period]))
    avg_loss = float(np.mean(losses[:period]))
    out[period] = _rsi_value(avg_gain, avg_loss)

    for i in range(period + 1, n):
        # deltas[i - 1] is the move from closes[i - 1] to closes[i]
        avg_gain = (avg_gain * (period - 1) + gains[i - 1]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i - 1]) / period
        out[i] = _rsi_value(avg_gain, avg_loss)
    return out


def stochastic_rsi(rsi_values: Sequence[Optional[float]], period: int = STOCH_RSI_PERIOD) -> Series:
    """Stochastic oscillator applied to RSI: position of RSI within its recent range (0-100)."""
    if period <= 0:
        raise ValueError("period must be positive")
    n = len(rsi_values)
    out: Series = [None] * n
    for i in range(period - 1, n):
        window = rsi_values[i - period + 1 : i + 1]
        if any(v is None for v in window):
            continue
        lo, hi = min(window), max(window)
        out[i] = (rsi_values[i] - lo) / max(hi - lo, EPSILON) * 100.0
    return out


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def compute_indicator_set(series: Sequence[PricePoint]) -> list[IndicatorSet]:
    """Compute the full indicator set for every index of *series*."""
    closes = [p.close for p in series]
    ema10 = ema(closes, EMA_SHORT)
    ema20 = ema(closes, EMA_MEDIUM)
    ema50 = ema(closes, EMA_LONG)
    rsi14 = rsi(closes, RSI_PERIOD)
    stoch = stochastic_rsi(rsi14, STOCH_RSI_PERIOD)

    if len(closes) < EMA_LONG:
        logger.debug("Only %d closes, EMA%d unavailable", len(closes), EMA_LONG)

    return [
        IndicatorSet(
            ema10=ema10[i],
            ema20=ema20[i],
            ema50=ema50[i],
            rsi14=rsi14[i],
            stoch_rsi=stoch[i],
        )
        for i in range(len(closes))
    ]


def latest_value(values: Sequence[Optional[float]]) -> Optional[float]:
    """Most recent non-null value, or ``None``."""
    for v in reversed(values):
        if v is not None:
            return v
    return None


def is_flat(ema10: float, ema20: float, ema50: float, tolerance: float = FLAT_TOLERANCE) -> bool:
    """True when EMA10/20 and EMA20/50 are each within *tolerance* of one another."""
    return (
        abs(ema10 - ema20) / max(abs(ema20), EPSILON) < tolerance
        and abs(ema20 - ema50) / max(abs(ema50), EPSILON) < tolerance
    )


def ema_trend(
    ema10: Optional[float], ema20: Optional[float], ema50: Optional[float]
) -> str:
    """Label the EMA stack: ``10>20>50``, ``10<20<50``, ``10>20<50``, ``10<20>50`` or ``flat``.

    Missing EMAs read as ``flat``. Strict ordering wins over flatness so a
    fresh crossover is not hidden by a tight spread.
    """
    if ema10 is None or ema20 is None or ema50 is None:
        return "flat"
    if ema10 > ema20 > ema50:
        return "10>20>50"
    if ema10 < ema20 < ema50:
        return "10<20<50"
    if is_flat(ema10, ema20, ema50):
        return "flat"
    if ema10 > ema20:
        return "10>20<50"
    return "10<20>50"
