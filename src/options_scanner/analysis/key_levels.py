"""
Support and resistance levels from recent price action.

Two levels on each side of the current price, rounded to cents:

  support    = [min, min + (price − min) · 0.33]
  resistance = [price + (max − price) · 0.33, max]

where ``min`` / ``max`` span the closes of the supplied history. When the
history is empty, or the price sits outside the historical range so one
side would collapse onto the wrong side of price, the fixed
``0.95 / 0.97`` and ``1.03 / 1.05`` multiples of price are used instead.
"""

import logging
from typing import Optional, Sequence

from options_scanner.core.models import KeyLevels, PricePoint

logger = logging.getLogger("key_levels")

RETRACE = 0.33


def _cents(value: float) -> float:
    return round(value * 100) / 100


def fallback_levels(price: float, max_pain: Optional[float] = None) -> KeyLevels:
    return KeyLevels(
        support=(_cents(price * 0.95), _cents(price * 0.97)),
        resistance=(_cents(price * 1.03), _cents(price * 1.05)),
        max_pain=max_pain if max_pain is not None else _cents(price),
    )


def compute_key_levels(
    price: float,
    series: Sequence[PricePoint],
    max_pain: Optional[float] = None,
) -> KeyLevels:
    """Key levels for *price* given the history *series*.

    *max_pain* comes from the options chain when one is available; without
    it the midpoint between the inner support and resistance is reported.
    """
    closes = [p.close for p in series if p.close is not None]
    if not closes:
        logger.debug("No closes for key levels, using fallback multiples")
        return fallback_levels(price, max_pain)

    lo, hi = min(closes), max(closes)
    if not lo < price < hi:
        return fallback_levels(price, max_pain)

    support = (_cents(lo), _cents(lo + (price - lo) * RETRACE))
    resistance = (_cents(price + (hi - price) * RETRACE), _cents(hi))
    if max_pain is None:
        max_pain = _cents((support[1] + resistance[0]) / 2)
    return KeyLevels(support=support, resistance=resistance, max_pain=max_pain)


def nearest_below(price: float, levels: Sequence[float]) -> Optional[float]:
    below = [lvl for lvl in levels if lvl < price]
    return max(below) if below else None


def nearest_above(price: float, levels: Sequence[float]) -> Optional[float]:
    above = [lvl for lvl in levels if lvl > price]
    return min(above) if above else None


def within(price: float, level: float, tolerance: float = 0.02) -> bool:
    if level == 0:
        return False
    return abs(price - level) / abs(level) <= tolerance
