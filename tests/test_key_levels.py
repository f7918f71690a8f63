"""
Tests for support / resistance levels.
"""

import pytest

from conftest import make_series
from options_scanner.analysis.key_levels import (
    compute_key_levels,
    fallback_levels,
    nearest_above,
    nearest_below,
    within,
)


class TestComputeKeyLevels:
    def test_levels_from_history_range(self):
        series = make_series(range(90, 111))
        levels = compute_key_levels(100.0, series)
        assert levels.support == (90.0, 93.3)
        assert levels.resistance == (103.3, 110.0)
        assert levels.max_pain == pytest.approx(98.3)

    def test_supplied_max_pain_is_kept(self):
        levels = compute_key_levels(100.0, make_series(range(90, 111)), max_pain=105.0)
        assert levels.max_pain == 105.0

    def test_support_below_and_resistance_above_price(self, random_series):
        price = random_series[-1].close
        levels = compute_key_levels(price, random_series)
        assert all(s <= price for s in levels.support)
        assert all(r >= price for r in levels.resistance)
        assert list(levels.support) == sorted(levels.support)
        assert list(levels.resistance) == sorted(levels.resistance)

    def test_empty_history_uses_fallback(self):
        levels = compute_key_levels(100.0, [])
        assert levels.support == (95.0, 97.0)
        assert levels.resistance == (103.0, 105.0)
        assert levels.max_pain == 100.0

    def test_price_above_range_uses_fallback(self):
        levels = compute_key_levels(200.0, make_series(range(90, 111)))
        assert levels == fallback_levels(200.0)

    def test_to_dict_shape(self):
        payload = fallback_levels(50.0, max_pain=49.0).to_dict()
        assert payload == {"support": [47.5, 48.5], "resistance": [51.5, 52.5], "maxPain": 49.0}


class TestLevelHelpers:
    def test_nearest_below_and_above(self):
        levels = [90.0, 95.0, 105.0, 110.0]
        assert nearest_below(100.0, levels) == 95.0
        assert nearest_above(100.0, levels) == 105.0
        assert nearest_below(80.0, levels) is None
        assert nearest_above(120.0, levels) is None

    def test_within_is_inclusive(self):
        assert within(102.0, 100.0)
        assert within(98.0, 100.0)
        assert not within(102.5, 100.0)

    def test_within_zero_level(self):
        assert not within(1.0, 0.0)
