"""
Tests for the technical indicator engine (EMA, RSI, Stochastic RSI).
"""

import math

import pytest

from conftest import make_series
from options_scanner.analysis.indicators import (
    compute_indicator_set,
    ema,
    ema_trend,
    is_flat,
    latest_value,
    rsi,
    stochastic_rsi,
)


def _leading_nones(values) -> int:
    count = 0
    for v in values:
        if v is not None:
            break
        count += 1
    return count


# ═══════════════════════════════════════════════════════════════════════════
# TESTS — EMA
# ═══════════════════════════════════════════════════════════════════════════


class TestEMA:
    @pytest.mark.parametrize("period", [10, 20, 50])
    def test_constant_series_is_constant(self, period):
        out = ema([100.0] * 60, period)
        assert _leading_nones(out) == period - 1
        assert all(v == 100.0 for v in out[period - 1 :])

    def test_seeded_with_sma_then_smoothed(self):
        out = ema([1, 2, 3, 4, 5], 3)
        assert out[:2] == [None, None]
        assert out[2] == pytest.approx(2.0)
        assert out[3] == pytest.approx(3.0)
        assert out[4] == pytest.approx(4.0)

    def test_short_series_all_none(self):
        assert ema([1.0, 2.0], 10) == [None, None]

    def test_invalid_period(self):
        with pytest.raises(ValueError):
            ema([1.0, 2.0], 0)

    def test_follows_trend(self, trending_series):
        closes = [p.close for p in trending_series]
        fast = ema(closes, 10)[-1]
        slow = ema(closes, 50)[-1]
        assert fast > slow


# ═══════════════════════════════════════════════════════════════════════════
# TESTS — RSI
# ═══════════════════════════════════════════════════════════════════════════


class TestRSI:
    def test_strictly_increasing_reads_near_100(self):
        out = rsi([100.0 + i for i in range(40)], 14)
        assert _leading_nones(out) == 14
        assert all(v >= 95 for v in out[14:])

    def test_strictly_decreasing_reads_near_0(self):
        out = rsi([200.0 - i for i in range(40)], 14)
        assert all(v <= 5 for v in out[14:])

    def test_flat_series_reads_50(self):
        out = rsi([50.0] * 30, 14)
        assert out[14:] == [50.0] * 16

    def test_needs_period_plus_one_closes(self):
        assert rsi([1.0] * 14, 14) == [None] * 14
        assert rsi([1.0] * 15, 14)[14] == 50.0

    def test_values_bounded(self, random_series):
        out = rsi([p.close for p in random_series])
        values = [v for v in out if v is not None]
        assert values
        assert all(0.0 <= v <= 100.0 for v in values)
        assert not any(math.isnan(v) for v in values)

    def test_wilder_smoothing_first_value(self):
        # 14 deltas: seven +1 and seven -1 → avg gain == avg loss → 50
        closes = [100.0]
        for i in range(14):
            closes.append(closes[-1] + (1.0 if i % 2 == 0 else -1.0))
        assert rsi(closes, 14)[14] == pytest.approx(50.0)


# ═══════════════════════════════════════════════════════════════════════════
# TESTS — Stochastic RSI
# ═══════════════════════════════════════════════════════════════════════════


class TestStochasticRSI:
    def test_first_value_after_full_rsi_window(self, random_series):
        rsi_values = rsi([p.close for p in random_series], 14)
        out = stochastic_rsi(rsi_values, 14)
        assert _leading_nones(out) == 14 + 13

    def test_bounded_0_to_100(self, random_series):
        out = stochastic_rsi(rsi([p.close for p in random_series]))
        values = [v for v in out if v is not None]
        assert all(0.0 <= v <= 100.0 for v in values)

    def test_flat_rsi_does_not_divide_by_zero(self):
        out = stochastic_rsi([50.0] * 20, 14)
        assert out[13:] == [0.0] * 7

    def test_top_of_range_is_100(self):
        out = stochastic_rsi([10.0, 20.0, 30.0], 3)
        assert out[2] == pytest.approx(100.0)


# ═══════════════════════════════════════════════════════════════════════════
# TESTS — aggregation and trend labels
# ═══════════════════════════════════════════════════════════════════════════


class TestIndicatorSet:
    def test_one_set_per_bar(self, random_series):
        sets = compute_indicator_set(random_series)
        assert len(sets) == len(random_series)
        assert sets[-1].complete
        assert not sets[0].complete

    def test_leading_none_counts(self, random_series):
        sets = compute_indicator_set(random_series)
        assert _leading_nones([s.ema10 for s in sets]) == 9
        assert _leading_nones([s.ema20 for s in sets]) == 19
        assert _leading_nones([s.ema50 for s in sets]) == 49
        assert _leading_nones([s.rsi14 for s in sets]) == 14

    def test_constant_series(self, constant_series):
        latest = compute_indicator_set(constant_series)[-1]
        assert latest.ema10 == latest.ema20 == latest.ema50 == 100.0
        assert latest.rsi14 == 50.0

    def test_empty_series(self):
        assert compute_indicator_set([]) == []

    def test_short_series_has_no_ema50(self):
        sets = compute_indicator_set(make_series(range(100, 130)))
        assert sets[-1].ema50 is None
        assert sets[-1].ema10 is not None

    def test_latest_value(self):
        assert latest_value([None, 1.0, 2.0, None]) == 2.0
        assert latest_value([None, None]) is None


class TestEmaTrend:
    @pytest.mark.parametrize(
        "emas, label",
        [
            ((110.0, 105.0, 100.0), "10>20>50"),
            ((90.0, 95.0, 100.0), "10<20<50"),
            ((105.0, 95.0, 100.0), "10>20<50"),
            ((95.0, 105.0, 100.0), "10<20>50"),
            ((100.2, 100.0, 100.3), "flat"),
            ((None, 100.0, 100.0), "flat"),
        ],
    )
    def test_labels(self, emas, label):
        assert ema_trend(*emas) == label

    def test_strict_order_wins_over_flat(self):
        assert is_flat(100.2, 100.1, 100.0)
        assert ema_trend(100.2, 100.1, 100.0) == "10>20>50"

    def test_is_flat_tolerance(self):
        assert is_flat(100.5, 100.0, 99.5)
        assert not is_flat(102.0, 100.0, 100.0)
