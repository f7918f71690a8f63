"""
Tests for the data sources: Yahoo JSON parsing, the live source over a mock
transport, the synthetic fallback and the live/fallback router.
"""

import asyncio

import httpx
import pytest

from conftest import BASE_TS, DAY, FakeSource
from options_scanner.core.errors import DataSourceError, MalformedDataError, ProviderError
from options_scanner.core.models import OptionKind
from options_scanner.integrations.provider_client import RateLimitedClient
from options_scanner.integrations.sources import DataSourceRouter
from options_scanner.integrations.synthetic import SyntheticDataSource
from options_scanner.integrations.yahoo import (
    LiveDataSource,
    parse_history,
    parse_options_chain,
    parse_quote,
)

QUOTE_PAYLOAD = {
    "quoteResponse": {
        "result": [
            {
                "symbol": "AAPL",
                "regularMarketPrice": 101.5,
                "regularMarketTime": BASE_TS,
                "regularMarketVolume": 2_000_000,
                "averageDailyVolume10Day": 1_600_000,
            }
        ]
    }
}

CHART_PAYLOAD = {
    "chart": {
        "result": [
            {
                "timestamp": [BASE_TS, BASE_TS + DAY, BASE_TS + 2 * DAY, BASE_TS + 3 * DAY],
                "indicators": {
                    "quote": [
                        {
                            "open": [None, 9.5, None, 11.8],
                            "high": [None, 10.4, None, 12.3],
                            "low": [None, 9.4, None, 11.5],
                            "close": [None, 10.0, None, 12.0],
                            "volume": [None, 1000, None, 3000],
                        }
                    ]
                },
            }
        ]
    }
}

OPTIONS_PAYLOAD = {
    "optionChain": {
        "result": [
            {
                "expirationDates": [BASE_TS + 4 * DAY, BASE_TS + 11 * DAY],
                "options": [
                    {
                        "expirationDate": BASE_TS + 4 * DAY,
                        "calls": [
                            {"strike": 100, "openInterest": 500, "volume": 40,
                             "impliedVolatility": 0.3, "delta": 0.5, "gamma": 0.03},
                            {"strike": None, "openInterest": 10},
                        ],
                        "puts": [
                            {"strike": 95, "openInterest": {"raw": 700, "fmt": "700"},
                             "impliedVolatility": None},
                        ],
                    }
                ],
            }
        ]
    }
}


# ═══════════════════════════════════════════════════════════════════════════
# TESTS — Yahoo parsing
# ═══════════════════════════════════════════════════════════════════════════


class TestParseQuote:
    def test_missing_ohl_defaults_to_price(self):
        quote = parse_quote("AAPL", QUOTE_PAYLOAD)
        assert quote.close == 101.5
        assert quote.open == quote.high == quote.low == 101.5
        assert quote.volume == 2_000_000
        assert quote.average_volume == 1_600_000
        assert quote.date == "2025-01-06"
        assert quote.source == "live"

    def test_no_price_is_malformed(self):
        payload = {"quoteResponse": {"result": [{"regularMarketPrice": None}]}}
        with pytest.raises(MalformedDataError):
            parse_quote("AAPL", payload)

    def test_empty_result_is_malformed(self):
        with pytest.raises(MalformedDataError):
            parse_quote("AAPL", {"quoteResponse": {"result": []}})

    def test_wrong_envelope_is_malformed(self):
        with pytest.raises(MalformedDataError):
            parse_quote("AAPL", {"error": "nope"})


class TestParseHistory:
    def test_gaps_are_filled_and_leading_gaps_dropped(self):
        series = parse_history("AAPL", CHART_PAYLOAD)
        assert [p.close for p in series] == [10.0, 10.0, 12.0]
        gap = series[1]
        assert gap.open == gap.high == gap.low == 10.0
        assert gap.volume == 0
        assert series[0].date == "2025-01-07"

    def test_no_usable_bars(self):
        payload = {"chart": {"result": [{"timestamp": [BASE_TS],
                                         "indicators": {"quote": [{"close": [None]}]}}]}}
        with pytest.raises(MalformedDataError):
            parse_history("AAPL", payload)

    def test_missing_indicators(self):
        with pytest.raises(MalformedDataError):
            parse_history("AAPL", {"chart": {"result": [{"timestamp": [BASE_TS]}]}})


class TestParseOptionsChain:
    def test_contracts_and_defaults(self):
        chain = parse_options_chain("AAPL", OPTIONS_PAYLOAD)
        assert chain.expiration_date == "2025-01-10"
        assert chain.expiration_dates == ("2025-01-10", "2025-01-17")
        assert len(chain.calls) == 1
        call = chain.calls[0]
        assert call.kind is OptionKind.CALL
        assert call.open_interest == 500
        assert call.gamma == 0.03
        put = chain.puts[0]
        assert put.open_interest == 700
        assert put.implied_volatility == 0.0
        assert put.delta is None and put.gamma is None
        assert chain.strikes == [95.0, 100.0]

    def test_flat_payload_without_options_block(self):
        payload = {"optionChain": {"result": [{
            "expirationDates": [BASE_TS],
            "calls": [{"strike": 50, "openInterest": 1}],
            "puts": [],
        }]}}
        chain = parse_options_chain("XYZ", payload)
        assert len(chain.calls) == 1
        assert chain.expiration_date == "2025-01-06"


# ═══════════════════════════════════════════════════════════════════════════
# TESTS — LiveDataSource
# ═══════════════════════════════════════════════════════════════════════════


def _live(fake_clock, handler) -> LiveDataSource:
    client = RateLimitedClient(
        "https://provider.test",
        calls_per_minute=6000,
        clock=fake_clock,
        sleep=fake_clock.sleep,
        transport=httpx.MockTransport(handler),
    )
    return LiveDataSource(client)


class TestLiveDataSource:
    def test_routes_each_feed(self, fake_clock):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            if request.url.path.startswith("/v7/finance/quote"):
                return httpx.Response(200, json=QUOTE_PAYLOAD)
            if request.url.path.startswith("/v8/finance/chart"):
                return httpx.Response(200, json=CHART_PAYLOAD)
            return httpx.Response(200, json=OPTIONS_PAYLOAD)

        source = _live(fake_clock, handler)

        async def run():
            return (
                await source.get_quote("AAPL"),
                await source.get_history("AAPL"),
                await source.get_options_chain("AAPL"),
            )

        quote, history, chain = asyncio.run(run())
        assert quote.close == 101.5
        assert len(history) == 3
        assert len(chain.puts) == 1
        assert seen == [
            "/v7/finance/quote",
            "/v8/finance/chart/AAPL",
            "/v7/finance/options/AAPL",
        ]

    def test_unavailable_after_auth_failure(self, fake_clock):
        source = _live(fake_clock, lambda request: httpx.Response(401, json={}))
        assert source.available
        with pytest.raises(ProviderError):
            asyncio.run(source.get_quote("AAPL"))
        assert not source.available


# ═══════════════════════════════════════════════════════════════════════════
# TESTS — SyntheticDataSource
# ═══════════════════════════════════════════════════════════════════════════


class TestSyntheticDataSource:
    def _source(self):
        return SyntheticDataSource(seed=1, clock=lambda: BASE_TS)

    def test_history_is_deterministic_within_a_day(self):
        source = self._source()
        first = asyncio.run(source.get_history("AAPL"))
        second = asyncio.run(source.get_history("AAPL"))
        assert first == second
        assert len(first) >= 60
        assert first[-1].date == "2025-01-06"
        assert all(p.low <= min(p.open, p.close) and p.high >= max(p.open, p.close) for p in first)

    def test_symbols_differ(self):
        source = self._source()
        a = asyncio.run(source.get_history("AAPL"))
        b = asyncio.run(source.get_history("MSFT"))
        assert a[-1].close != b[-1].close

    def test_quote_is_tagged_synthetic(self):
        quote = asyncio.run(self._source().get_quote("SPY"))
        assert quote.source == "synthetic"
        assert quote.close > 0
        assert quote.low <= quote.close <= quote.high

    def test_chain_shape(self):
        chain = asyncio.run(self._source().get_options_chain("SPY"))
        assert chain.source == "synthetic"
        assert len(chain.calls) == len(chain.puts) == 11
        assert len(chain.expiration_dates) == 4
        assert chain.expiration_date == chain.expiration_dates[0]
        assert all(c.delta is not None and c.gamma is not None for c in chain.calls)
        assert all(p.delta < 0 for p in chain.puts)


# ═══════════════════════════════════════════════════════════════════════════
# TESTS — DataSourceRouter
# ═══════════════════════════════════════════════════════════════════════════


class TestDataSourceRouter:
    def _router(self):
        live = FakeSource(name="live", price=100.0)
        fallback = FakeSource(name="synthetic", price=50.0)
        return DataSourceRouter(live, fallback), live, fallback

    def test_live_when_available(self):
        router, live, fallback = self._router()
        quote = asyncio.run(router.get_quote("AAPL"))
        assert quote.source == "live"
        assert router.stats() == {"active": "live", "live_calls": 1, "fallback_calls": 0}
        assert fallback.calls == []

    def test_live_failure_falls_through(self, provider_error):
        router, live, fallback = self._router()
        live.fail = provider_error
        quote = asyncio.run(router.get_quote("AAPL"))
        assert quote.source == "synthetic"
        assert live.calls == ["quote"]
        assert router.fallback_calls == 1

    def test_degraded_live_is_skipped(self):
        router, live, fallback = self._router()
        live.available = False
        chain = asyncio.run(router.get_options_chain("AAPL"))
        assert chain is fallback.chain
        assert live.calls == []
        assert router.active == "synthetic"

    def test_every_source_failing(self, provider_error):
        router, live, fallback = self._router()
        live.fail = provider_error
        fallback.fail = RuntimeError("generator broke")
        with pytest.raises(DataSourceError, match="failed on every source"):
            asyncio.run(router.get_history("AAPL"))
