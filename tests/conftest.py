"""
Shared pytest fixtures for the options scanner test suite.

Provides synthetic price series, options chains, a controllable clock and
in-memory stand-ins for the store and data sources, so every test module
can exercise the pipeline without touching the network or the disk.
"""

import asyncio
import os
from dataclasses import replace

# Rate limiting would otherwise throttle the API tests.
os.environ.setdefault("RATE_LIMIT_ENABLED", "0")

from typing import Optional  # noqa: E402

import numpy as np  # noqa: E402
import pytest  # noqa: E402

from options_scanner.core.errors import ProviderError  # noqa: E402
from options_scanner.core.models import (  # noqa: E402
    OptionContract,
    OptionKind,
    OptionsChain,
    PricePoint,
    Quote,
    epoch_to_date,
)

DAY = 86_400
# 2025-01-06 20:00 UTC, a Monday after the close
BASE_TS = 1_736_193_600


# ---------------------------------------------------------------------------
# Synthetic data generators
# ---------------------------------------------------------------------------


def make_series(closes, start_ts: int = BASE_TS, volume: int = 1_000_000) -> list[PricePoint]:
    """Daily PricePoints with the given closes, one day apart."""
    series = []
    for i, close in enumerate(closes):
        ts = start_ts + i * DAY
        close = float(close)
        series.append(
            PricePoint(
                date=epoch_to_date(ts),
                timestamp=ts,
                open=close,
                high=close * 1.005,
                low=close * 0.995,
                close=close,
                volume=volume,
            )
        )
    return series


def _random_walk_series(
    n: int = 120,
    start_price: float = 100.0,
    drift: float = 0.0,
    volatility: float = 0.01,
    seed: int = 42,
) -> list[PricePoint]:
    """Geometric random walk of *n* daily bars."""
    rng = np.random.default_rng(seed)
    returns = rng.normal(drift, volatility, n)
    close = start_price * np.exp(np.cumsum(returns))
    spread = close * rng.uniform(0.002, 0.01, n)
    volume = rng.poisson(1_000_000, n)

    series = []
    for i in range(n):
        ts = BASE_TS + i * DAY
        c = round(float(close[i]), 2)
        series.append(
            PricePoint(
                date=epoch_to_date(ts),
                timestamp=ts,
                open=c,
                high=round(c + float(spread[i]), 2),
                low=round(c - float(spread[i]), 2),
                close=c,
                volume=int(volume[i]),
            )
        )
    return series


def make_contract(kind: str, strike: float, oi: int = 0, volume: int = 0, iv: float = 0.0,
                  delta: Optional[float] = None, gamma: Optional[float] = None) -> OptionContract:
    return OptionContract(
        kind=OptionKind(kind),
        strike=float(strike),
        open_interest=oi,
        volume=volume,
        implied_volatility=iv,
        delta=delta,
        gamma=gamma,
    )


def make_chain(calls=(), puts=(), symbol: str = "TEST", source: str = "live") -> OptionsChain:
    return OptionsChain(
        symbol=symbol,
        expiration_date="2025-01-17",
        calls=tuple(calls),
        puts=tuple(puts),
        expiration_dates=("2025-01-17", "2025-01-24"),
        source=source,
    )


def _balanced_chain(spot: float = 100.0, symbol: str = "TEST") -> OptionsChain:
    """Eleven strikes around *spot*, equal call and put open interest."""
    calls, puts = [], []
    for i in range(-5, 6):
        strike = spot + i * 5
        decay = 1.0 - abs(i) * 0.15
        calls.append(make_contract("call", strike, oi=int(2_000 * decay), volume=int(500 * decay),
                                   iv=0.25, delta=0.5, gamma=0.02))
        puts.append(make_contract("put", strike, oi=int(2_000 * decay), volume=int(500 * decay),
                                  iv=0.25, delta=-0.5, gamma=0.02))
    return make_chain(calls, puts, symbol=symbol)


# ---------------------------------------------------------------------------
# Controllable time
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock whose ``sleep`` advances time instead of waiting."""

    def __init__(self, start: float = 1_000.0):
        self.now = float(start)
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(seconds, 0.0)
        await asyncio.sleep(0)


async def never_wake(_seconds: float) -> None:
    """Sleep replacement that parks the caller until it is cancelled."""
    await asyncio.Event().wait()


# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------


class FakeSource:
    """Scriptable ``DataSource``: fixed payloads, optional failure, optional gate."""

    def __init__(self, name: str = "live", price: float = 100.0, series=None, chain=None,
                 clock=None):
        self.name = name
        self.available = True
        self.price = price
        self.series = series if series is not None else _random_walk_series(n=80, seed=7)
        self.chain = chain if chain is not None else replace(_balanced_chain(price), source=name)
        self.fail: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.calls: list[str] = []
        self._clock = clock or (lambda: BASE_TS)

    async def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail is not None:
            raise self.fail

    async def get_quote(self, symbol: str) -> Quote:
        await self._enter("quote")
        ts = int(self._clock())
        return Quote(
            symbol=symbol,
            date=epoch_to_date(ts),
            timestamp=ts,
            open=self.price,
            high=self.price * 1.01,
            low=self.price * 0.99,
            close=self.price,
            volume=1_200_000,
            average_volume=1_000_000.0,
            source=self.name,
        )

    async def get_history(self, symbol: str, period: str = "3mo", interval: str = "1d"):
        await self._enter("history")
        return list(self.series)

    async def get_options_chain(self, symbol: str, expiration=None) -> OptionsChain:
        await self._enter("options")
        return self.chain


class FakeStore:
    """Records every write as ``(method, args)``."""

    def __init__(self):
        self.writes: list[tuple[str, tuple]] = []
        self.initialised = False

    def init_db(self) -> None:
        self.initialised = True

    def _record(self, name: str, *args) -> None:
        self.writes.append((name, args))

    def methods(self) -> list[str]:
        return [name for name, _ in self.writes]

    def save_stock(self, symbol, point):
        self._record("save_stock", symbol, point)

    def save_stock_series(self, symbol, series):
        self._record("save_stock_series", symbol, series)
        return len(series)

    def save_indicator_series(self, symbol, series, indicators):
        self._record("save_indicator_series", symbol, series, indicators)
        return len(series)

    def save_technical_indicators(self, symbol, point, indicators):
        self._record("save_technical_indicators", symbol, point, indicators)

    def save_options_data(self, symbol, chain, timestamp, on_date):
        self._record("save_options_data", symbol, chain, timestamp, on_date)
        return len(chain.strikes)

    def save_market_sentiment(self, symbol, on_date, timestamp, metrics, iv_percentile):
        self._record("save_market_sentiment", symbol, on_date, timestamp, metrics, iv_percentile)

    def save_trade_setup(self, setup):
        self._record("save_trade_setup", setup)

    def save_daily_summary(self, summary):
        self._record("save_daily_summary", summary)


# ---------------------------------------------------------------------------
# Pytest fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def random_series() -> list[PricePoint]:
    """120-bar random-walk series."""
    return _random_walk_series(n=120, seed=42)


@pytest.fixture()
def trending_series() -> list[PricePoint]:
    """120-bar series with a clear upward drift."""
    return _random_walk_series(n=120, drift=0.01, volatility=0.004, seed=123)


@pytest.fixture()
def constant_series() -> list[PricePoint]:
    return make_series([100.0] * 60)


@pytest.fixture()
def balanced_chain() -> OptionsChain:
    return _balanced_chain(100.0)


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture()
def provider_error() -> ProviderError:
    return ProviderError("upstream unavailable", status_code=503, attempts=3)
