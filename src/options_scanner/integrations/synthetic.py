"""
Synthetic fallback data source.

Produces quotes, daily history and an options chain with the same shape as
``LiveDataSource`` so the collector keeps classifying while the provider is
degraded. Prices follow a geometric random walk seeded per symbol; the
chain is a symmetric ladder of strikes around spot with open interest
decaying away from the money.
"""

import time
import zlib
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import numpy as np

from options_scanner.core.models import (
    OptionContract,
    OptionKind,
    OptionsChain,
    PricePoint,
    Quote,
    epoch_to_date,
)

DAY = 86_400

_PERIOD_DAYS = {
    "1mo": 30,
    "3mo": 90,
    "6mo": 180,
    "1y": 365,
    "2y": 730,
}


def _symbol_seed(symbol: str) -> int:
    return zlib.crc32(symbol.upper().encode("utf-8"))


def _base_price(symbol: str) -> float:
    return 50.0 + (_symbol_seed(symbol) % 45_000) / 100.0


def _strike_step(price: float) -> float:
    if price < 50:
        return 1.0
    if price < 200:
        return 5.0
    return 10.0


class SyntheticDataSource:
    """``DataSource`` generating plausible market data without the network."""

    name = "synthetic"
    available = True

    def __init__(
        self,
        seed: Optional[int] = None,
        volatility: float = 0.02,
        clock: Callable[[], float] = time.time,
    ):
        self.seed = seed
        self.volatility = volatility
        self._clock = clock

    def _rng(self, symbol: str, salt: int = 0) -> np.random.Generator:
        base = _symbol_seed(symbol) if self.seed is None else self.seed + _symbol_seed(symbol)
        # Re-seeded per trading day so repeated calls within a day agree.
        day = int(self._clock() // DAY)
        return np.random.default_rng([base, day, salt])

    def _closes(self, symbol: str, n: int) -> np.ndarray:
        rng = self._rng(symbol)
        returns = rng.normal(0.0005, self.volatility, n)
        return _base_price(symbol) * np.exp(np.cumsum(returns))

    async def get_history(
        self, symbol: str, period: str = "3mo", interval: str = "1d"
    ) -> list[PricePoint]:
        days = _PERIOD_DAYS.get(period, 90)
        n = max(60, int(days * 5 / 7))
        rng = self._rng(symbol, salt=1)
        close = self._closes(symbol, n)
        spread = close * rng.uniform(0.002, 0.02, n)
        high = close + rng.uniform(0, 1, n) * spread
        low = close - rng.uniform(0, 1, n) * spread
        opn = close + rng.uniform(-0.5, 0.5, n) * spread
        high = np.maximum(high, np.maximum(opn, close))
        low = np.minimum(low, np.minimum(opn, close))
        volume = rng.integers(500_000, 20_000_000, n)

        today = datetime.fromtimestamp(self._clock(), tz=timezone.utc).replace(
            hour=20, minute=0, second=0, microsecond=0
        )
        series = []
        for i in range(n):
            ts = int((today - timedelta(days=n - 1 - i)).timestamp())
            series.append(
                PricePoint(
                    date=epoch_to_date(ts),
                    timestamp=ts,
                    open=round(float(opn[i]), 2),
                    high=round(float(high[i]), 2),
                    low=round(float(low[i]), 2),
                    close=round(float(close[i]), 2),
                    volume=int(volume[i]),
                )
            )
        return series

    async def get_quote(self, symbol: str) -> Quote:
        history = await self.get_history(symbol)
        last = history[-1]
        rng = self._rng(symbol, salt=int(self._clock()))
        price = round(last.close * (1 + rng.normal(0, self.volatility / 10)), 2)
        average_volume = float(np.mean([p.volume for p in history[-20:]]))
        now = int(self._clock())
        return Quote(
            symbol=symbol,
            date=epoch_to_date(now),
            timestamp=now,
            open=last.open,
            high=max(last.high, price),
            low=min(last.low, price),
            close=price,
            volume=last.volume,
            average_volume=average_volume,
            source=self.name,
        )

    async def get_options_chain(
        self, symbol: str, expiration: Optional[int] = None
    ) -> OptionsChain:
        quote = await self.get_quote(symbol)
        price = quote.close
        rng = self._rng(symbol, salt=2)
        step = _strike_step(price)
        atm = round(price / step) * step
        base_iv = float(rng.uniform(0.2, 0.6))

        calls, puts = [], []
        for i in range(-5, 6):
            strike = round(atm + i * step, 2)
            if strike <= 0:
                continue
            decay = max(0.1, 1.0 - abs(i) * 0.15)
            skew = 0.01 * abs(i)
            gamma = float(rng.uniform(0.02, 0.05)) * decay
            moneyness = (price - strike) / price
            calls.append(
                OptionContract(
                    kind=OptionKind.CALL,
                    strike=strike,
                    open_interest=int(rng.uniform(5_000, 15_000) * decay),
                    volume=int(rng.uniform(800, 3_500) * decay),
                    implied_volatility=round(base_iv + skew, 4),
                    delta=round(float(np.clip(0.5 + moneyness * 5, 0.01, 0.99)), 4),
                    gamma=round(gamma, 5),
                )
            )
            puts.append(
                OptionContract(
                    kind=OptionKind.PUT,
                    strike=strike,
                    open_interest=int(rng.uniform(5_000, 15_000) * decay),
                    volume=int(rng.uniform(800, 3_500) * decay),
                    implied_volatility=round(base_iv + skew * 1.5, 4),
                    delta=round(float(np.clip(-0.5 + moneyness * 5, -0.99, -0.01)), 4),
                    gamma=round(gamma, 5),
                )
            )

        now = int(self._clock())
        # Monthly-style expirations: next four Fridays.
        first_friday = now + ((4 - datetime.fromtimestamp(now, tz=timezone.utc).weekday()) % 7 or 7) * DAY
        expirations = tuple(epoch_to_date(first_friday + w * 7 * DAY) for w in range(4))
        chosen = epoch_to_date(expiration) if expiration else expirations[0]
        return OptionsChain(
            symbol=symbol,
            expiration_date=chosen,
            calls=tuple(calls),
            puts=tuple(puts),
            expiration_dates=expirations,
            source=self.name,
        )
