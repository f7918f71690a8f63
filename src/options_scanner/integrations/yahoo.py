"""
Live data source: Yahoo-Finance-shaped JSON normalised into domain records.

Endpoints (relative to ``PROVIDER_BASE_URL``):
  - ``/v7/finance/quote?symbols=<SYM>``      → ``Quote``
  - ``/v8/finance/chart/<SYM>``              → ``list[PricePoint]``
  - ``/v7/finance/options/<SYM>[?date=ts]``  → ``OptionsChain``

The ``parse_*`` functions are the only place raw provider JSON is read.
Missing or null fields are filled with safe defaults:

  - quote open/high/low missing  → last price
  - bar close missing            → previous bar's close (leading gaps dropped)
  - bar open/high/low missing    → that bar's close
  - volume / open interest       → 0
  - implied volatility           → 0.0
  - delta / gamma                → None (contract is left out of GEX)

A payload without a usable price raises ``MalformedDataError``.
"""

import logging
import math
from typing import Any, Optional

from options_scanner.core.errors import MalformedDataError
from options_scanner.core.models import (
    OptionContract,
    OptionKind,
    OptionsChain,
    PricePoint,
    Quote,
    epoch_to_date,
)
from options_scanner.integrations.provider_client import RateLimitedClient

logger = logging.getLogger("integrations.yahoo")

QUOTE_PATH = "/v7/finance/quote"
CHART_PATH = "/v8/finance/chart/{symbol}"
OPTIONS_PATH = "/v7/finance/options/{symbol}"


def _num(value: Any) -> Optional[float]:
    """Coerce a JSON value to float; ``None`` for null, NaN or garbage."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, dict):
        # Yahoo's formatted mode wraps numbers as {"raw": 1.2, "fmt": "1.20"}
        value = value.get("raw")
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _int(value: Any) -> int:
    number = _num(value)
    return int(number) if number is not None else 0


def _first_result(payload: Any, envelope: str) -> dict:
    try:
        results = payload[envelope]["result"]
    except (KeyError, TypeError) as exc:
        raise MalformedDataError(f"missing {envelope}.result") from exc
    if not results:
        raise MalformedDataError(f"empty {envelope}.result")
    return results[0]


def parse_quote(symbol: str, payload: Any) -> Quote:
    row = _first_result(payload, "quoteResponse")
    price = _num(row.get("regularMarketPrice"))
    if price is None:
        raise MalformedDataError(f"quote for {symbol} has no regularMarketPrice")
    timestamp = _int(row.get("regularMarketTime"))
    open_ = _num(row.get("regularMarketOpen"))
    high = _num(row.get("regularMarketDayHigh"))
    low = _num(row.get("regularMarketDayLow"))
    average_volume = _num(
        row.get("averageDailyVolume10Day") or row.get("averageDailyVolume3Month")
    )
    return Quote(
        symbol=symbol,
        date=epoch_to_date(timestamp),
        timestamp=timestamp,
        open=price if open_ is None else open_,
        high=price if high is None else high,
        low=price if low is None else low,
        close=price,
        volume=_int(row.get("regularMarketVolume")),
        average_volume=average_volume,
        source="live",
    )


def parse_history(symbol: str, payload: Any) -> list[PricePoint]:
    result = _first_result(payload, "chart")
    timestamps = result.get("timestamp") or []
    try:
        bars = result["indicators"]["quote"][0]
    except (KeyError, IndexError, TypeError) as exc:
        raise MalformedDataError(f"chart for {symbol} has no quote indicators") from exc

    def column(name: str) -> list:
        values = bars.get(name) or []
        return list(values) + [None] * (len(timestamps) - len(values))

    opens, highs, lows = column("open"), column("high"), column("low")
    closes, volumes = column("close"), column("volume")

    series: list[PricePoint] = []
    previous_close: Optional[float] = None
    for i, ts in enumerate(timestamps):
        close = _num(closes[i])
        if close is None:
            close = previous_close
        if close is None:
            continue
        open_, high, low = _num(opens[i]), _num(highs[i]), _num(lows[i])
        series.append(
            PricePoint(
                date=epoch_to_date(int(ts)),
                timestamp=int(ts),
                open=close if open_ is None else open_,
                high=close if high is None else high,
                low=close if low is None else low,
                close=close,
                volume=_int(volumes[i]),
            )
        )
        previous_close = close

    if not series:
        raise MalformedDataError(f"chart for {symbol} contains no usable bars")
    return series


def _parse_contract(kind: OptionKind, raw: dict) -> Optional[OptionContract]:
    strike = _num(raw.get("strike"))
    if strike is None:
        return None
    return OptionContract(
        kind=kind,
        strike=strike,
        open_interest=_int(raw.get("openInterest")),
        volume=_int(raw.get("volume")),
        implied_volatility=_num(raw.get("impliedVolatility")) or 0.0,
        delta=_num(raw.get("delta")),
        gamma=_num(raw.get("gamma")),
    )


def parse_options_chain(symbol: str, payload: Any) -> OptionsChain:
    result = _first_result(payload, "optionChain")
    expirations = [int(ts) for ts in result.get("expirationDates") or [] if _num(ts) is not None]

    # Contracts normally sit under options[0]; older payloads carry them flat.
    block = (result.get("options") or [result])[0] or {}
    expiration_ts = _num(block.get("expirationDate"))
    if expiration_ts is None and expirations:
        expiration_ts = expirations[0]

    calls = tuple(
        c for c in (_parse_contract(OptionKind.CALL, r) for r in block.get("calls") or []) if c
    )
    puts = tuple(
        p for p in (_parse_contract(OptionKind.PUT, r) for r in block.get("puts") or []) if p
    )
    return OptionsChain(
        symbol=symbol,
        expiration_date=epoch_to_date(expiration_ts) if expiration_ts is not None else "",
        calls=calls,
        puts=puts,
        expiration_dates=tuple(epoch_to_date(ts) for ts in expirations),
        source="live",
    )


class LiveDataSource:
    """``DataSource`` backed by the shared ``RateLimitedClient``."""

    name = "live"

    def __init__(self, client: RateLimitedClient):
        self.client = client

    @property
    def available(self) -> bool:
        return not self.client.degraded

    async def get_quote(self, symbol: str) -> Quote:
        payload = await self.client.request(
            QUOTE_PATH, {"symbols": symbol, "formatted": "false"}
        )
        return parse_quote(symbol, payload)

    async def get_history(
        self, symbol: str, period: str = "3mo", interval: str = "1d"
    ) -> list[PricePoint]:
        payload = await self.client.request(
            CHART_PATH.format(symbol=symbol),
            {"range": period, "interval": interval, "includePrePost": "false"},
        )
        series = parse_history(symbol, payload)
        logger.debug("History for %s: %d bars", symbol, len(series))
        return series

    async def get_options_chain(
        self, symbol: str, expiration: Optional[int] = None
    ) -> OptionsChain:
        params = {"date": expiration} if expiration else None
        payload = await self.client.request(OPTIONS_PATH.format(symbol=symbol), params)
        return parse_options_chain(symbol, payload)
