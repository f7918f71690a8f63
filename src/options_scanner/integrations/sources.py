"""
Data-source capability and the live/synthetic router.

The collector never decides between live and fallback data itself; it asks
the ``DataSourceRouter``, which consults the provider circuit breaker once
per call:

  - breaker closed / half-open → live source; any ``ScannerError`` from it
    falls through to the fallback for that call
  - breaker open               → fallback directly
  - fallback also fails        → ``DataSourceError``
"""

import logging
from typing import Awaitable, Callable, Optional, Protocol, TypeVar

from options_scanner.core.errors import DataSourceError, ScannerError
from options_scanner.core.models import OptionsChain, PricePoint, Quote

logger = logging.getLogger("integrations.sources")

T = TypeVar("T")


class DataSource(Protocol):
    name: str

    @property
    def available(self) -> bool: ...

    async def get_quote(self, symbol: str) -> Quote: ...

    async def get_history(
        self, symbol: str, period: str = "3mo", interval: str = "1d"
    ) -> list[PricePoint]: ...

    async def get_options_chain(
        self, symbol: str, expiration: Optional[int] = None
    ) -> OptionsChain: ...


class DataSourceRouter:
    def __init__(self, live: DataSource, fallback: DataSource):
        self.live = live
        self.fallback = fallback
        self.live_calls = 0
        self.fallback_calls = 0

    @property
    def active(self) -> str:
        return self.live.name if self.live.available else self.fallback.name

    async def get_quote(self, symbol: str) -> Quote:
        return await self._route("quote", symbol, lambda s: s.get_quote(symbol))

    async def get_history(
        self, symbol: str, period: str = "3mo", interval: str = "1d"
    ) -> list[PricePoint]:
        return await self._route(
            "history", symbol, lambda s: s.get_history(symbol, period, interval)
        )

    async def get_options_chain(
        self, symbol: str, expiration: Optional[int] = None
    ) -> OptionsChain:
        return await self._route(
            "options", symbol, lambda s: s.get_options_chain(symbol, expiration)
        )

    async def _route(
        self,
        operation: str,
        symbol: str,
        call: Callable[[DataSource], Awaitable[T]],
    ) -> T:
        live_error: Optional[Exception] = None
        if self.live.available:
            try:
                result = await call(self.live)
                self.live_calls += 1
                return result
            except ScannerError as exc:
                live_error = exc
                logger.warning(
                    "Live %s for %s failed, using %s: %s",
                    operation,
                    symbol,
                    self.fallback.name,
                    exc,
                )
        else:
            logger.debug("Provider degraded, %s for %s from %s", operation, symbol, self.fallback.name)

        try:
            result = await call(self.fallback)
        except Exception as exc:
            raise DataSourceError(
                f"{operation} for {symbol} failed on every source "
                f"(live: {live_error or 'skipped'}; {self.fallback.name}: {exc})"
            ) from exc
        self.fallback_calls += 1
        return result

    def stats(self) -> dict[str, object]:
        return {
            "active": self.active,
            "live_calls": self.live_calls,
            "fallback_calls": self.fallback_calls,
        }
