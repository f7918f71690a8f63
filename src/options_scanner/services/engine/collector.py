"""
Per-symbol market-data collector.

``CollectorService`` owns every piece of mutable pipeline state: the
response cache, the source router (live provider behind a circuit breaker,
synthetic fallback), the persistence store and one supervised task set per
symbol. Nothing is module-global, so tests build a service with fakes and
throw it away.

Each tracked symbol runs four independent loops:

  quote       every QUOTE_INTERVAL       (20 s)   latest price
  historical  every HISTORICAL_INTERVAL  (30 min) daily bars + indicators
  options     every OPTIONS_INTERVAL     (15 min) chain + sentiment metrics
  summary     every SUMMARY_INTERVAL     (1 h)    end-of-day roll-up

An iteration is fetch (through the cache) → transform → classify →
persist → mark status. Failures are written to the symbol's error ring
buffer and the loop sleeps until its next turn; a loop never exits on its
own. When every source fails the step raises before classification, so
the previous ``TradeSetup`` stays current.

``start(symbol)`` gives the symbol a fresh run id. Every write checks the
id first, so a fetch that completes after ``stop(symbol)`` or a restart is
dropped instead of resurrecting state. Classification waits until the
history yields the EMA stack and RSI.
"""

import asyncio
import itertools
import random
import time
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from options_scanner.analysis.indicators import compute_indicator_set
from options_scanner.analysis.key_levels import compute_key_levels
from options_scanner.analysis.options_metrics import (
    chain_iv_percentile,
    compute_options_metrics,
    open_interest_walls,
)
from options_scanner.analysis.setup_classifier import (
    ClassifierInputs,
    build_recommendation,
    classify_setup,
)
from options_scanner.core.cache import Cache, cache_key
from options_scanner.core.config import ScannerConfig
from options_scanner.core.logging_config import collection_context, get_logger
from options_scanner.core.metrics import record_collection_cycle, record_setup
from options_scanner.core.models import (
    CollectionStatus,
    Feed,
    OptionsChain,
    PricePoint,
    Quote,
    epoch_to_date,
)
from options_scanner.core.store import PersistenceStore, SqliteStore
from options_scanner.integrations.provider_client import RateLimitedClient
from options_scanner.integrations.sources import DataSourceRouter
from options_scanner.integrations.synthetic import SyntheticDataSource
from options_scanner.integrations.yahoo import LiveDataSource
from options_scanner.services.engine.projection import (
    SymbolSnapshot,
    project_symbol,
    summarize_market,
)

logger = get_logger("collector")

_STATUS_ERRORS_SHOWN = 3


class CollectorService:
    FEEDS = (Feed.QUOTE, Feed.HISTORICAL, Feed.OPTIONS, Feed.SUMMARY)

    def __init__(
        self,
        config: Optional[ScannerConfig] = None,
        *,
        cache: Optional[Cache] = None,
        client: Optional[RateLimitedClient] = None,
        router: Optional[DataSourceRouter] = None,
        store: Optional[PersistenceStore] = None,
        persist: bool = True,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or ScannerConfig.from_env()
        self.cache = cache or Cache(
            default_ttl=self.config.cache_ttl, stale_ttl=self.config.cache_stale_ttl
        )
        if router is None:
            client = client or RateLimitedClient.from_config(self.config)
            router = DataSourceRouter(LiveDataSource(client), SyntheticDataSource())
        self.client = client
        self.router = router
        if store is None and persist:
            store = SqliteStore(self.config.db_path)
        self.store = store
        self._rng = rng or random.Random()
        self._clock = clock
        self._sleep = sleep

        self._run_ids = itertools.count(1)
        self._runs: dict[str, int] = {}
        self._oneshot: dict[str, int] = {}
        self._tasks: dict[str, set[asyncio.Task]] = {}
        self._status: dict[str, CollectionStatus] = {}
        self._snapshots: dict[str, SymbolSnapshot] = {}
        self._cleanup_task: Optional[asyncio.Task] = None
        self._store_ready = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def ensure_store(self) -> None:
        """Create the store's tables once; safe to call from API handlers."""
        if self.store is not None and not self._store_ready:
            init = getattr(self.store, "init_db", None)
            if init is not None:
                await asyncio.to_thread(init)
            self._store_ready = True

    async def _ensure_ready(self) -> None:
        await self.ensure_store()
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(
                self.cache.run_cleanup_loop(self.config.cache_cleanup_interval),
                name="cache-cleanup",
            )

    async def start(self, symbol: str) -> None:
        """Begin (or restart) the four collection loops for *symbol*."""
        symbol = symbol.upper()
        await self._ensure_ready()
        await self._cancel_tasks(symbol)

        run_id = next(self._run_ids)
        self._runs[symbol] = run_id
        self._oneshot.pop(symbol, None)
        self._status[symbol] = CollectionStatus()
        self._snapshots.setdefault(symbol, SymbolSnapshot(symbol=symbol))

        tasks = set()
        for feed in self.FEEDS:
            delay = self._rng.uniform(0, self.config.max_initial_delay)
            tasks.add(
                asyncio.create_task(
                    self._run_loop(symbol, feed, run_id, delay),
                    name=f"collect:{symbol}:{feed.value}",
                )
            )
        self._tasks[symbol] = tasks
        logger.info("collection_started", symbol=symbol, run_id=run_id)

    async def stop(self, symbol: str) -> bool:
        """Cancel *symbol*'s loops and forget its status. Returns False if untracked."""
        symbol = symbol.upper()
        tracked = symbol in self._runs
        self._runs.pop(symbol, None)
        self._oneshot.pop(symbol, None)
        await self._cancel_tasks(symbol)
        self._status.pop(symbol, None)
        self._snapshots.pop(symbol, None)
        if tracked:
            logger.info("collection_stopped", symbol=symbol)
        return tracked

    async def _cancel_tasks(self, symbol: str) -> None:
        tasks = self._tasks.pop(symbol, set())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def start_default(self) -> list[str]:
        for symbol in self.config.default_tickers:
            await self.start(symbol)
        return list(self.config.default_tickers)

    async def shutdown(self) -> None:
        for symbol in list(self._runs):
            await self.stop(symbol)
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            await asyncio.gather(self._cleanup_task, return_exceptions=True)
            self._cleanup_task = None
        if self.client is not None:
            await self.client.aclose()
        logger.info("collector_shutdown")

    @property
    def symbols(self) -> list[str]:
        return sorted(self._runs)

    def is_tracking(self, symbol: str) -> bool:
        return symbol.upper() in self._runs

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    def _jittered(self, interval: float) -> float:
        ratio = self.config.jitter_ratio
        return interval * (1 + self._rng.uniform(-ratio, ratio))

    async def _run_loop(self, symbol: str, feed: Feed, run_id: int, initial_delay: float) -> None:
        interval = self.config.interval_for(feed.value)
        await self._sleep(initial_delay)
        while True:
            await self.run_step(symbol, feed, run_id)
            await self._sleep(self._jittered(interval))

    def _current(self, symbol: str, run_id: Optional[int]) -> bool:
        return self._runs.get(symbol, self._oneshot.get(symbol)) == run_id

    async def run_step(self, symbol: str, feed: Feed, run_id: Optional[int]) -> bool:
        """Run one iteration of *feed*; returns True on success.

        Exceptions are recorded against the symbol and never propagate.
        """
        step = {
            Feed.QUOTE: self._collect_quote,
            Feed.HISTORICAL: self._collect_historical,
            Feed.OPTIONS: self._collect_options,
            Feed.SUMMARY: self._collect_summary,
        }[feed]
        with collection_context(symbol, feed.value, run_id):
            started = time.perf_counter()
            try:
                await step(symbol, run_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._record_error(symbol, run_id, feed, exc)
                record_collection_cycle(feed.value, "error")
                return False

            if not self._current(symbol, run_id):
                record_collection_cycle(feed.value, "discarded")
                logger.debug("collection_discarded")
                return False
            status = self._status.get(symbol)
            if status is not None:
                status.mark(feed, self._clock())
            record_collection_cycle(feed.value, "ok")
            logger.debug(
                "collection_cycle",
                elapsed_ms=round((time.perf_counter() - started) * 1000, 1),
            )
            return True

    async def collect_once(self, symbol: str) -> dict[str, bool]:
        """Run all four steps for *symbol* immediately, in order.

        A tracked symbol runs under its current run id. An untracked one gets
        a one-shot id that ``start`` or ``stop`` supersede. Its snapshot stays
        readable until ``stop(symbol)``.
        """
        symbol = symbol.upper()
        await self._ensure_ready()
        run_id = self._runs.get(symbol)
        if run_id is None:
            run_id = next(self._run_ids)
            self._oneshot[symbol] = run_id
        self._snapshots.setdefault(symbol, SymbolSnapshot(symbol=symbol))
        results = {}
        for feed in self.FEEDS:
            results[feed.value] = await self.run_step(symbol, feed, run_id)
        return results

    def _record_error(self, symbol: str, run_id: Optional[int], feed: Feed, exc: Exception) -> None:
        message = f"{type(exc).__name__}: {exc}"
        logger.warning("collection_error", error=message)
        status = self._status.get(symbol)
        if status is not None and self._current(symbol, run_id):
            status.record_error(feed, message, datetime.now(tz=timezone.utc))

    # ------------------------------------------------------------------
    # Fetch through the cache
    # ------------------------------------------------------------------

    async def _quote(self, symbol: str) -> Quote:
        return await self.cache.fetch_with_cache(
            cache_key("quote", symbol),
            lambda: self.router.get_quote(symbol),
            ttl=self.config.quote_ttl,
            stale_ttl=self.config.quote_ttl * 3,
        )

    async def _history(self, symbol: str) -> list[PricePoint]:
        period, interval = self.config.history_period, self.config.history_interval
        return await self.cache.fetch_with_cache(
            cache_key("history", symbol, period, interval),
            lambda: self.router.get_history(symbol, period, interval),
            ttl=self.config.historical_ttl,
            stale_ttl=self.config.historical_ttl * 3,
        )

    async def _chain(self, symbol: str) -> OptionsChain:
        return await self.cache.fetch_with_cache(
            cache_key("options", symbol),
            lambda: self.router.get_options_chain(symbol),
            ttl=self.config.options_ttl,
            stale_ttl=self.config.options_ttl * 3,
        )

    async def _persist(self, symbol: str, run_id: Optional[int], fn: Callable, *args) -> None:
        if self.store is None or not self._current(symbol, run_id):
            return
        await asyncio.to_thread(fn, *args)

    def _snapshot(self, symbol: str, run_id: Optional[int]) -> Optional[SymbolSnapshot]:
        if not self._current(symbol, run_id):
            return None
        return self._snapshots.setdefault(symbol, SymbolSnapshot(symbol=symbol))

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _collect_quote(self, symbol: str, run_id: Optional[int]) -> None:
        quote = await self._quote(symbol)
        snap = self._snapshot(symbol, run_id)
        if snap is None:
            return
        snap.quote = quote
        snap.data_source = quote.source
        point = PricePoint(
            date=quote.date,
            timestamp=quote.timestamp,
            open=quote.open,
            high=quote.high,
            low=quote.low,
            close=quote.close,
            volume=quote.volume,
        )
        if self.store is not None:
            await self._persist(symbol, run_id, self.store.save_stock, symbol, point)
        await self._classify(symbol, run_id)

    async def _collect_historical(self, symbol: str, run_id: Optional[int]) -> None:
        history = await self._history(symbol)
        indicators = compute_indicator_set(history)
        snap = self._snapshot(symbol, run_id)
        if snap is None:
            return
        snap.history = history
        snap.indicators = indicators
        if self.store is not None:
            await self._persist(symbol, run_id, self.store.save_stock_series, symbol, history)
            await self._persist(
                symbol, run_id, self.store.save_indicator_series, symbol, history, indicators
            )
        await self._classify(symbol, run_id)

    async def _collect_options(self, symbol: str, run_id: Optional[int]) -> None:
        quote = await self._quote(symbol)
        chain = await self._chain(symbol)
        metrics = compute_options_metrics(chain, quote.close)
        ivp = chain_iv_percentile(chain)
        walls = open_interest_walls(chain, quote.close)

        snap = self._snapshot(symbol, run_id)
        if snap is None:
            return
        snap.quote = quote
        snap.chain = chain
        snap.metrics = metrics
        snap.iv_percentile = ivp
        snap.walls = walls
        snap.data_source = chain.source

        now = int(self._clock())
        today = epoch_to_date(now)
        if self.store is not None:
            await self._persist(
                symbol, run_id, self.store.save_market_sentiment, symbol, today, now, metrics, ivp
            )
            await self._persist(symbol, run_id, self.store.save_options_data, symbol, chain, now, today)
        await self._classify(symbol, run_id)

    async def _collect_summary(self, symbol: str, run_id: Optional[int]) -> None:
        quote = await self._quote(symbol)
        chain = await self._chain(symbol)
        history = await self._history(symbol)
        indicators = compute_indicator_set(history)
        metrics = compute_options_metrics(chain, quote.close)
        ivp = chain_iv_percentile(chain)

        snap = self._snapshot(symbol, run_id)
        if snap is None:
            return
        snap.quote = quote
        snap.chain = chain
        snap.history = history
        snap.indicators = indicators
        snap.metrics = metrics
        snap.iv_percentile = ivp
        snap.walls = open_interest_walls(chain, quote.close)

        latest = indicators[-1] if indicators else None
        summary = {
            "symbol": symbol,
            "date": quote.date,
            "open": quote.open,
            "high": quote.high,
            "low": quote.low,
            "close": quote.close,
            "volume": quote.volume,
            "ema_10": latest.ema10 if latest else None,
            "ema_20": latest.ema20 if latest else None,
            "ema_50": latest.ema50 if latest else None,
            "rsi_14": latest.rsi14 if latest else None,
            "stoch_rsi": latest.stoch_rsi if latest else None,
            "pcr": metrics.pcr,
            "iv_percentile": ivp,
            "max_pain": metrics.max_pain,
        }
        if self.store is not None:
            await self._persist(symbol, run_id, self.store.save_daily_summary, summary)
        await self._classify(symbol, run_id)

    async def _classify(self, symbol: str, run_id: Optional[int]) -> None:
        snap = self._snapshot(symbol, run_id)
        if snap is None or snap.price is None:
            return
        latest = snap.latest_indicators
        if latest is None or not latest.has_technicals:
            # The previous setup, if any, stays current.
            logger.debug("classification_skipped", symbol=symbol, reason="technicals_incomplete")
            return
        price = snap.price
        key_levels = compute_key_levels(
            price, snap.history, snap.metrics.max_pain if snap.metrics else None
        )
        inputs = ClassifierInputs.from_market(
            price, snap.latest_indicators, snap.metrics, key_levels, snap.walls
        )
        result = classify_setup(inputs)

        now = self._clock()
        timestamp = snap.quote.timestamp if snap.quote else int(now)
        setup = result.to_trade_setup(symbol, epoch_to_date(timestamp), timestamp)

        previous = snap.setup
        snap.key_levels = key_levels
        snap.inputs = inputs
        snap.classification = result
        snap.recommendation = build_recommendation(price, result, key_levels, date.today())
        snap.setup = setup
        snap.updated_at = now

        if previous is None or previous.setup_type != setup.setup_type:
            record_setup(setup.setup_type.value)
            logger.info(
                "setup_changed",
                symbol=symbol,
                setup=setup.setup_type.value,
                strength=setup.strength,
                action=result.action,
            )
        if self.store is not None:
            await self._persist(symbol, run_id, self.store.save_trade_setup, setup)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def _feed_status(self, last_at: Optional[float], interval: float, now: float) -> str:
        if last_at is None:
            return "not_started"
        if now - last_at > interval * 2:
            return "stale"
        return "ok"

    def get_status(self) -> dict[str, dict[str, Any]]:
        now = self._clock()
        view = {}
        for symbol, status in sorted(self._status.items()):
            entry: dict[str, Any] = {}
            for feed in self.FEEDS:
                last_at = status.last_at(feed)
                entry[f"last_{feed.value}_at"] = (
                    datetime.fromtimestamp(last_at, tz=timezone.utc).isoformat()
                    if last_at is not None
                    else None
                )
                entry[f"{feed.value}_status"] = self._feed_status(
                    last_at, self.config.interval_for(feed.value), now
                )
            entry["errors"] = list(status.recent_errors)
            entry["last_errors"] = list(status.recent_errors)[-_STATUS_ERRORS_SHOWN:]
            view[symbol] = entry
        return view

    def get_setup(self, symbol: str):
        snap = self._snapshots.get(symbol.upper())
        return snap.setup if snap else None

    def get_analysis(self, symbol: str) -> Optional[dict[str, Any]]:
        snap = self._snapshots.get(symbol.upper())
        if snap is None:
            return None
        return project_symbol(snap)

    def get_scanner_results(self, setup_type: Optional[str] = None) -> dict[str, Any]:
        projections = [
            p
            for p in (project_symbol(s) for _, s in sorted(self._snapshots.items()))
            if p is not None
        ]
        summary = summarize_market(projections)
        if setup_type:
            projections = [p for p in projections if p["setupType"] == setup_type]
        return {
            "timestamp": datetime.now(tz=timezone.utc).isoformat(),
            **summary,
            "results": projections,
        }

    def stats(self) -> dict[str, Any]:
        return {
            "tracked_symbols": len(self._runs),
            "symbols": self.symbols,
            "cache": self.cache.stats(),
            "sources": self.router.stats(),
            "provider": self.client.stats() if self.client is not None else None,
        }
