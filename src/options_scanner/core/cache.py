"""
In-process TTL cache with stale-while-revalidate and single-flight fetches.

Every upstream call in the collector goes through ``Cache.fetch_with_cache``:

  1. Fresh entry            → returned immediately, producer not called.
  2. Fetch already running  → caller awaits the shared in-flight task.
  3. Stale entry + SWR      → stale value returned now, producer re-run in
                              the background (its errors are only logged).
  4. Otherwise              → producer awaited; on failure a stale value is
                              returned as a last resort, else the error
                              propagates.

Entries past ``expires_at + stale_ttl`` are dead: ``cleanup()`` evicts
them and ``run_cleanup_loop()`` calls it periodically, off the request
path.

The clock is injectable so tests can move time without sleeping.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger("cache")

T = TypeVar("T")

# Default TTLs in seconds
TTL_DEFAULT = 300.0
STALE_TTL_DEFAULT = TTL_DEFAULT * 3


def cache_key(*parts: Any) -> str:
    """Build a namespaced key such as ``quote:AAPL`` or ``history:AAPL:3mo:1d``."""
    return ":".join(str(p) for p in parts)


@dataclass
class CacheEntry(Generic[T]):
    value: T
    created_at: float
    expires_at: float
    stale_ttl: float

    def is_fresh(self, now: float) -> bool:
        return now <= self.expires_at

    def is_usable(self, now: float, stale_ttl: Optional[float] = None) -> bool:
        window = self.stale_ttl if stale_ttl is None else stale_ttl
        return now <= self.expires_at + window


@dataclass(frozen=True)
class CacheLookup(Generic[T]):
    value: Optional[T]
    is_stale: bool
    found: bool


_MISS: CacheLookup = CacheLookup(value=None, is_stale=False, found=False)


class Cache:
    """Generic key/value store shared by all collection loops of one service."""

    def __init__(
        self,
        default_ttl: float = TTL_DEFAULT,
        stale_ttl: float = STALE_TTL_DEFAULT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl
        self.default_stale_ttl = stale_ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self.hits = 0
        self.stale_hits = 0
        self.misses = 0

    # ------------------------------------------------------------------
    # Plain get / set
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[Any]:
        """Return the fresh value for *key*, or ``None``.

        Expired entries are evicted lazily here.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_fresh(self._clock()):
            del self._entries[key]
            return None
        return entry.value

    def get_with_stale(
        self, key: str, stale_ttl: Optional[float] = None
    ) -> CacheLookup:
        """Return the value for *key* with its staleness.

        A value past ``expires_at`` but within ``expires_at + stale_ttl`` is
        returned with ``is_stale=True``; anything older is evicted.
        """
        entry = self._entries.get(key)
        if entry is None:
            return _MISS
        now = self._clock()
        if entry.is_fresh(now):
            return CacheLookup(value=entry.value, is_stale=False, found=True)
        if entry.is_usable(now, stale_ttl):
            return CacheLookup(value=entry.value, is_stale=True, found=True)
        del self._entries[key]
        return _MISS

    def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        stale_ttl: Optional[float] = None,
    ) -> None:
        now = self._clock()
        self._entries[key] = CacheEntry(
            value=value,
            created_at=now,
            expires_at=now + (self.default_ttl if ttl is None else ttl),
            stale_ttl=self.default_stale_ttl if stale_ttl is None else stale_ttl,
        )

    def has(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.is_fresh(self._clock())

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def refresh(self, key: str, ttl: Optional[float] = None) -> bool:
        """Extend the TTL of an existing entry. Returns False if absent."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        entry.expires_at = self._clock() + (self.default_ttl if ttl is None else ttl)
        return True

    # ------------------------------------------------------------------
    # Fetch with cache (single-flight + stale-while-revalidate)
    # ------------------------------------------------------------------

    async def fetch_with_cache(
        self,
        key: str,
        producer: Callable[[], Awaitable[T]],
        *,
        ttl: Optional[float] = None,
        stale_ttl: Optional[float] = None,
        stale_while_revalidate: bool = True,
    ) -> T:
        lookup = self.get_with_stale(key, stale_ttl)
        if lookup.found and not lookup.is_stale:
            self.hits += 1
            return lookup.value

        inflight = self._inflight.get(key)
        if inflight is not None:
            try:
                return await asyncio.shield(inflight)
            except asyncio.CancelledError:
                raise
            except Exception:
                if lookup.found:
                    self.stale_hits += 1
                    return lookup.value
                raise

        if lookup.found and stale_while_revalidate:
            self.stale_hits += 1
            self._spawn(key, producer, ttl, stale_ttl, background=True)
            return lookup.value

        self.misses += 1
        task = self._spawn(key, producer, ttl, stale_ttl, background=False)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if lookup.found:
                logger.warning("Serving stale %s after fetch failure: %s", key, exc)
                self.stale_hits += 1
                return lookup.value
            raise

    def _spawn(
        self,
        key: str,
        producer: Callable[[], Awaitable[Any]],
        ttl: Optional[float],
        stale_ttl: Optional[float],
        *,
        background: bool,
    ) -> asyncio.Task:
        # Registered before the first await so concurrent callers see it.
        task = asyncio.ensure_future(self._produce(key, producer, ttl, stale_ttl))
        self._inflight[key] = task
        task.add_done_callback(lambda t, k=key: self._on_done(k, t))
        if background:
            self._background.add(task)
            task.add_done_callback(self._on_background_done)
        return task

    async def _produce(
        self,
        key: str,
        producer: Callable[[], Awaitable[Any]],
        ttl: Optional[float],
        stale_ttl: Optional[float],
    ) -> Any:
        value = await producer()
        self.set(key, value, ttl=ttl, stale_ttl=stale_ttl)
        return value

    def _on_done(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background refresh failed: %s", exc)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup(self) -> int:
        """Evict every entry past ``expires_at + stale_ttl``. Returns the count."""
        now = self._clock()
        dead = [k for k, e in self._entries.items() if not e.is_usable(now)]
        for key in dead:
            del self._entries[key]
        if dead:
            logger.debug("Cache cleanup evicted %d entries", len(dead))
        return len(dead)

    async def run_cleanup_loop(self, interval: float = 60.0) -> None:
        """Run ``cleanup()`` every *interval* seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            try:
                self.cleanup()
            except Exception as exc:
                logger.error("Cache cleanup failed: %s", exc)

    def inflight_keys(self) -> list[str]:
        return list(self._inflight)

    def stats(self) -> dict[str, Any]:
        return {
            "size": len(self._entries),
            "keys": sorted(self._entries),
            "inflight": len(self._inflight),
            "hits": self.hits,
            "stale_hits": self.stale_hits,
            "misses": self.misses,
        }

    def __len__(self) -> int:
        return len(self._entries)
