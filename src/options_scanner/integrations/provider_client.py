"""
Throttled, retrying HTTP access to the upstream quote/options provider.

One ``RateLimitedClient`` is shared by every collection loop in the
process, so all callers draw from a single throttle queue:

  - ``RequestThrottle``: FIFO gate that spaces dispatches ``60/N`` seconds
    apart and never lets more than ``N`` leave in any rolling minute.
  - ``CircuitBreaker``: ``closed → open → half_open``. Opens on 401/403 or
    when every attempt of a request was answered with 429, stays open for
    ``cooldown`` seconds, then lets a single probe through.
  - ``RateLimitedClient.request()``: retries 429 and transient failures
    (transport errors, 5xx) with ``min(base_delay * 2**attempt, cap_delay)``
    backoff. Exhausted transient retries raise ``ProviderError`` without
    opening the breaker.

Clock, sleep and the httpx transport are injectable so tests run on a fake
clock against ``httpx.MockTransport``.
"""

import asyncio
import time
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx

from options_scanner.core.errors import (
    MalformedDataError,
    ProviderDegradedError,
    ProviderError,
)
from options_scanner.core.logging_config import get_logger
from options_scanner.core.metrics import record_provider_response

logger = get_logger("provider_client")

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; options-scanner/0.4)",
    "Accept": "application/json",
}


class RequestThrottle:
    """At most ``calls_per_minute`` dispatches per rolling window, evenly spaced."""

    def __init__(
        self,
        calls_per_minute: int,
        *,
        window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if calls_per_minute <= 0:
            raise ValueError("calls_per_minute must be positive")
        self.calls_per_minute = calls_per_minute
        self.window = window
        self.spacing = window / calls_per_minute
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._sent: deque[float] = deque()
        self._last: Optional[float] = None
        self.dispatched = 0

    async def acquire(self) -> float:
        """Wait for the next dispatch slot and return its timestamp.

        The lock is held while sleeping, so waiters leave in arrival order.
        """
        async with self._lock:
            while True:
                now = self._clock()
                while self._sent and now - self._sent[0] >= self.window:
                    self._sent.popleft()
                wait = 0.0
                if self._last is not None:
                    wait = max(wait, self._last + self.spacing - now)
                if len(self._sent) >= self.calls_per_minute:
                    wait = max(wait, self._sent[0] + self.window - now)
                if wait <= 0:
                    break
                await self._sleep(wait)
            self._sent.append(now)
            self._last = now
            self.dispatched += 1
            return now

    def sent_times(self) -> list[float]:
        return list(self._sent)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Degraded-mode state machine for the provider."""

    def __init__(
        self,
        cooldown: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cooldown = cooldown
        self._clock = clock
        self._state = BreakerState.CLOSED
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False
        self.last_reason: Optional[str] = None
        self.trips = 0

    @property
    def state(self) -> BreakerState:
        if (
            self._state is BreakerState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.cooldown
        ):
            self._state = BreakerState.HALF_OPEN
            self._probe_in_flight = False
            logger.info("breaker_half_open", cooldown=self.cooldown)
        return self._state

    @property
    def degraded(self) -> bool:
        return self.state is BreakerState.OPEN

    def admit(self) -> tuple[bool, bool]:
        """Admission for one request as ``(allowed, is_probe)``.

        Only the caller that got ``is_probe`` may call ``release_probe``.
        """
        state = self.state
        if state is BreakerState.CLOSED:
            return True, False
        if state is BreakerState.HALF_OPEN and not self._probe_in_flight:
            self._probe_in_flight = True
            return True, True
        return False, False

    def allow_request(self) -> bool:
        allowed, _ = self.admit()
        return allowed

    def release_probe(self) -> None:
        self._probe_in_flight = False

    def record_success(self) -> None:
        if self._state is not BreakerState.CLOSED:
            logger.info("breaker_closed", previous=self._state.value)
        self._state = BreakerState.CLOSED
        self._opened_at = None
        self._probe_in_flight = False

    def trip(self, reason: str) -> None:
        self._state = BreakerState.OPEN
        self._opened_at = self._clock()
        self._probe_in_flight = False
        self.last_reason = reason
        self.trips += 1
        logger.warning("breaker_open", reason=reason, cooldown=self.cooldown)

    def reset(self) -> None:
        """Manually close the breaker."""
        self.record_success()
        self.last_reason = None

    def seconds_until_probe(self) -> float:
        if self._state is not BreakerState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self._opened_at + self.cooldown - self._clock())


class RateLimitedClient:
    def __init__(
        self,
        base_url: str,
        *,
        calls_per_minute: int = 30,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        cap_delay: float = 10.0,
        timeout: float = 10.0,
        cooldown: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        headers: Optional[dict[str, str]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.cap_delay = cap_delay
        self._clock = clock
        self._sleep = sleep
        self.throttle = RequestThrottle(calls_per_minute, clock=clock, sleep=sleep)
        self.breaker = CircuitBreaker(cooldown=cooldown, clock=clock)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers or DEFAULT_HEADERS,
            transport=transport,
        )
        self.requests_total = 0
        self.responses_by_status: dict[str, int] = {}

    @classmethod
    def from_config(cls, config, **kwargs) -> "RateLimitedClient":
        return cls(
            config.provider_base_url,
            calls_per_minute=config.calls_per_minute,
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            cap_delay=config.cap_delay,
            timeout=config.request_timeout,
            cooldown=config.degraded_cooldown,
            **kwargs,
        )

    @property
    def degraded(self) -> bool:
        return self.breaker.degraded

    def reset(self) -> None:
        self.breaker.reset()
        logger.info("provider_reset")

    def backoff(self, attempt: int) -> float:
        return min(self.base_delay * (2**attempt), self.cap_delay)

    def _count(self, status: str) -> None:
        self.responses_by_status[status] = self.responses_by_status.get(status, 0) + 1
        record_provider_response(status)

    async def request(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        """GET *path* and return the decoded JSON body.

        Raises ``ProviderDegradedError`` when the breaker is open or this
        request opened it, ``ProviderError`` when retries are exhausted or
        the provider answered with a non-retryable status.
        """
        allowed, probe = self.breaker.admit()
        if not allowed:
            raise ProviderDegradedError(
                f"provider degraded ({self.breaker.last_reason}); "
                f"retry in {self.breaker.seconds_until_probe():.0f}s",
            )

        started = self._clock()
        last_status: Optional[int] = None
        last_error = ""
        try:
            for attempt in range(self.max_attempts):
                final = attempt == self.max_attempts - 1
                await self.throttle.acquire()
                self.requests_total += 1
                try:
                    response = await self._client.get(path, params=params)
                except httpx.TransportError as exc:
                    last_error = f"{type(exc).__name__}: {exc}"
                    self._count("transport_error")
                    logger.warning(
                        "provider_transport_error",
                        path=path,
                        attempt=attempt + 1,
                        elapsed_ms=self._elapsed_ms(started),
                        error=last_error,
                    )
                    if not final:
                        await self._sleep(self.backoff(attempt))
                    continue

                status = response.status_code
                last_status = status
                self._count(str(status))
                logger.info(
                    "provider_response",
                    path=path,
                    status=status,
                    attempt=attempt + 1,
                    elapsed_ms=self._elapsed_ms(started),
                )

                if status in (401, 403):
                    self._degrade(f"http {status}", path, attempt, started)
                    raise ProviderDegradedError(
                        f"provider rejected credentials (HTTP {status})",
                        status_code=status,
                        attempts=attempt + 1,
                    )
                if status == 429:
                    if final:
                        self._degrade("rate limited", path, attempt, started)
                        raise ProviderDegradedError(
                            f"provider rate limit persisted for {attempt + 1} attempts",
                            status_code=status,
                            attempts=attempt + 1,
                        )
                    await self._sleep(self.backoff(attempt))
                    continue
                if status >= 500:
                    last_error = f"HTTP {status}"
                    if not final:
                        await self._sleep(self.backoff(attempt))
                    continue

                # Any other answer means the provider is reachable and authorised.
                self.breaker.record_success()
                if status >= 400:
                    raise ProviderError(
                        f"provider returned HTTP {status} for {path}",
                        status_code=status,
                        attempts=attempt + 1,
                    )
                try:
                    return response.json()
                except ValueError as exc:
                    raise MalformedDataError(f"invalid JSON from {path}: {exc}") from exc

            if probe:
                self._degrade("probe failed", path, self.max_attempts - 1, started)
            logger.error(
                "provider_retries_exhausted",
                path=path,
                attempts=self.max_attempts,
                elapsed_ms=self._elapsed_ms(started),
                error=last_error,
            )
            raise ProviderError(
                f"{path} failed after {self.max_attempts} attempts: {last_error}",
                status_code=last_status,
                attempts=self.max_attempts,
            )
        finally:
            if probe:
                self.breaker.release_probe()

    def _degrade(self, reason: str, path: str, attempt: int, started: float) -> None:
        logger.warning(
            "provider_degraded",
            path=path,
            reason=reason,
            attempt=attempt + 1,
            elapsed_ms=self._elapsed_ms(started),
        )
        self.breaker.trip(reason)

    def _elapsed_ms(self, started: float) -> float:
        return round((self._clock() - started) * 1000.0, 1)

    def stats(self) -> dict[str, Any]:
        return {
            "state": self.breaker.state.value,
            "degraded": self.degraded,
            "last_reason": self.breaker.last_reason,
            "trips": self.breaker.trips,
            "retry_in_seconds": round(self.breaker.seconds_until_probe(), 1),
            "requests_total": self.requests_total,
            "responses_by_status": dict(self.responses_by_status),
            "calls_per_minute": self.throttle.calls_per_minute,
        }

    async def aclose(self) -> None:
        await self._client.aclose()
