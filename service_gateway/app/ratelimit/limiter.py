"""
Sliding window rate limiter.

Approximates a continuously moving window from two adjacent fixed buckets:
the previous bucket's count is weighted by the fraction of it still inside
the window and added to the current bucket's count.
"""

import asyncio
import math
import time
from typing import Any, Callable, Dict, Optional

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.errors import StoreUnavailableError
from shared.logging import LogThrottle, get_logger
from shared.metrics import MetricsCollector
from .config import RateLimiterConfig
from .local import LocalFallbackCounter
from .models import RateLimitResult, Tier
from .store import WindowCounterStore, bucket_key

# Failures that mean "the store is not usable right now" rather than a bug
STORE_FAULTS = (StoreUnavailableError, asyncio.TimeoutError, CircuitBreakerOpenException)


def previous_weight(now_ms: float, window_ms: int) -> float:
    """Fraction of the previous bucket still inside the sliding window."""
    return (window_ms - (now_ms % window_ms)) / window_ms


def weighted_count(previous: int, current: int, now_ms: float, window_ms: int) -> int:
    """Estimated number of requests in the window ending at ``now_ms``."""
    return math.floor(previous * previous_weight(now_ms, window_ms) + current)


def build_breaker(config: RateLimiterConfig, clock: Callable[[], float] = time.monotonic) -> CircuitBreaker:
    """Circuit breaker for the counter store, from limiter configuration."""
    settings = config.circuit_breaker
    return CircuitBreaker(
        name="ratelimit_store",
        error_threshold=settings.error_threshold,
        volume_threshold=settings.volume_threshold,
        reset_timeout=settings.reset_timeout_ms / 1000,
        call_timeout=settings.timeout_ms / 1000,
        rolling_window=settings.rolling_window_ms / 1000,
        buckets=settings.buckets,
        clock=clock,
    )


class SlidingWindowRateLimiter:
    """Decides whether a client may proceed, degrading to a local counter.

    Args:
        config: Validated limiter configuration
        store: Shared window counter store
        breaker: Circuit breaker guarding store calls
        local: In-process fallback counter
        clock: Wall clock in seconds
        metrics: Optional metrics collector
    """

    def __init__(
        self,
        config: RateLimiterConfig,
        store: WindowCounterStore,
        breaker: Optional[CircuitBreaker] = None,
        local: Optional[LocalFallbackCounter] = None,
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config
        self.store = store
        self.breaker = breaker or build_breaker(config)
        self.local = local or LocalFallbackCounter(config.window_ms, config.local_max_entries)
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("gateway.ratelimit")

        self._degraded_log = LogThrottle(config.degraded_log_interval_s)
        self._degraded = False
        self._health_task: Optional[asyncio.Task] = None
        self._last_health: Dict[str, Any] = {"status": "unknown", "checked_at": None}

    def now_ms(self) -> float:
        return self.clock() * 1000

    async def check_limit(self, client_id: str, tier: Tier) -> RateLimitResult:
        """Check and count one request for ``client_id`` at ``tier``."""
        tier = Tier.parse(tier)
        now = self.now_ms()
        window = self.config.window_ms
        limit = self.config.limit_for(tier)

        current_bucket = math.floor(now / window)
        prefix = self.config.store.key_prefix
        current_key = bucket_key(prefix, client_id, current_bucket)
        previous_key = bucket_key(prefix, client_id, current_bucket - 1)
        reset = math.ceil((now + window) / 1000)

        try:
            hit = await self._store_hit(current_key, previous_key, limit,
                                        previous_weight(now, window), window)
        except STORE_FAULTS as e:
            result = self._fallback(client_id, limit, now, e)
            self._record(tier, result)
            return result

        self._note_recovery()

        if hit.limited:
            result = RateLimitResult(limited=True, remaining=0, reset=reset, total=limit)
        else:
            result = RateLimitResult(
                limited=False,
                remaining=max(0, limit - hit.weighted - 1),
                reset=reset,
                total=limit,
            )
        self._record(tier, result)
        return result

    async def _store_hit(self, current_key: str, previous_key: str, limit: int,
                         weight: float, window_ms: int):
        # Buckets must outlive their own window to be read as "previous"
        ttl_ms = 2 * window_ms
        if self.metrics is None:
            return await self.breaker.call(self.store.hit, current_key, previous_key,
                                           limit, weight, ttl_ms)
        try:
            with self.metrics.time_operation("rate_limit_store_duration_seconds"):
                return await self.breaker.call(self.store.hit, current_key, previous_key,
                                               limit, weight, ttl_ms)
        finally:
            self.metrics.set_gauge("rate_limit_breaker_open", 1 if self.breaker.is_open() else 0)

    def _fallback(self, client_id: str, limit: int, now: float, error: Exception) -> RateLimitResult:
        reason = _fault_reason(error)
        self._degraded = True
        if self.metrics is not None:
            self.metrics.increment_counter("rate_limit_fallbacks_total", reason=reason)

        if self._degraded_log.should_emit():
            self.logger.warning(
                "Counter store unavailable, using local fallback counter",
                reason=reason,
                error=str(error),
                breaker_state=self.breaker.state.value,
                suppressed=self._degraded_log.take_suppressed(),
            )

        return self.local.check(client_id, limit, now)

    def _note_recovery(self) -> None:
        if self._degraded:
            self._degraded = False
            self._degraded_log.reset()
            self.logger.info("Counter store recovered, leaving local fallback")

    def _record(self, tier: Tier, result: RateLimitResult) -> None:
        if self.metrics is not None:
            self.metrics.record_rate_limit_decision(tier.value, result.limited, result.source)

    async def health_check(self) -> bool:
        """Ping the store once and log the outcome; never raises."""
        try:
            healthy = await asyncio.wait_for(self.store.ping(), timeout=self.breaker.call_timeout)
        except Exception as e:
            healthy = False
            self.logger.error("Counter store health check failed", error=str(e))
        else:
            self.logger.info("Counter store health check passed")

        self._last_health = {"status": "ok" if healthy else "error", "checked_at": self.clock()}
        if self.metrics is not None:
            self.metrics.set_gauge("rate_limit_store_healthy", 1 if healthy else 0)
        self.local.cleanup(self.now_ms())
        return healthy

    async def _health_loop(self) -> None:
        interval = self.config.health_check_interval_s
        while True:
            await asyncio.sleep(interval)
            await self.health_check()

    def start(self) -> None:
        """Start the periodic health check; must run inside an event loop."""
        if self._health_task is None or self._health_task.done():
            self._health_task = asyncio.get_running_loop().create_task(self._health_loop())
            self.logger.info(
                "Rate limiter started",
                window_ms=self.config.window_ms,
                standard=self.config.limits.standard,
                premium=self.config.limits.premium,
            )

    async def close(self) -> None:
        """Stop background work, close the store and forget local counters."""
        if self._health_task is not None:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None

        await self.store.close()
        self.local.clear()
        self.logger.info("Rate limiter cleanup completed")

    def status(self) -> Dict[str, Any]:
        return {
            "window_ms": self.config.window_ms,
            "limits": self.config.limits.model_dump(),
            "fallback_strategy": self.config.fallback_strategy.value,
            "circuit_breaker": self.breaker.get_state(),
            "local_counters": len(self.local),
            "store_health": dict(self._last_health),
        }


def _fault_reason(error: Exception) -> str:
    if isinstance(error, CircuitBreakerOpenException):
        return "breaker_open"
    if isinstance(error, asyncio.TimeoutError):
        return "timeout"
    return "store_error"
