"""
Circuit breaker pattern implementation for resilient service calls.

The breaker keeps a rolling, bucketed window of call outcomes. It opens once
the window holds more than ``volume_threshold`` calls of which more than
``error_threshold`` failed, stays open for ``reset_timeout`` seconds, then
admits a single trial call (half-open) whose outcome closes or re-opens it.
Calls admitted before the breaker opened never decide the half-open state.
"""

import asyncio
import time
from enum import Enum
from typing import Dict, Any, Optional, Callable, Awaitable, List

from shared.logging import get_logger


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, requests blocked
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreakerOpenException(Exception):
    """Exception raised when circuit breaker is open."""
    pass


class _Bucket:
    __slots__ = ("index", "successes", "failures")

    def __init__(self, index: int):
        self.index = index
        self.successes = 0
        self.failures = 0


class CircuitBreaker:
    """Circuit breaker implementation."""

    def __init__(self,
                 name: str = "default",
                 error_threshold: int = 5,
                 volume_threshold: int = 10,
                 reset_timeout: float = 30.0,
                 call_timeout: Optional[float] = 5.0,
                 rolling_window: float = 10.0,
                 buckets: int = 10,
                 clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.error_threshold = error_threshold
        self.volume_threshold = volume_threshold
        self.reset_timeout = reset_timeout
        self.call_timeout = call_timeout
        self.rolling_window = rolling_window
        self.bucket_width = rolling_window / buckets
        self._clock = clock
        self.logger = get_logger(f"circuit_breaker.{name}")

        self._state = CircuitBreakerState.CLOSED
        self._buckets: List[_Bucket] = []
        self._opened_at = 0.0
        self._last_failure_time = 0.0
        self._trial_in_flight = False
        self._open_count = 0

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    def _current_bucket(self, now: float) -> _Bucket:
        index = int(now // self.bucket_width)
        if not self._buckets or self._buckets[-1].index != index:
            self._buckets.append(_Bucket(index))
        self._prune(now)
        return self._buckets[-1]

    def _prune(self, now: float) -> None:
        oldest = int((now - self.rolling_window) // self.bucket_width)
        while self._buckets and self._buckets[0].index <= oldest:
            self._buckets.pop(0)

    def _window_counts(self) -> Dict[str, int]:
        self._prune(self._clock())
        failures = sum(bucket.failures for bucket in self._buckets)
        total = failures + sum(bucket.successes for bucket in self._buckets)
        return {"failures": failures, "total": total}

    def _admit(self) -> bool:
        """Admit a call or raise; returns True when the call is the half-open trial."""
        if self._state == CircuitBreakerState.CLOSED:
            return False
        if self._state == CircuitBreakerState.OPEN:
            if self._clock() - self._opened_at < self.reset_timeout:
                raise CircuitBreakerOpenException(
                    f"Circuit breaker '{self.name}' is OPEN - blocking call"
                )
            self._state = CircuitBreakerState.HALF_OPEN
            self.logger.info("Circuit breaker transitioning to half-open")
        elif self._trial_in_flight:
            # HALF_OPEN: one trial at a time
            raise CircuitBreakerOpenException(
                f"Circuit breaker '{self.name}' is HALF_OPEN - trial in flight"
            )
        self._trial_in_flight = True
        return True

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Execute function with circuit breaker protection."""
        trial = self._admit()

        try:
            if self.call_timeout is not None:
                result = await asyncio.wait_for(func(*args, **kwargs), timeout=self.call_timeout)
            else:
                result = await func(*args, **kwargs)
        except asyncio.CancelledError:
            if trial:
                self._trial_in_flight = False
            raise
        except Exception:
            self._record_failure(trial)
            raise

        self._record_success(trial)
        return result

    def _record_success(self, trial: bool = False):
        self._current_bucket(self._clock()).successes += 1

        if trial and self._state == CircuitBreakerState.HALF_OPEN:
            self._state = CircuitBreakerState.CLOSED
            self._trial_in_flight = False
            self._buckets.clear()
            self.logger.info("Circuit breaker reset to CLOSED after successful trial")

    def _record_failure(self, trial: bool = False):
        """Record a failure and update state."""
        now = self._clock()
        self._last_failure_time = now

        if trial and self._state == CircuitBreakerState.HALF_OPEN:
            self._trial_in_flight = False
            self._trip(now, reason="trial_failed")
            return

        self._current_bucket(now).failures += 1
        counts = self._window_counts()
        if (self._state == CircuitBreakerState.CLOSED
                and counts["total"] > self.volume_threshold
                and counts["failures"] > self.error_threshold):
            self._trip(now, reason="error_threshold", **counts)

    def _trip(self, now: float, reason: str, **details):
        self._state = CircuitBreakerState.OPEN
        self._opened_at = now
        self._open_count += 1
        self.logger.warning(
            "Circuit breaker opened",
            reason=reason,
            error_threshold=self.error_threshold,
            volume_threshold=self.volume_threshold,
            **details
        )

    def reset(self) -> None:
        """Force the breaker back to CLOSED with an empty window."""
        self._state = CircuitBreakerState.CLOSED
        self._buckets.clear()
        self._trial_in_flight = False

    def get_state(self) -> Dict[str, Any]:
        """Get current circuit breaker state."""
        counts = self._window_counts()
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": counts["failures"],
            "call_count": counts["total"],
            "open_count": self._open_count,
            "last_failure_time": self._last_failure_time,
            "error_threshold": self.error_threshold,
            "volume_threshold": self.volume_threshold,
            "reset_timeout": self.reset_timeout
        }

    def is_open(self) -> bool:
        """Check if circuit breaker is in OPEN state."""
        return self._state == CircuitBreakerState.OPEN


class CircuitBreakerManager:
    """Manager for multiple circuit breakers."""

    def __init__(self):
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}
        self.logger = get_logger("circuit_breaker_manager")

    def register(self, breaker: CircuitBreaker) -> CircuitBreaker:
        """Track an externally constructed breaker."""
        self.circuit_breakers[breaker.name] = breaker
        self.logger.info("Registered circuit breaker", name=breaker.name)
        return breaker

    def get_circuit_breaker(self, name: str, **kwargs) -> CircuitBreaker:
        """Get or create a circuit breaker."""
        if name not in self.circuit_breakers:
            self.circuit_breakers[name] = CircuitBreaker(name=name, **kwargs)
            self.logger.info("Created circuit breaker", name=name)

        return self.circuit_breakers[name]

    def get_all_states(self) -> Dict[str, Dict[str, Any]]:
        """Get states of all circuit breakers."""
        return {
            name: cb.get_state()
            for name, cb in self.circuit_breakers.items()
        }
