"""
Unit tests for the counter store circuit breaker.
"""

import asyncio

import pytest

from shared.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerManager,
    CircuitBreakerOpenException,
    CircuitBreakerState,
)
from shared.errors import StoreUnavailableError
from shared.test_helpers import FrozenClock


async def succeed():
    return "ok"


async def fail():
    raise StoreUnavailableError("down")


class TestCircuitBreaker:
    """Test cases for CircuitBreaker."""

    @pytest.fixture
    def clock(self):
        return FrozenClock(start=1000.0)

    @pytest.fixture
    def breaker(self, clock):
        return CircuitBreaker(
            name="test",
            error_threshold=2,
            volume_threshold=2,
            reset_timeout=30.0,
            call_timeout=1.0,
            rolling_window=10.0,
            buckets=10,
            clock=clock,
        )

    async def _fail_times(self, breaker, count):
        for _ in range(count):
            with pytest.raises(StoreUnavailableError):
                await breaker.call(fail)

    @pytest.mark.asyncio
    async def test_initial_state_closed(self, breaker):
        assert breaker.state is CircuitBreakerState.CLOSED
        assert await breaker.call(succeed) == "ok"

    @pytest.mark.asyncio
    async def test_stays_closed_at_thresholds(self, breaker):
        await self._fail_times(breaker, 2)

        assert breaker.state is CircuitBreakerState.CLOSED
        assert breaker.get_state()["failure_count"] == 2

    @pytest.mark.asyncio
    async def test_volume_must_exceed_threshold(self, clock):
        breaker = CircuitBreaker(error_threshold=1, volume_threshold=5, clock=clock)

        await self._fail_times(breaker, 5)
        assert breaker.state is CircuitBreakerState.CLOSED

        await self._fail_times(breaker, 1)
        assert breaker.state is CircuitBreakerState.OPEN

    @pytest.mark.asyncio
    async def test_opens_when_thresholds_reached(self, breaker):
        await self._fail_times(breaker, 3)

        assert breaker.is_open()
        calls = []

        async def tracked():
            calls.append(1)

        with pytest.raises(CircuitBreakerOpenException):
            await breaker.call(tracked)
        assert calls == []

    @pytest.mark.asyncio
    async def test_successes_count_towards_volume(self, clock):
        breaker = CircuitBreaker(error_threshold=1, volume_threshold=3, clock=clock)

        await breaker.call(succeed)
        await breaker.call(succeed)
        await self._fail_times(breaker, 1)
        assert breaker.state is CircuitBreakerState.CLOSED

        await self._fail_times(breaker, 1)
        assert breaker.state is CircuitBreakerState.OPEN

    @pytest.mark.asyncio
    async def test_old_failures_leave_rolling_window(self, breaker, clock):
        await self._fail_times(breaker, 2)
        clock.advance(11)
        await self._fail_times(breaker, 1)

        assert breaker.state is CircuitBreakerState.CLOSED
        assert breaker.get_state()["failure_count"] == 1

    @pytest.mark.asyncio
    async def test_half_open_trial_success_closes(self, breaker, clock):
        await self._fail_times(breaker, 3)
        clock.advance(29)
        with pytest.raises(CircuitBreakerOpenException):
            await breaker.call(succeed)

        clock.advance(1)
        assert await breaker.call(succeed) == "ok"

        assert breaker.state is CircuitBreakerState.CLOSED
        assert breaker.get_state()["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_half_open_trial_failure_reopens(self, breaker, clock):
        await self._fail_times(breaker, 3)
        clock.advance(30)

        await self._fail_times(breaker, 1)

        assert breaker.state is CircuitBreakerState.OPEN
        with pytest.raises(CircuitBreakerOpenException):
            await breaker.call(succeed)
        assert breaker.get_state()["open_count"] == 2

    @pytest.mark.asyncio
    async def test_half_open_admits_single_trial(self, breaker, clock):
        await self._fail_times(breaker, 3)
        clock.advance(30)
        release = asyncio.Event()

        async def slow_trial():
            await release.wait()
            return "trial"

        trial = asyncio.create_task(breaker.call(slow_trial))
        await asyncio.sleep(0)
        assert breaker.state is CircuitBreakerState.HALF_OPEN

        with pytest.raises(CircuitBreakerOpenException):
            await breaker.call(succeed)

        release.set()
        assert await trial == "trial"
        assert breaker.state is CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_call_admitted_while_closed_does_not_resolve_half_open(self, breaker, clock):
        release_stale = asyncio.Event()
        release_trial = asyncio.Event()

        async def stale_call():
            await release_stale.wait()
            return "stale"

        async def trial_call():
            await release_trial.wait()
            return "trial"

        stale = asyncio.create_task(breaker.call(stale_call))
        await asyncio.sleep(0)
        await self._fail_times(breaker, 3)
        assert breaker.is_open()

        clock.advance(30)
        trial = asyncio.create_task(breaker.call(trial_call))
        await asyncio.sleep(0)

        release_stale.set()
        assert await stale == "stale"
        assert breaker.state is CircuitBreakerState.HALF_OPEN
        with pytest.raises(CircuitBreakerOpenException):
            await breaker.call(succeed)

        release_trial.set()
        assert await trial == "trial"
        assert breaker.state is CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_call_admitted_while_closed_failing_does_not_reopen(self, breaker, clock):
        release_stale = asyncio.Event()

        async def stale_failure():
            await release_stale.wait()
            raise StoreUnavailableError("late")

        stale = asyncio.create_task(breaker.call(stale_failure))
        await asyncio.sleep(0)
        await self._fail_times(breaker, 3)
        clock.advance(30)
        release_trial = asyncio.Event()

        async def trial_call():
            await release_trial.wait()
            return "trial"

        trial = asyncio.create_task(breaker.call(trial_call))
        await asyncio.sleep(0)

        release_stale.set()
        with pytest.raises(StoreUnavailableError):
            await stale
        assert breaker.state is CircuitBreakerState.HALF_OPEN
        assert breaker.get_state()["open_count"] == 1

        release_trial.set()
        await trial
        assert breaker.state is CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, clock):
        breaker = CircuitBreaker(error_threshold=1, volume_threshold=1, call_timeout=0.01, clock=clock)

        async def hang():
            await asyncio.sleep(1)

        with pytest.raises(asyncio.TimeoutError):
            await breaker.call(hang)
        assert breaker.get_state()["failure_count"] == 1

        with pytest.raises(asyncio.TimeoutError):
            await breaker.call(hang)
        assert breaker.is_open()

    @pytest.mark.asyncio
    async def test_reset_closes_breaker(self, breaker):
        await self._fail_times(breaker, 3)

        breaker.reset()

        assert breaker.state is CircuitBreakerState.CLOSED
        assert await breaker.call(succeed) == "ok"


class TestCircuitBreakerManager:
    """Test cases for CircuitBreakerManager."""

    def test_get_circuit_breaker_reuses_instances(self):
        manager = CircuitBreakerManager()

        first = manager.get_circuit_breaker("redis", error_threshold=2)
        second = manager.get_circuit_breaker("redis")

        assert first is second
        assert first.error_threshold == 2

    def test_register_and_report_states(self):
        manager = CircuitBreakerManager()
        manager.register(CircuitBreaker(name="ratelimit_store"))

        states = manager.get_all_states()

        assert states["ratelimit_store"]["state"] == "closed"
