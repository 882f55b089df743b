"""Tests for the provider circuit breaker."""
import asyncio

import pytest

from deepcite.llm.circuit_breaker import CircuitBreaker, CircuitState


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_opens_at_threshold(self):
        breaker = CircuitBreaker("local", threshold=3, cooldown_seconds=60, clock=FakeClock())
        await breaker.record_failure()
        await breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        assert await breaker.allow()

        await breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert not await breaker.allow()
        assert breaker.retry_after() == pytest.approx(60)

    @pytest.mark.asyncio
    async def test_half_open_after_cooldown_then_closes_on_success(self):
        clock = FakeClock()
        breaker = CircuitBreaker("cloud", threshold=1, cooldown_seconds=60, clock=clock)
        await breaker.record_failure()

        clock.now += 59
        assert not await breaker.allow()
        clock.now += 1
        assert await breaker.allow()
        assert breaker.state == CircuitState.HALF_OPEN

        await breaker.record_success()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0
        assert breaker.retry_after() == 0.0

    @pytest.mark.asyncio
    async def test_failed_trial_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker("cloud", threshold=2, cooldown_seconds=30, clock=clock)
        await breaker.record_failure()
        await breaker.record_failure()
        clock.now += 30
        assert await breaker.allow()

        await breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert not await breaker.allow()

    @pytest.mark.asyncio
    async def test_half_open_admits_one_trial_call(self):
        clock = FakeClock()
        breaker = CircuitBreaker("cloud", threshold=1, cooldown_seconds=60, clock=clock)
        await breaker.record_failure()
        clock.now += 60

        admitted = await asyncio.gather(*(breaker.allow() for _ in range(5)))

        assert admitted.count(True) == 1
        assert breaker.state == CircuitState.HALF_OPEN
        await breaker.record_success()
        assert await breaker.allow()
        assert await breaker.allow()

    @pytest.mark.asyncio
    async def test_abandoned_trial_is_replaced_after_cooldown(self):
        clock = FakeClock()
        breaker = CircuitBreaker("cloud", threshold=1, cooldown_seconds=60, clock=clock)
        await breaker.record_failure()
        clock.now += 60
        assert await breaker.allow()

        clock.now += 59
        assert not await breaker.allow()
        clock.now += 1
        assert await breaker.allow()

    @pytest.mark.asyncio
    async def test_success_resets_counter(self):
        breaker = CircuitBreaker("local", threshold=3, clock=FakeClock())
        await breaker.record_failure()
        await breaker.record_failure()
        await breaker.record_success()
        await breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_concurrent_failures_are_counted(self):
        breaker = CircuitBreaker("local", threshold=100, clock=FakeClock())
        await asyncio.gather(*(breaker.record_failure() for _ in range(40)))
        assert breaker.consecutive_failures == 40

    @pytest.mark.asyncio
    async def test_reset(self):
        breaker = CircuitBreaker("local", threshold=1, clock=FakeClock())
        await breaker.record_failure()
        await breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert await breaker.allow()
