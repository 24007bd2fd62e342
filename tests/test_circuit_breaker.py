"""
Tests for the per-integration circuit breaker.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from billing_sync.core.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from billing_sync.core.errors import CircuitOpenError
from conftest import FakeClock


async def _fail() -> None:
    raise ConnectionError("down")


async def _ok() -> str:
    return "ok"


async def _trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(ConnectionError):
            await breaker.call(_fail)


@pytest.mark.unit
class TestCircuitBreaker:
    """State transitions driven by an injected clock."""

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, fake_clock: FakeClock) -> None:
        """The sixth call after five failures is rejected without being invoked."""
        breaker = CircuitBreaker("stripe", failure_threshold=5, clock=fake_clock)
        await _trip(breaker, 5)

        assert breaker.state is CircuitState.OPEN

        operation = AsyncMock()
        with pytest.raises(CircuitOpenError):
            await breaker.call(operation)
        operation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, fake_clock: FakeClock) -> None:
        breaker = CircuitBreaker("stripe", failure_threshold=3, clock=fake_clock)
        await _trip(breaker, 2)

        assert await breaker.call(_ok) == "ok"
        await _trip(breaker, 2)

        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 2

    @pytest.mark.asyncio
    async def test_stays_open_until_reset_timeout(self, fake_clock: FakeClock) -> None:
        breaker = CircuitBreaker(
            "stripe", failure_threshold=1, reset_timeout=60.0, clock=fake_clock
        )
        await _trip(breaker, 1)

        fake_clock.advance(59.0)
        with pytest.raises(CircuitOpenError):
            await breaker.call(_ok)

    @pytest.mark.asyncio
    async def test_successful_probe_closes(self, fake_clock: FakeClock) -> None:
        breaker = CircuitBreaker(
            "stripe", failure_threshold=1, reset_timeout=60.0, clock=fake_clock
        )
        await _trip(breaker, 1)
        fake_clock.advance(61.0)

        assert await breaker.call(_ok) == "ok"
        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_failed_probe_reopens(self, fake_clock: FakeClock) -> None:
        breaker = CircuitBreaker(
            "stripe", failure_threshold=1, reset_timeout=60.0, clock=fake_clock
        )
        await _trip(breaker, 1)
        fake_clock.advance(61.0)

        await _trip(breaker, 1)

        assert breaker.state is CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.call(_ok)

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_half_open_admits_single_probe(self, fake_clock: FakeClock) -> None:
        """While a probe is in flight, other calls are rejected."""
        breaker = CircuitBreaker(
            "stripe", failure_threshold=1, reset_timeout=60.0, clock=fake_clock
        )
        await _trip(breaker, 1)
        fake_clock.advance(61.0)

        release = asyncio.Event()

        async def slow_probe() -> str:
            await release.wait()
            return "probed"

        probe = asyncio.create_task(breaker.call(slow_probe))
        await asyncio.sleep(0)

        assert breaker.state is CircuitState.HALF_OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.call(_ok)

        release.set()
        assert await probe == "probed"
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_probe_frees_the_slot(self, fake_clock: FakeClock) -> None:
        breaker = CircuitBreaker(
            "stripe", failure_threshold=1, reset_timeout=60.0, clock=fake_clock
        )
        await _trip(breaker, 1)
        fake_clock.advance(61.0)

        probe = asyncio.create_task(breaker.call(asyncio.sleep, 10))
        await asyncio.sleep(0)
        probe.cancel()
        with pytest.raises(asyncio.CancelledError):
            await probe

        assert await breaker.call(_ok) == "ok"

    def test_snapshot(self) -> None:
        breaker = CircuitBreaker("stripe", failure_threshold=4, reset_timeout=30.0)

        snapshot = breaker.snapshot()

        assert snapshot["integration"] == "stripe"
        assert snapshot["state"] == "closed"
        assert snapshot["failure_threshold"] == 4
        assert snapshot["last_failure_at"] is None


@pytest.mark.unit
class TestCircuitBreakerRegistry:
    def test_one_breaker_per_integration(self) -> None:
        registry = CircuitBreakerRegistry(failure_threshold=2)

        assert registry.get("stripe") is registry.get("stripe")
        assert registry.get("stripe") is not registry.get("email")
        assert registry.get("email").failure_threshold == 2
        assert set(registry.snapshot()) == {"stripe", "email"}
