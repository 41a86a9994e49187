"""Test circuit breaker implementation."""

import asyncio

import pytest
from backend.vicinity.circuit_breaker import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    get_circuit_breaker,
)


class CircuitTestFailure(RuntimeError):
    """Custom error for circuit breaker tests."""


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class Upstream:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls = 0

    async def __call__(self, *args, **kwargs):
        self.calls += 1
        if self.fail:
            raise CircuitTestFailure("Test failure")
        return "success"


def call(breaker, func, *args, **kwargs):
    return asyncio.run(breaker.call(func, *args, **kwargs))


class TestCircuitBreaker:
    """Test the circuit breaker pattern implementation."""

    def test_circuit_starts_closed(self):
        breaker = CircuitBreaker("test", failure_threshold=3, cooldown_seconds=1)
        assert breaker.state == CircuitState.CLOSED
        assert not breaker.is_open()

    def test_successful_calls_pass_through(self):
        breaker = CircuitBreaker("test", failure_threshold=3)
        upstream = Upstream()

        assert call(breaker, upstream, "arg1", key="value") == "success"
        assert upstream.calls == 1
        assert breaker.stats.successful_calls == 1
        assert breaker.stats.failed_calls == 0

    def test_circuit_opens_after_threshold(self):
        """Circuit should open after consecutive failures reach threshold."""
        breaker = CircuitBreaker("test", failure_threshold=3, cooldown_seconds=10)
        failing = Upstream(fail=True)

        for _ in range(2):
            with pytest.raises(CircuitTestFailure, match="Test failure"):
                call(breaker, failing)
            assert breaker.state == CircuitState.CLOSED

        with pytest.raises(CircuitTestFailure):
            call(breaker, failing)
        assert breaker.state == CircuitState.OPEN
        assert breaker.stats.consecutive_failures == 3

    def test_open_circuit_rejects_calls(self):
        """Open circuit should reject calls without touching the upstream."""
        breaker = CircuitBreaker("test", failure_threshold=1, cooldown_seconds=10)
        with pytest.raises(CircuitTestFailure):
            call(breaker, Upstream(fail=True))

        upstream = Upstream()
        with pytest.raises(CircuitOpenError) as exc_info:
            call(breaker, upstream)

        assert upstream.calls == 0
        assert "Circuit breaker 'test' is open" in str(exc_info.value)
        assert exc_info.value.retryable is True
        assert breaker.stats.rejected_calls == 1

    def test_half_open_closes_on_success(self):
        clock = FakeClock()
        breaker = CircuitBreaker("test", failure_threshold=1, cooldown_seconds=5, clock=clock)
        with pytest.raises(CircuitTestFailure):
            call(breaker, Upstream(fail=True))
        assert breaker.state == CircuitState.OPEN

        clock.now = 5.0
        assert breaker.state == CircuitState.HALF_OPEN
        assert call(breaker, Upstream()) == "success"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats.consecutive_failures == 0

    def test_half_open_reopens_on_failure(self):
        clock = FakeClock()
        breaker = CircuitBreaker("test", failure_threshold=2, cooldown_seconds=5, clock=clock)
        failing = Upstream(fail=True)
        for _ in range(2):
            with pytest.raises(CircuitTestFailure):
                call(breaker, failing)

        clock.now = 6.0
        assert breaker.state == CircuitState.HALF_OPEN
        with pytest.raises(CircuitTestFailure):
            call(breaker, failing)
        assert breaker.state == CircuitState.OPEN
        assert breaker.stats.circuit_opened_count == 2

    def test_manual_reset(self):
        breaker = CircuitBreaker("test", failure_threshold=1)
        with pytest.raises(CircuitTestFailure):
            call(breaker, Upstream(fail=True))
        assert breaker.state == CircuitState.OPEN

        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert call(breaker, Upstream()) == "success"

    def test_disabled_circuit_breaker(self):
        breaker = CircuitBreaker("test", failure_threshold=1, enabled=False)
        failing = Upstream(fail=True)
        for _ in range(5):
            with pytest.raises(CircuitTestFailure):
                call(breaker, failing)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats.failed_calls == 0

    def test_global_circuit_breaker_instances(self):
        assert get_circuit_breaker("test_api") is get_circuit_breaker("test_api")
        assert get_circuit_breaker("test_api") is not get_circuit_breaker("other_api")
