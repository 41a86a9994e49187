"""Circuit breaker guarding the embedding and completion providers.

While a provider keeps failing, calls short-circuit immediately so the search
path drops to its fallback instead of waiting out a timeout on every request.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import TypeVar

from .errors import VicinityError
from .metrics import circuit_breaker_state
from .settings import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"  # calls pass through
    OPEN = "open"  # calls rejected until cooldown elapses
    HALF_OPEN = "half_open"  # one probe allowed

    @property
    def gauge_value(self) -> int:
        return {"closed": 0, "open": 1, "half_open": 2}[self.value]


@dataclass
class CircuitBreakerStats:
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    consecutive_failures: int = 0
    circuit_opened_count: int = 0
    last_failure_time: float | None = None
    last_success_time: float | None = None


class CircuitOpenError(VicinityError):
    retryable = True

    def __init__(self, name: str, retry_in: float) -> None:
        super().__init__(f"Circuit breaker '{name}' is open; retry in {retry_in:.1f}s")
        self.name = name
        self.retry_in = retry_in


class CircuitBreaker:
    """
    Three-state breaker.

    CLOSED -> OPEN after ``failure_threshold`` consecutive failures.
    OPEN -> HALF_OPEN once ``cooldown_seconds`` have elapsed.
    HALF_OPEN -> CLOSED after ``success_threshold`` successes, or back to OPEN on failure.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int | None = None,
        cooldown_seconds: float | None = None,
        success_threshold: int = 1,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = (
            failure_threshold
            if failure_threshold is not None
            else settings.UPSTREAM_FAILURE_THRESHOLD
        )
        self.cooldown_seconds = (
            cooldown_seconds if cooldown_seconds is not None else settings.UPSTREAM_COOLDOWN_SECONDS
        )
        self.success_threshold = success_threshold
        self.enabled = enabled
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._stats = CircuitBreakerStats()
        self._lock = Lock()
        self._opened_at = 0.0
        self._half_open_successes = 0
        circuit_breaker_state.labels(circuit_name=name).set(0)

    @property
    def state(self) -> CircuitState:
        with self._lock:
            if (
                self._state is CircuitState.OPEN
                and self._clock() - self._opened_at >= self.cooldown_seconds
            ):
                self._transition_to(CircuitState.HALF_OPEN)
            return self._state

    @property
    def stats(self) -> CircuitBreakerStats:
        return self._stats

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        if new_state is CircuitState.OPEN:
            self._opened_at = self._clock()
            self._stats.circuit_opened_count += 1
            logger.warning(
                "Circuit breaker '%s' opened after %d consecutive failures",
                self.name,
                self._stats.consecutive_failures,
            )
        elif new_state is CircuitState.CLOSED:
            self._stats.consecutive_failures = 0
            self._half_open_successes = 0
            if old_state is CircuitState.HALF_OPEN:
                logger.info("Circuit breaker '%s' closed after recovery", self.name)
        else:
            self._half_open_successes = 0
        circuit_breaker_state.labels(circuit_name=self.name).set(new_state.gauge_value)

    def _before_call(self) -> None:
        if self.state is CircuitState.OPEN:
            with self._lock:
                self._stats.rejected_calls += 1
                retry_in = max(0.0, self.cooldown_seconds - (self._clock() - self._opened_at))
            raise CircuitOpenError(self.name, retry_in)

    def _on_success(self) -> None:
        with self._lock:
            self._stats.total_calls += 1
            self._stats.successful_calls += 1
            self._stats.consecutive_failures = 0
            self._stats.last_success_time = time.time()
            if self._state is CircuitState.HALF_OPEN:
                self._half_open_successes += 1
                if self._half_open_successes >= self.success_threshold:
                    self._transition_to(CircuitState.CLOSED)

    def _on_failure(self) -> None:
        with self._lock:
            self._stats.total_calls += 1
            self._stats.failed_calls += 1
            self._stats.consecutive_failures += 1
            self._stats.last_failure_time = time.time()
            if self._state is CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)
            elif (
                self._state is CircuitState.CLOSED
                and self._stats.consecutive_failures >= self.failure_threshold
            ):
                self._transition_to(CircuitState.OPEN)

    async def call(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """Await ``func(*args, **kwargs)`` through the breaker.

        Raises CircuitOpenError without calling ``func`` while open. Cancellation
        is not counted as a provider failure.
        """
        if not self.enabled:
            return await func(*args, **kwargs)
        self._before_call()
        try:
            result = await func(*args, **kwargs)
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self._stats.consecutive_failures = 0
            self._transition_to(CircuitState.CLOSED)
        logger.info("Circuit breaker '%s' manually reset", self.name)

    def is_open(self) -> bool:
        return self.state is CircuitState.OPEN


_circuit_breakers: dict[str, CircuitBreaker] = {}
_breakers_lock = Lock()


def get_circuit_breaker(name: str) -> CircuitBreaker:
    with _breakers_lock:
        if name not in _circuit_breakers:
            _circuit_breakers[name] = CircuitBreaker(name)
        return _circuit_breakers[name]


def reset_all_breakers() -> None:
    with _breakers_lock:
        breakers = list(_circuit_breakers.values())
    for breaker in breakers:
        breaker.reset()


__all__ = [
    "CircuitBreaker",
    "CircuitBreakerStats",
    "CircuitOpenError",
    "CircuitState",
    "get_circuit_breaker",
    "reset_all_breakers",
]
