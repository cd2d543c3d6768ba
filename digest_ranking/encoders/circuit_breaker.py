"""Circuit breaker for embedding provider calls.

Each ``EmbeddingManager`` owns one breaker for its provider. While the
breaker is open, requests fail fast with ``CircuitBreakerError`` and the
manager hands out fallback vectors instead of waiting on a provider that is
down. The lock guards only the state fields; the wrapped call runs outside
it.
"""

import asyncio
import inspect
import time
from enum import Enum
from typing import Any, Callable, Optional

import structlog

from ..common.metrics import MetricsCollector

logger = structlog.get_logger("encoders.circuit_breaker")


class CircuitBreakerState(Enum):
    CLOSED = "closed"        # Requests flow to the provider
    OPEN = "open"            # Requests are rejected
    HALF_OPEN = "half_open"  # One probe is allowed through


class CircuitBreakerError(Exception):
    """Raised instead of calling a provider whose breaker is open."""

    def __init__(self, name: str, retry_after: float):
        super().__init__(f"Circuit breaker {name} is open, next probe in {retry_after:.1f}s")
        self.name = name
        self.retry_after = retry_after


class CircuitBreaker:
    """Opens after ``failure_threshold`` consecutive failures.

    Parameters
    - failure_threshold: Consecutive failures that open the breaker
    - recovery_timeout: Seconds before an open breaker lets a probe through
    - expected_exception: Exception type(s) counted as provider failures
    - name: Identifier for logs and the state gauge
    - metrics: Optional collector receiving state changes
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        expected_exception: type = Exception,
        name: str = "embedding",
        metrics: Optional[MetricsCollector] = None,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.name = name
        self.metrics = metrics

        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = CircuitBreakerState.CLOSED
        self._probe_in_flight = False
        self._lock = asyncio.Lock()

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """Run ``func`` unless the breaker is open."""
        await self._before_call()

        try:
            if inspect.iscoroutinefunction(func):
                result = await func(*args, **kwargs)
            else:
                result = func(*args, **kwargs)
        except self.expected_exception:
            await self._on_failure()
            raise
        except BaseException:
            # Cancellation says nothing about provider health
            await self._release_probe()
            raise

        await self._on_success()
        return result

    async def _before_call(self) -> None:
        async with self._lock:
            if self.state == CircuitBreakerState.CLOSED:
                return

            if self.state == CircuitBreakerState.OPEN:
                remaining = self._seconds_until_probe()
                if remaining > 0:
                    raise CircuitBreakerError(self.name, remaining)
                self._transition(CircuitBreakerState.HALF_OPEN)

            if self._probe_in_flight:
                raise CircuitBreakerError(self.name, 0.0)
            self._probe_in_flight = True

    def _seconds_until_probe(self) -> float:
        if self.last_failure_time is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (time.time() - self.last_failure_time))

    async def _release_probe(self) -> None:
        async with self._lock:
            self._probe_in_flight = False

    async def _on_success(self) -> None:
        async with self._lock:
            self._probe_in_flight = False
            self.failure_count = 0
            if self.state != CircuitBreakerState.CLOSED:
                self._transition(CircuitBreakerState.CLOSED)

    async def _on_failure(self) -> None:
        async with self._lock:
            self._probe_in_flight = False
            self.failure_count += 1
            self.last_failure_time = time.time()

            if self.state == CircuitBreakerState.HALF_OPEN or self.failure_count >= self.failure_threshold:
                if self.state != CircuitBreakerState.OPEN:
                    self._transition(CircuitBreakerState.OPEN)

    def _transition(self, state: CircuitBreakerState) -> None:
        previous, self.state = self.state, state
        log = logger.warning if state == CircuitBreakerState.OPEN else logger.info
        log(
            "Embedding circuit breaker state changed",
            name=self.name,
            previous=previous.value,
            state=state.value,
            failure_count=self.failure_count
        )
        if self.metrics:
            self.metrics.record_breaker_state(self.name, state.value)

    def get_state(self) -> CircuitBreakerState:
        return self.state

    def get_stats(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "last_failure_time": self.last_failure_time,
            "seconds_until_probe": self._seconds_until_probe() if self.state == CircuitBreakerState.OPEN else 0.0,
        }

    async def force_close(self) -> None:
        """Close the breaker, e.g. after an operator fixed the provider."""
        async with self._lock:
            self.failure_count = 0
            self.last_failure_time = None
            self._probe_in_flight = False
            if self.state != CircuitBreakerState.CLOSED:
                self._transition(CircuitBreakerState.CLOSED)
