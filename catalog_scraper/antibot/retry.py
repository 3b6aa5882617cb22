"""Retry policy for crawl requests and a circuit breaker for side services."""
from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Bounded retries with a jittered backoff window.

    A request is attempted at most ``max_retries + 1`` times.
    """

    max_retries: int = 3
    backoff_min: float = 5.0
    backoff_max: float = 10.0

    def should_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_retries

    def backoff_delay(self) -> float:
        return random.uniform(self.backoff_min, self.backoff_max)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject calls
    HALF_OPEN = "half_open"  # Probing whether the service recovered


class CircuitOpenError(RuntimeError):
    """Raised instead of calling the protected service while the circuit is open."""


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 3
    success_threshold: int = 1
    timeout: float = 60.0  # Seconds before a half-open probe
    expected_exceptions: tuple = (Exception,)


class CircuitBreaker:
    """Async circuit breaker protecting an unreliable dependency."""

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None

    async def call(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """Await ``func`` under circuit protection.

        Raises
        ------
        CircuitOpenError
            If the circuit is open and the cool-down has not elapsed
        """
        if self.state == CircuitState.OPEN:
            elapsed = self._clock() - (self.last_failure_time or 0.0)
            if elapsed < self.config.timeout:
                raise CircuitOpenError(
                    f"Circuit breaker is OPEN ({self.failure_count} failures, "
                    f"retry in {self.config.timeout - elapsed:.0f}s)"
                )
            LOGGER.info("Circuit breaker transitioning to HALF_OPEN")
            self.state = CircuitState.HALF_OPEN
            self.success_count = 0

        try:
            result = await func(*args, **kwargs)
        except self.config.expected_exceptions:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _on_success(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.config.success_threshold:
                LOGGER.info("Circuit breaker transitioning to CLOSED (recovered)")
                self.reset()
        else:
            self.failure_count = 0

    def _on_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()
        if self.state == CircuitState.HALF_OPEN:
            LOGGER.warning("Circuit breaker failure in HALF_OPEN, reopening")
            self.state = CircuitState.OPEN
        elif self.failure_count >= self.config.failure_threshold:
            LOGGER.warning("Circuit breaker OPEN after %d failures", self.failure_count)
            self.state = CircuitState.OPEN

    def reset(self) -> None:
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = None

    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN
