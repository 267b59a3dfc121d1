import logging
import math
import time
from enum import Enum
from typing import Any, Callable, TypeVar

from feeledger.core.exceptions import CircuitOpenError

logger = logging.getLogger("feeledger.resilience.circuit_breaker")

T = TypeVar("T")


class CircuitBreakerState(Enum):
    CLOSED = "CLOSED"  # Operations proceed normally
    OPEN = "OPEN"  # Operations are blocked
    HALF_OPEN = "HALF_OPEN"  # Probing whether the upstream recovered


class CircuitBreaker:
    def __init__(
        self,
        name: str = "upstream",
        failure_threshold: int = 5,
        reset_timeout_seconds: float = 60.0,
        half_open_success_threshold: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not name:
            raise ValueError("Circuit breaker name cannot be empty.")
        if not isinstance(failure_threshold, int) or failure_threshold <= 0:
            raise ValueError("Failure threshold must be a positive integer.")
        if reset_timeout_seconds <= 0:
            raise ValueError("Reset timeout must be positive.")
        if not isinstance(half_open_success_threshold, int) or half_open_success_threshold <= 0:
            raise ValueError("Half-open success threshold must be a positive integer.")

        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self.half_open_success_threshold = half_open_success_threshold
        self._clock = clock

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: float = 0.0

        logger.info("Circuit breaker %s initialized in %s state", self.name, self._state.value)

    @property
    def state(self) -> CircuitBreakerState:
        # Automatically transition from OPEN to HALF_OPEN after timeout
        if self._state == CircuitBreakerState.OPEN:
            if self._clock() - self._opened_at >= self.reset_timeout_seconds:
                self._transition_to_half_open()
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _transition_to_open(self):
        self._state = CircuitBreakerState.OPEN
        self._opened_at = self._clock()
        self._success_count = 0
        logger.warning(
            "Circuit breaker %s tripped to %s after %d failures",
            self.name,
            self._state.value,
            self._failure_count,
        )

    def _transition_to_closed(self):
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        logger.info("Circuit breaker %s reset to %s", self.name, self._state.value)

    def _transition_to_half_open(self):
        self._state = CircuitBreakerState.HALF_OPEN
        self._success_count = 0
        logger.info("Circuit breaker %s transitioned to %s", self.name, self._state.value)

    def record_failure(self):
        state = self.state
        self._failure_count += 1
        if state == CircuitBreakerState.HALF_OPEN:
            # A failed trial call goes straight back to OPEN
            self._transition_to_open()
        elif state == CircuitBreakerState.OPEN:
            self._opened_at = self._clock()
        else:
            logger.warning(
                "Circuit breaker %s failure recorded (%d/%d)",
                self.name,
                self._failure_count,
                self.failure_threshold,
            )
            if self._failure_count >= self.failure_threshold:
                self._transition_to_open()

    def record_success(self):
        state = self.state
        if state == CircuitBreakerState.HALF_OPEN:
            self._success_count += 1
            logger.info(
                "Circuit breaker %s success recorded in HALF_OPEN (%d/%d)",
                self.name,
                self._success_count,
                self.half_open_success_threshold,
            )
            if self._success_count >= self.half_open_success_threshold:
                self._transition_to_closed()
        elif state == CircuitBreakerState.CLOSED:
            self._failure_count = 0
        # No action if OPEN

    def can_execute(self) -> bool:
        return self.state != CircuitBreakerState.OPEN

    def seconds_until_retry(self) -> int:
        if self.state != CircuitBreakerState.OPEN:
            return 0
        remaining = self.reset_timeout_seconds - (self._clock() - self._opened_at)
        return max(0, math.ceil(remaining))

    def execute(self, operation: Callable[[], T]) -> T:
        """Run ``operation`` through the breaker, re-raising its failures."""
        if not self.can_execute():
            retry_after = self.seconds_until_retry()
            raise CircuitOpenError(
                f"Circuit breaker {self.name} is OPEN. Retry after {retry_after}s",
                retry_after=retry_after,
                name=self.name,
            )
        try:
            result = operation()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def reset(self):
        """Manually reset circuit to CLOSED state."""
        self._opened_at = 0.0
        self._transition_to_closed()

    def force_open(self):
        """Manually trip the circuit breaker regardless of thresholds."""
        self._transition_to_open()

    def snapshot(self) -> dict[str, Any]:
        """Return a serializable snapshot of the breaker state for status queries."""
        return {
            "name": self.name,
            "state": self.state.value,
            "can_execute": self.can_execute(),
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "reset_timeout_seconds": self.reset_timeout_seconds,
            "half_open_success_threshold": self.half_open_success_threshold,
            "retry_after": self.seconds_until_retry(),
        }
