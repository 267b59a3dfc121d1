from __future__ import annotations

"""
Retry with exponential backoff and jitter.

Every guarded upstream read goes through ``retry_with_backoff`` before its
outcome is reported to the circuit breaker, so a single flaky response does
not count as a breaker failure.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryObserver = Callable[[int, Exception, float], None]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Backoff parameters.

    Attributes:
        max_retries: Retries after the first attempt (total calls = max_retries + 1)
        base_delay: Delay in seconds before the first retry
        max_delay: Upper bound for any single delay
        jitter: Upper bound of the uniform random jitter added to each delay
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter: float = 0.1

    def compute_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0 for the first retry)."""
        jitter = random.uniform(0, self.jitter) if self.jitter > 0 else 0.0
        return min(self.base_delay * (2**attempt) + jitter, self.max_delay)


DEFAULT_RETRY_POLICY = RetryPolicy()


def describe_error(error: BaseException) -> str:
    """Message for ``error`` that is never empty."""
    return str(error) or type(error).__name__


def retry_with_backoff(
    operation: Callable[[], T],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    on_retry: RetryObserver | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Execute ``operation`` with retry logic.

    Args:
        operation: Zero-argument callable to execute
        policy: Backoff parameters
        on_retry: Observer called as ``(attempt, error, delay)`` before each sleep
        sleep: Sleep function (injectable for tests)

    Returns:
        The operation's return value

    Raises:
        The last exception raised by ``operation`` once retries are exhausted
    """
    attempt = 0
    while True:
        try:
            result = operation()
        except Exception as exc:
            if attempt >= policy.max_retries:
                logger.warning(
                    "Operation failed after %d attempts: %s",
                    attempt + 1,
                    describe_error(exc),
                    extra={"event": "retry.exhausted", "error_type": type(exc).__name__},
                )
                raise

            delay = policy.compute_delay(attempt)
            logger.debug(
                "Attempt %d failed (%s), retrying in %.2fs",
                attempt + 1,
                describe_error(exc),
                delay,
                extra={"event": "retry.scheduled", "error_type": type(exc).__name__},
            )
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            sleep(delay)
            attempt += 1
            continue

        if attempt > 0:
            logger.info(
                "Operation succeeded on attempt %d",
                attempt + 1,
                extra={"event": "retry.recovered"},
            )
        return result
