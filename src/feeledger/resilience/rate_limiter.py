"""
Token-bucket rate limiting for upstream reads.

Tokens accrue continuously from elapsed wall-clock time, capped at capacity.
"""

from __future__ import annotations

import threading
import time
from typing import Callable


class TokenBucketRateLimiter:
    """
    Token bucket with a non-blocking and a blocking acquire.

    Args:
        capacity: Maximum number of stored tokens (burst size)
        refill_rate: Tokens added per second
    """

    def __init__(
        self,
        capacity: float = 10,
        refill_rate: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if capacity <= 0:
            raise ValueError("Rate limiter capacity must be positive.")
        if refill_rate <= 0:
            raise ValueError("Rate limiter refill rate must be positive.")
        self.capacity = float(capacity)
        self.refill_rate = float(refill_rate)
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
        self._last_refill = now

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill()
            if self._tokens >= 1:
                self._tokens -= 1
                return True
            return False

    def acquire(self) -> float:
        """Take a token, sleeping until one is available. Returns the time waited."""
        with self._lock:
            self._refill()
            if self._tokens >= 1:
                self._tokens -= 1
                return 0.0
            wait = (1 - self._tokens) / self.refill_rate
        self._sleep(wait)
        with self._lock:
            self._refill()
            # The awaited token is consumed even if the clock did not move
            self._tokens = max(0.0, self._tokens - 1)
        return wait

    def available_tokens(self) -> int:
        with self._lock:
            self._refill()
            return int(self._tokens)

    def reset(self) -> None:
        with self._lock:
            self._tokens = self.capacity
            self._last_refill = self._clock()
