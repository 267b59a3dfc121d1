"""
Resilience primitives that gate every external read.
"""

from feeledger.resilience.cache import LRUCache
from feeledger.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerState
from feeledger.resilience.health import HealthStatus, call_with_timeout, check_health
from feeledger.resilience.rate_limiter import TokenBucketRateLimiter
from feeledger.resilience.retry import RetryPolicy, retry_with_backoff

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerState",
    "HealthStatus",
    "LRUCache",
    "RetryPolicy",
    "TokenBucketRateLimiter",
    "call_with_timeout",
    "check_health",
    "retry_with_backoff",
]
