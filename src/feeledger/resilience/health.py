"""
Upstream health probing and per-read deadlines.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from feeledger.core.exceptions import UpstreamTimeoutError
from feeledger.resilience.retry import describe_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Reads that overrun their deadline keep running in the background; the pool
# bounds how many of those can pile up.
_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="feeledger-read")


@dataclass
class HealthStatus:
    healthy: bool
    latency: float
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"healthy": self.healthy, "latency": self.latency, "error": self.error}


def call_with_timeout(operation: Callable[[], T], timeout: float | None) -> T:
    """Run ``operation`` and raise UpstreamTimeoutError if it overruns ``timeout`` seconds."""
    if timeout is None or timeout <= 0:
        return operation()
    future = _executor.submit(operation)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as exc:
        future.cancel()
        raise UpstreamTimeoutError(
            f"Upstream read timed out after {timeout:.1f}s", {"timeout": timeout}
        ) from exc


def check_health(query: Callable[[], Any], timeout: float = 5.0) -> HealthStatus:
    """
    Race a lightweight upstream query against ``timeout``.

    Never raises; failures and timeouts are reported in the returned status.
    """
    started = time.monotonic()
    try:
        call_with_timeout(query, timeout)
    except UpstreamTimeoutError:
        latency = time.monotonic() - started
        logger.warning(
            "Upstream health check timed out",
            extra={"event": "health.timeout", "timeout": timeout},
        )
        return HealthStatus(healthy=False, latency=latency, error="Upstream timeout")
    except Exception as exc:
        latency = time.monotonic() - started
        logger.warning(
            "Upstream health check failed: %s",
            describe_error(exc),
            extra={"event": "health.failed", "error_type": type(exc).__name__},
        )
        return HealthStatus(healthy=False, latency=latency, error=describe_error(exc))
    return HealthStatus(healthy=True, latency=time.monotonic() - started)
