import threading

import pytest

from feeledger.core.exceptions import UpstreamTimeoutError
from feeledger.resilience.cache import LRUCache
from feeledger.resilience.health import call_with_timeout, check_health
from feeledger.resilience.rate_limiter import TokenBucketRateLimiter

from feeledger_fakes import FakeClock


# ==================== LRU cache ====================


def test_cache_get_set_and_default():
    cache = LRUCache(max_size=3, ttl_seconds=10, clock=FakeClock())
    assert cache.get("missing") is None
    assert cache.get("missing", "fallback") == "fallback"
    cache.set("a", 1)
    assert cache.get("a") == 1
    assert cache.has("a")
    assert "a" in cache
    assert len(cache) == 1


def test_cache_evicts_least_recently_used():
    cache = LRUCache(max_size=2, ttl_seconds=10, clock=FakeClock())
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")
    cache.set("c", 3)
    assert cache.has("a")
    assert not cache.has("b")
    assert cache.has("c")


def test_cache_entries_expire_lazily():
    clock = FakeClock()
    cache = LRUCache(max_size=5, ttl_seconds=5, clock=clock)
    cache.set("short", 1, ttl_seconds=1)
    cache.set("long", 2)
    clock.advance(2)
    assert cache.get("short") is None
    assert cache.get("long") == 2
    clock.advance(4)
    assert cache.get("long") is None


def test_cache_cleanup_counts_removed_entries():
    clock = FakeClock()
    cache = LRUCache(max_size=5, ttl_seconds=5, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("c", 3, ttl_seconds=60)
    clock.advance(10)
    assert cache.cleanup() == 2
    assert len(cache) == 1


def test_cache_delete_and_clear():
    cache = LRUCache(max_size=5, ttl_seconds=5, clock=FakeClock())
    cache.set("a", 1)
    assert cache.delete("a") is True
    assert cache.delete("a") is False
    cache.set("b", 2)
    cache.clear()
    assert len(cache) == 0


def test_cache_stores_falsy_values():
    cache = LRUCache(max_size=5, ttl_seconds=5, clock=FakeClock())
    cache.set("flag", False)
    assert cache.has("flag")
    assert cache.get("flag") is False


def test_cache_rejects_non_positive_size():
    with pytest.raises(ValueError):
        LRUCache(max_size=0)


# ==================== Token bucket ====================


def test_bucket_try_acquire_until_empty():
    limiter = TokenBucketRateLimiter(capacity=3, refill_rate=1, clock=FakeClock())
    assert [limiter.try_acquire() for _ in range(4)] == [True, True, True, False]
    assert limiter.available_tokens() == 0


def test_bucket_refills_continuously_up_to_capacity():
    clock = FakeClock()
    limiter = TokenBucketRateLimiter(capacity=3, refill_rate=2, clock=clock)
    for _ in range(3):
        limiter.try_acquire()
    clock.advance(0.5)
    assert limiter.available_tokens() == 1
    clock.advance(100)
    assert limiter.available_tokens() == 3


def test_bucket_acquire_sleeps_for_computed_wait():
    clock = FakeClock()
    sleeps = []

    def sleep(seconds):
        sleeps.append(seconds)
        clock.advance(seconds)

    limiter = TokenBucketRateLimiter(capacity=1, refill_rate=4, clock=clock, sleep=sleep)
    assert limiter.acquire() == 0.0
    assert limiter.acquire() == pytest.approx(0.25)
    assert sleeps == [pytest.approx(0.25)]
    assert limiter.available_tokens() == 0


def test_bucket_reset_restores_capacity():
    limiter = TokenBucketRateLimiter(capacity=2, refill_rate=1, clock=FakeClock())
    limiter.try_acquire()
    limiter.try_acquire()
    limiter.reset()
    assert limiter.available_tokens() == 2


# ==================== Health check ====================


def test_health_check_reports_success():
    status = check_health(lambda: 12345, timeout=1.0)
    assert status.healthy is True
    assert status.error is None
    assert status.latency >= 0


def test_health_check_reports_failure_without_raising():
    def refuse():
        raise ConnectionError("connection refused")

    status = check_health(refuse, timeout=1.0)
    assert status.healthy is False
    assert status.error == "connection refused"


def test_health_check_reports_timeout():
    release = threading.Event()
    try:
        status = check_health(lambda: release.wait(5), timeout=0.05)
    finally:
        release.set()
    assert status.healthy is False
    assert status.error == "Upstream timeout"
    assert status.to_dict()["healthy"] is False


def test_call_with_timeout_raises_typed_error():
    release = threading.Event()
    try:
        with pytest.raises(UpstreamTimeoutError):
            call_with_timeout(lambda: release.wait(5), 0.05)
    finally:
        release.set()


def test_call_without_timeout_runs_inline():
    assert call_with_timeout(lambda: threading.current_thread().name, None) == threading.current_thread().name
