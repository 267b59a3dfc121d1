import pytest

from feeledger.resilience.retry import RetryPolicy, describe_error, retry_with_backoff


class Flaky:
    """Fails ``failures`` times, then returns ``result``."""

    def __init__(self, failures, result="ok", error=ConnectionError):
        self.failures = failures
        self.result = result
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error(f"failure {self.calls}")
        return self.result


def test_returns_immediately_on_success():
    sleeps = []
    operation = Flaky(0)
    assert retry_with_backoff(operation, RetryPolicy(), sleep=sleeps.append) == "ok"
    assert operation.calls == 1
    assert sleeps == []


def test_observer_called_once_per_retry():
    observed = []
    policy = RetryPolicy(max_retries=3, base_delay=1.0, max_delay=10.0, jitter=0)
    operation = Flaky(2)

    result = retry_with_backoff(
        operation,
        policy,
        on_retry=lambda attempt, error, delay: observed.append((attempt, str(error), delay)),
        sleep=lambda _: None,
    )

    assert result == "ok"
    assert operation.calls == 3
    assert observed == [(0, "failure 1", 1.0), (1, "failure 2", 2.0)]


def test_reraises_last_error_after_exhausting_retries():
    observed = []
    sleeps = []
    operation = Flaky(10, error=TimeoutError)
    policy = RetryPolicy(max_retries=3, base_delay=0.5, max_delay=10.0, jitter=0)

    with pytest.raises(TimeoutError) as excinfo:
        retry_with_backoff(
            operation,
            policy,
            on_retry=lambda *args: observed.append(args),
            sleep=sleeps.append,
        )

    assert str(excinfo.value) == "failure 4"
    assert operation.calls == 4
    assert len(observed) == 3
    assert sleeps == [0.5, 1.0, 2.0]


def test_zero_retries_calls_once():
    operation = Flaky(1)
    with pytest.raises(ConnectionError):
        retry_with_backoff(operation, RetryPolicy(max_retries=0), sleep=lambda _: None)
    assert operation.calls == 1


def test_delay_is_capped_and_jittered():
    policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=0.5)
    for attempt in range(6):
        delay = policy.compute_delay(attempt)
        assert delay <= 5.0
        assert delay >= min(2**attempt, 5.0)
    assert policy.compute_delay(10) == 5.0


def test_describe_error_never_empty():
    assert describe_error(ValueError("bad value")) == "bad value"
    assert describe_error(RuntimeError()) == "RuntimeError"
