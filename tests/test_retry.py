"""
Tests for bounded retry with jittered backoff.
"""

import asyncio

import pytest

from app.core.retry import backoff_delay, retry_async


class Flaky:
    """Fails `failures` times, then returns "ok"."""

    def __init__(self, failures, error=ConnectionError):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error(f"failure {self.calls}")
        return "ok"


def run(operation, sleeps, **overrides):
    async def fake_sleep(delay):
        sleeps.append(delay)

    options = dict(
        max_attempts=4,
        base_delay=1.0,
        max_delay=30.0,
        is_retryable=lambda e: isinstance(e, ConnectionError),
        sleep=fake_sleep,
        rand=lambda: 1.0,
    )
    options.update(overrides)
    return asyncio.run(retry_async(operation, **options))


class TestBackoffDelay:

    def test_grows_exponentially(self):
        delays = [backoff_delay(n, 1.0, 30.0, rand=lambda: 1.0) for n in range(1, 6)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_capped_at_max_delay(self):
        assert backoff_delay(10, 1.0, 30.0, rand=lambda: 1.0) == 30.0

    def test_full_jitter(self):
        assert backoff_delay(3, 1.0, 30.0, rand=lambda: 0.25) == 1.0
        assert backoff_delay(3, 1.0, 30.0, rand=lambda: 0.0) == 0.0


class TestRetryAsync:

    def test_succeeds_after_retryable_failures(self):
        sleeps = []
        operation = Flaky(failures=2)

        assert run(operation, sleeps) == "ok"
        assert operation.calls == 3
        assert sleeps == [1.0, 2.0]

    def test_gives_up_after_max_attempts(self):
        sleeps = []
        operation = Flaky(failures=10)

        with pytest.raises(ConnectionError, match="failure 4"):
            run(operation, sleeps)

        assert operation.calls == 4
        assert len(sleeps) == 3

    def test_non_retryable_error_propagates_immediately(self):
        sleeps = []
        operation = Flaky(failures=1, error=ValueError)

        with pytest.raises(ValueError):
            run(operation, sleeps)

        assert operation.calls == 1
        assert sleeps == []

    def test_single_attempt_means_no_retry(self):
        sleeps = []
        operation = Flaky(failures=1)

        with pytest.raises(ConnectionError):
            run(operation, sleeps, max_attempts=1)

        assert sleeps == []

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            run(Flaky(failures=0), [], max_attempts=0)
