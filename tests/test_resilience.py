"""
Retry and timeout tests.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import threading
import time

import pytest

from agreement.resilience import (
    BackoffStrategy,
    RetryExhaustedError,
    RetryPolicy,
    Timeout,
    TimeoutError,
)


class Transient(Exception):
    pass


class Fatal(Exception):
    pass


def no_sleep(**kwargs) -> RetryPolicy:
    kwargs.setdefault("base_delay_seconds", 0.0)
    kwargs.setdefault("backoff_strategy", BackoffStrategy.FIXED)
    return RetryPolicy(sleep=lambda _: None, **kwargs)


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_succeeds_after_transient_failures(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise Transient()
            return "ok"

        policy = no_sleep(max_attempts=3, retryable_exceptions=(Transient,))
        assert policy.execute(flaky) == "ok"
        assert policy.metrics.total_attempts == 3
        assert policy.metrics.successful_attempts == 1

    def test_exhausted(self):
        policy = no_sleep(max_attempts=2, retryable_exceptions=(Transient,))
        with pytest.raises(RetryExhaustedError) as info:
            policy.execute(lambda: (_ for _ in ()).throw(Transient("down")))
        assert info.value.attempts == 2
        assert isinstance(info.value.last_exception, Transient)
        assert policy.metrics.retries_exhausted == 1

    def test_non_retryable_raised_immediately(self):
        calls = []

        def fatal():
            calls.append(1)
            raise Fatal()

        policy = no_sleep(
            max_attempts=5,
            retryable_exceptions=(Exception,),
            non_retryable_exceptions=(Fatal,),
        )
        with pytest.raises(Fatal):
            policy.execute(fatal)
        assert len(calls) == 1

    def test_retry_on_result(self):
        results = iter(["wait", "wait", "done"])
        seen = []
        policy = no_sleep(
            max_attempts=5,
            retry_if_result=lambda r: r == "wait",
            on_retry=lambda attempt, cause, delay: seen.append((attempt, cause)),
        )
        assert policy.execute(lambda: next(results)) == "done"
        assert seen == [(1, "wait"), (2, "wait")]

    def test_result_retries_exhausted_returns_last(self):
        policy = no_sleep(max_attempts=2, retry_if_result=lambda r: True)
        assert policy.execute(lambda: "still waiting") == "still waiting"
        assert policy.metrics.retries_exhausted == 1

    def test_decorator(self):
        calls = []
        policy = no_sleep(max_attempts=2, retryable_exceptions=(Transient,))

        @policy
        def flaky(x):
            calls.append(x)
            if len(calls) == 1:
                raise Transient()
            return x * 2

        assert flaky(21) == 42

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestBackoff:
    """Tests for delay calculation."""

    @pytest.mark.parametrize("strategy,expected", [
        (BackoffStrategy.FIXED, [1.0, 1.0, 1.0]),
        (BackoffStrategy.LINEAR, [1.0, 2.0, 3.0]),
        (BackoffStrategy.EXPONENTIAL, [1.0, 2.0, 4.0]),
    ])
    def test_strategies(self, strategy, expected):
        delays = []
        policy = RetryPolicy(
            max_attempts=4,
            base_delay_seconds=1.0,
            backoff_strategy=strategy,
            retryable_exceptions=(Transient,),
            sleep=delays.append,
        )
        with pytest.raises(RetryExhaustedError):
            policy.execute(lambda: (_ for _ in ()).throw(Transient()))
        assert delays == expected

    def test_jitter_bounds(self):
        policy = RetryPolicy(base_delay_seconds=1.0, jitter_factor=0.5)
        for _ in range(20):
            assert 4.0 <= policy._calculate_delay(3) <= 6.0

    def test_max_delay_cap(self):
        policy = RetryPolicy(
            base_delay_seconds=10.0,
            max_delay_seconds=15.0,
            backoff_strategy=BackoffStrategy.EXPONENTIAL,
        )
        assert policy._calculate_delay(5) == 15.0


class TestTimeout:
    """Tests for bounded waits."""

    def test_fast_call(self):
        timeout = Timeout(1.0, name="fast")
        assert timeout.execute(lambda: 7) == 7
        assert timeout.metrics.successful_calls == 1

    def test_slow_call(self):
        release = threading.Event()
        fired = []
        timeout = Timeout(0.05, name="slow", on_timeout=lambda: fired.append(True))
        start = time.monotonic()
        try:
            with pytest.raises(TimeoutError) as info:
                timeout.execute(lambda: release.wait(5))
        finally:
            release.set()
        assert time.monotonic() - start < 2.0
        assert info.value.operation == "slow"
        assert fired == [True]
        assert timeout.metrics.timed_out_calls == 1

    def test_exception_propagates(self):
        with pytest.raises(Fatal):
            Timeout(1.0).execute(lambda: (_ for _ in ()).throw(Fatal()))
