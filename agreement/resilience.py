"""
Agreement Resilience Infrastructure

Retry and timeout patterns for the collaborators around the protocol.
The protocol itself never retries: retries belong to the ledger client
and to the orchestration that waits for a proof to become visible.

Usage
─────

    from agreement.resilience import RetryPolicy, Timeout

    retry = RetryPolicy(max_attempts=3, retryable_exceptions=(LedgerUnavailable,))
    timeout = Timeout(seconds=5.0, name="ledger.query")

    value = retry.execute(lambda: timeout.execute(lambda: client.query(...)))

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import concurrent.futures
import functools
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Optional, TypeVar

T = TypeVar("T")


# ════════════════════════════════════════════════════════════════════════════
# RETRY POLICY
# ════════════════════════════════════════════════════════════════════════════


class BackoffStrategy(Enum):
    """Retry backoff strategies."""
    FIXED = auto()           # Fixed delay between retries
    EXPONENTIAL = auto()     # Exponential backoff (2^n)
    EXPONENTIAL_JITTER = auto()  # Exponential with random jitter
    LINEAR = auto()          # Linear increase


@dataclass
class RetryConfig:
    """Retry policy configuration."""
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL_JITTER
    jitter_factor: float = 0.5
    retryable_exceptions: tuple = (Exception,)
    non_retryable_exceptions: tuple = ()


@dataclass
class RetryMetrics:
    """Retry metrics."""
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    retries_exhausted: int = 0
    total_retry_delay_seconds: float = 0.0


class RetryExhaustedError(Exception):
    """Raised when all retry attempts fail with an exception."""
    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Retry exhausted after {attempts} attempts: {last_exception}")


class RetryPolicy:
    """
    Retry policy with configurable backoff strategies.

    Retries on exceptions in ``retryable_exceptions`` and, when
    ``retry_if_result`` is given, on results for which it returns True.
    When result-based retries run out, the last result is returned
    rather than raised: a result is an answer, not a failure.

    Example:
        retry = RetryPolicy(max_attempts=5, retry_if_result=lambda v: v.retryable)
        verdict = retry.execute(lambda: condition.test(...))
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 60.0,
        backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL_JITTER,
        jitter_factor: float = 0.5,
        retryable_exceptions: tuple = (Exception,),
        non_retryable_exceptions: tuple = (),
        retry_if_result: Optional[Callable[[Any], bool]] = None,
        on_retry: Optional[Callable[[int, Any, float], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.config = RetryConfig(
            max_attempts=max_attempts,
            base_delay_seconds=base_delay_seconds,
            max_delay_seconds=max_delay_seconds,
            backoff_strategy=backoff_strategy,
            jitter_factor=jitter_factor,
            retryable_exceptions=retryable_exceptions,
            non_retryable_exceptions=non_retryable_exceptions,
        )
        self._metrics = RetryMetrics()
        self._lock = threading.Lock()
        self._retry_if_result = retry_if_result
        self._on_retry = on_retry
        self._sleep = sleep

    @property
    def metrics(self) -> RetryMetrics:
        """Current retry metrics."""
        with self._lock:
            return RetryMetrics(
                total_attempts=self._metrics.total_attempts,
                successful_attempts=self._metrics.successful_attempts,
                failed_attempts=self._metrics.failed_attempts,
                retries_exhausted=self._metrics.retries_exhausted,
                total_retry_delay_seconds=self._metrics.total_retry_delay_seconds,
            )

    def _calculate_delay(self, attempt: int) -> float:
        base = self.config.base_delay_seconds

        if self.config.backoff_strategy == BackoffStrategy.FIXED:
            delay = base
        elif self.config.backoff_strategy == BackoffStrategy.LINEAR:
            delay = base * attempt
        elif self.config.backoff_strategy == BackoffStrategy.EXPONENTIAL:
            delay = base * (2 ** (attempt - 1))
        elif self.config.backoff_strategy == BackoffStrategy.EXPONENTIAL_JITTER:
            exp_delay = base * (2 ** (attempt - 1))
            jitter = random.uniform(0, self.config.jitter_factor * exp_delay)
            delay = exp_delay + jitter
        else:
            delay = base

        return min(delay, self.config.max_delay_seconds)

    def _is_retryable(self, exc: Exception) -> bool:
        if isinstance(exc, self.config.non_retryable_exceptions):
            return False
        return isinstance(exc, self.config.retryable_exceptions)

    def _wait(self, attempt: int, cause: Any) -> None:
        delay = self._calculate_delay(attempt)
        with self._lock:
            self._metrics.total_retry_delay_seconds += delay
        if self._on_retry:
            self._on_retry(attempt, cause, delay)
        self._sleep(delay)

    def execute(self, func: Callable[[], T]) -> T:
        """Execute function with retry policy."""
        last_exception: Optional[Exception] = None

        for attempt in range(1, self.config.max_attempts + 1):
            with self._lock:
                self._metrics.total_attempts += 1

            try:
                result = func()
            except Exception as e:
                last_exception = e
                with self._lock:
                    self._metrics.failed_attempts += 1
                if not self._is_retryable(e):
                    raise
                if attempt < self.config.max_attempts:
                    self._wait(attempt, e)
                continue

            if self._retry_if_result is not None and self._retry_if_result(result):
                with self._lock:
                    self._metrics.failed_attempts += 1
                if attempt < self.config.max_attempts:
                    self._wait(attempt, result)
                    continue
                with self._lock:
                    self._metrics.retries_exhausted += 1
                return result

            with self._lock:
                self._metrics.successful_attempts += 1
            return result

        with self._lock:
            self._metrics.retries_exhausted += 1

        raise RetryExhaustedError(self.config.max_attempts, last_exception)

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        """Decorator for retry protection."""
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            return self.execute(lambda: func(*args, **kwargs))
        return wrapper


# ════════════════════════════════════════════════════════════════════════════
# TIMEOUT
# ════════════════════════════════════════════════════════════════════════════


class TimeoutError(Exception):
    """Raised when operation exceeds timeout."""
    def __init__(self, operation: str, timeout_seconds: float):
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Operation '{operation}' timed out after {timeout_seconds}s")


@dataclass
class TimeoutMetrics:
    """Timeout metrics."""
    total_calls: int = 0
    successful_calls: int = 0
    timed_out_calls: int = 0
    total_duration_seconds: float = 0.0


class Timeout:
    """
    Bounded wait for a blocking call.

    The call runs on a worker thread; the caller stops waiting after
    ``seconds``. The worker is abandoned, not interrupted.
    """

    def __init__(
        self,
        seconds: float,
        name: str = "operation",
        on_timeout: Optional[Callable[[], None]] = None,
    ):
        self.seconds = seconds
        self.name = name
        self._metrics = TimeoutMetrics()
        self._lock = threading.Lock()
        self._on_timeout = on_timeout

    @property
    def metrics(self) -> TimeoutMetrics:
        with self._lock:
            return TimeoutMetrics(
                total_calls=self._metrics.total_calls,
                successful_calls=self._metrics.successful_calls,
                timed_out_calls=self._metrics.timed_out_calls,
                total_duration_seconds=self._metrics.total_duration_seconds,
            )

    def execute(self, func: Callable[[], T]) -> T:
        """Execute function with timeout."""
        with self._lock:
            self._metrics.total_calls += 1

        start_time = time.monotonic()
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        try:
            future = executor.submit(func)
            try:
                result = future.result(timeout=self.seconds)
            except concurrent.futures.TimeoutError:
                with self._lock:
                    self._metrics.timed_out_calls += 1
                if self._on_timeout:
                    self._on_timeout()
                raise TimeoutError(self.name, self.seconds)
        finally:
            executor.shutdown(wait=False)

        with self._lock:
            self._metrics.successful_calls += 1
            self._metrics.total_duration_seconds += time.monotonic() - start_time
        return result

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        """Decorator for timeout protection."""
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            return self.execute(lambda: func(*args, **kwargs))
        return wrapper
