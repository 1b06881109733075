"""
Shielded Counter Resilience Helpers

Retry and timeout patterns used by the transition orchestrator around ledger
calls and proof generation.

    ┌────────────────────────────────────────────────────────────┐
    │  Retry Policy                 Timeout                       │
    │  ├─ Exponential / jitter      ├─ Bounded await              │
    │  ├─ Max attempts              ├─ Typed timeout error        │
    │  └─ Retryable predicate       └─ Metrics                    │
    └────────────────────────────────────────────────────────────┘

Only the orchestrator decides what is retryable; this module applies the
decision it is given.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import asyncio
import random
import threading
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Optional, TypeVar

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
    base_delay_seconds: float = 0.1
    max_delay_seconds: float = 5.0
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL_JITTER
    jitter_factor: float = 0.5


@dataclass
class RetryMetrics:
    """Retry metrics."""
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    retries_exhausted: int = 0
    total_retry_delay_seconds: float = 0.0


class RetryPolicy:
    """
    Retry policy for coroutines with configurable backoff.

    The last exception is re-raised unchanged once attempts are exhausted or
    when ``is_retryable`` rejects it, so typed errors reach the caller intact.

    Example:
        retry = RetryPolicy(max_attempts=3, is_retryable=lambda e: e.retryable)
        tx_hash = await retry.execute(lambda: ledger.submit(tx))
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_seconds: float = 0.1,
        max_delay_seconds: float = 5.0,
        backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL_JITTER,
        jitter_factor: float = 0.5,
        is_retryable: Optional[Callable[[BaseException], bool]] = None,
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.config = RetryConfig(
            max_attempts=max_attempts,
            base_delay_seconds=base_delay_seconds,
            max_delay_seconds=max_delay_seconds,
            backoff_strategy=backoff_strategy,
            jitter_factor=jitter_factor,
        )
        self._is_retryable = is_retryable or (lambda exc: bool(getattr(exc, "retryable", False)))
        self._on_retry = on_retry
        self._metrics = RetryMetrics()
        self._lock = threading.Lock()

    @property
    def metrics(self) -> RetryMetrics:
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
        strategy = self.config.backoff_strategy

        if strategy == BackoffStrategy.FIXED:
            delay = base
        elif strategy == BackoffStrategy.LINEAR:
            delay = base * attempt
        elif strategy == BackoffStrategy.EXPONENTIAL:
            delay = base * (2 ** (attempt - 1))
        elif strategy == BackoffStrategy.EXPONENTIAL_JITTER:
            exp_delay = base * (2 ** (attempt - 1))
            delay = exp_delay + random.uniform(0, self.config.jitter_factor * exp_delay)
        else:
            delay = base

        return min(delay, self.config.max_delay_seconds)

    async def execute(self, func: Callable[[], Awaitable[T]]) -> T:
        """Await ``func()`` until it succeeds or a failure is final."""
        for attempt in range(1, self.config.max_attempts + 1):
            with self._lock:
                self._metrics.total_attempts += 1
            try:
                result = await func()
            except Exception as e:
                with self._lock:
                    self._metrics.failed_attempts += 1
                if not self._is_retryable(e):
                    raise
                if attempt >= self.config.max_attempts:
                    with self._lock:
                        self._metrics.retries_exhausted += 1
                    raise

                delay = self._calculate_delay(attempt)
                with self._lock:
                    self._metrics.total_retry_delay_seconds += delay
                if self._on_retry:
                    self._on_retry(attempt, e, delay)
                await asyncio.sleep(delay)
            else:
                with self._lock:
                    self._metrics.successful_attempts += 1
                return result

        raise AssertionError("unreachable")  # pragma: no cover


# ════════════════════════════════════════════════════════════════════════════
# TIMEOUT
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class TimeoutMetrics:
    """Timeout metrics."""
    total_calls: int = 0
    successful_calls: int = 0
    timed_out_calls: int = 0


class Timeout:
    """
    Bounded await that converts expiry into a caller-chosen error.

    Example:
        fetch = Timeout(10.0, "fetch_path", lambda: ConcurrencyError("timed out"))
        raw = await fetch.execute(ledger.fetch_path(commitment))
    """

    def __init__(
        self,
        seconds: float,
        name: str,
        error_factory: Callable[[str, float], Exception],
    ):
        self.seconds = seconds
        self.name = name
        self._error_factory = error_factory
        self._metrics = TimeoutMetrics()
        self._lock = threading.Lock()

    @property
    def metrics(self) -> TimeoutMetrics:
        with self._lock:
            return TimeoutMetrics(
                total_calls=self._metrics.total_calls,
                successful_calls=self._metrics.successful_calls,
                timed_out_calls=self._metrics.timed_out_calls,
            )

    async def execute(self, awaitable: Awaitable[T]) -> T:
        with self._lock:
            self._metrics.total_calls += 1
        try:
            result = await asyncio.wait_for(awaitable, timeout=self.seconds)
        except asyncio.TimeoutError as e:
            with self._lock:
                self._metrics.timed_out_calls += 1
            raise self._error_factory(self.name, self.seconds) from e
        with self._lock:
            self._metrics.successful_calls += 1
        return result


def describe_timeout(operation: str, seconds: float) -> str:
    return f"Operation '{operation}' timed out after {seconds}s"


__all__: Any = [
    "BackoffStrategy",
    "RetryConfig",
    "RetryMetrics",
    "RetryPolicy",
    "Timeout",
    "TimeoutMetrics",
    "describe_timeout",
]
