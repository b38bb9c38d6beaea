"""
Backoff policy with pluggable delay strategies, jitter and adaptation.

Delays are computed in milliseconds from one of five strategies, optionally
stretched by an adaptive layer that looks at the error kind, the operation's
recent success rate and the reported system load, then capped and jittered.
"""

from __future__ import annotations

import asyncio
import os
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from ai_resilience.errors import (
    ErrorCategory,
    OperationTimeoutError,
    classify_exception,
    is_retryable_error,
)
from ai_resilience.telemetry.logger import get_logger
from ai_resilience.utils.clock import default_clock

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ai_resilience.utils.clock import Clock

T = TypeVar("T")

logger = get_logger(__name__)

_ERROR_FACTORS: dict[ErrorCategory, float] = {
    ErrorCategory.NETWORK: 1.5,
    ErrorCategory.TIMEOUT: 1.5,
    ErrorCategory.RATE_LIMIT: 3.0,
    ErrorCategory.DEPENDENCY: 1.2,
    ErrorCategory.AUTHENTICATION: 0.5,
}

_EMA_ALPHA = 0.1


class BackoffStrategy(str, Enum):
    """How the base delay grows with the attempt number."""

    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    FIBONACCI = "fibonacci"
    DECORRELATED = "decorrelated"


class JitterStrategy(str, Enum):
    """Jitter strategy for backoff delays."""

    NONE = "none"
    FULL = "full"
    EQUAL = "equal"
    DECORRELATED = "decorrelated"


@dataclass
class BackoffConfig:
    """Configuration for backoff.

    Attributes:
        base_delay_ms: Delay of the first retry
        max_delay_ms: Cap applied to every delay
        max_attempts: Total attempts including the first call
        multiplier: Growth factor for the exponential strategy
        strategy: Delay growth strategy
        jitter: Jitter strategy
        operation_timeout_seconds: Deadline for a single attempt
        total_timeout_seconds: Deadline for the whole retry sequence
        adaptive: Whether to apply error, success-rate and load factors
    """

    base_delay_ms: float = 1000.0
    max_delay_ms: float = 30000.0
    max_attempts: int = 5
    multiplier: float = 2.0
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    jitter: JitterStrategy = JitterStrategy.EQUAL
    operation_timeout_seconds: float = 10.0
    total_timeout_seconds: float = 60.0
    adaptive: bool = True

    @classmethod
    def default(cls) -> BackoffConfig:
        return cls()

    @classmethod
    def no_retry(cls) -> BackoffConfig:
        """Create a config that makes a single attempt."""
        return cls(max_attempts=1)

    @classmethod
    def from_env(cls) -> BackoffConfig:
        """Create configuration from environment variables."""
        return cls(
            base_delay_ms=float(os.getenv("AI_RESILIENCE_BACKOFF_BASE_MS", "1000")),
            max_delay_ms=float(os.getenv("AI_RESILIENCE_BACKOFF_MAX_MS", "30000")),
            max_attempts=int(os.getenv("AI_RESILIENCE_BACKOFF_MAX_ATTEMPTS", "5")),
            strategy=BackoffStrategy(os.getenv("AI_RESILIENCE_BACKOFF_STRATEGY", "exponential")),
            jitter=JitterStrategy(os.getenv("AI_RESILIENCE_BACKOFF_JITTER", "equal")),
        )


@dataclass
class BackoffResult:
    """Result of a backoff-driven execution.

    Attributes:
        success: Whether the operation eventually succeeded
        value: The result value (if success)
        error: The last error (if failed)
        attempts: Number of attempts made
        delays_ms: Delays slept between attempts
        total_time_seconds: Wall time spent, including delays
        aborted_reason: Why retrying stopped early, if it did
    """

    success: bool
    value: Any = None
    error: BaseException | None = None
    attempts: int = 0
    delays_ms: list[float] = field(default_factory=list)
    total_time_seconds: float = 0.0
    aborted_reason: str | None = None

    @property
    def total_delay_ms(self) -> float:
        return sum(self.delays_ms)


@dataclass
class OperationMetrics:
    """Rolling statistics for one operation id.

    ``success_rate`` is an exponential moving average with alpha 0.1.
    """

    total_attempts: int = 0
    successes: int = 0
    failures: int = 0
    success_rate: float = 1.0
    average_delay_ms: float = 0.0
    error_types: dict[str, int] = field(default_factory=dict)


def fibonacci(n: int) -> int:
    """Return the n-th Fibonacci number with ``fibonacci(1) == fibonacci(2) == 1``."""
    a, b = 0, 1
    for _ in range(max(n, 0)):
        a, b = b, a + b
    return a


class BackoffPolicy:
    """Retry executor driven by a backoff strategy.

    Example:
        >>> policy = BackoffPolicy(BackoffConfig(base_delay_ms=100, jitter=JitterStrategy.NONE))
        >>> [policy.calculate_delay(n) for n in (1, 2, 3)]
        [100.0, 200.0, 400.0]
        >>> result = await policy.execute(fetch_status, operation_id="status")
    """

    def __init__(
        self,
        config: BackoffConfig | None = None,
        clock: Clock | None = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._config = config or BackoffConfig()
        self._clock = clock or default_clock()
        self._rng = rng
        self._metrics: dict[str, OperationMetrics] = {}
        self._previous_delay: dict[str, float] = {}
        self._system_load: float | None = None

    @property
    def config(self) -> BackoffConfig:
        return self._config

    def _base_delay(self, attempt: int, operation_id: str | None) -> float:
        cfg = self._config
        if cfg.strategy == BackoffStrategy.FIXED:
            return cfg.base_delay_ms
        if cfg.strategy == BackoffStrategy.LINEAR:
            return cfg.base_delay_ms * attempt
        if cfg.strategy == BackoffStrategy.FIBONACCI:
            return cfg.base_delay_ms * fibonacci(attempt)
        if cfg.strategy == BackoffStrategy.DECORRELATED:
            previous = self._previous_delay.get(operation_id or "", cfg.base_delay_ms)
            return cfg.base_delay_ms + self._rng() * previous
        return cfg.base_delay_ms * cfg.multiplier ** (attempt - 1)

    def _adaptive_factor(self, error: BaseException | None, operation_id: str | None) -> float:
        factor = 1.0
        if error is not None:
            factor *= _ERROR_FACTORS.get(classify_exception(error), 1.0)

        metrics = self._metrics.get(operation_id) if operation_id else None
        if metrics is not None and metrics.total_attempts > 0:
            rate = metrics.success_rate
            if rate < 0.3:
                factor *= 2.0
            elif rate < 0.5:
                factor *= 1.5
            elif rate < 0.7:
                factor *= 1.2
            elif rate > 0.9:
                factor *= 0.8

        if self._system_load is not None:
            load = self._system_load
            if load > 0.9:
                factor *= 2.5
            elif load > 0.7:
                factor *= 1.8
            elif load > 0.5:
                factor *= 1.3
            elif load < 0.2:
                factor *= 0.7
        return factor

    def _apply_jitter(self, delay: float) -> float:
        cfg = self._config
        if cfg.jitter == JitterStrategy.FULL:
            return self._rng() * delay
        if cfg.jitter == JitterStrategy.EQUAL:
            return delay / 2 + self._rng() * delay / 2
        if cfg.jitter == JitterStrategy.DECORRELATED:
            low = min(cfg.base_delay_ms, delay)
            return low + self._rng() * (delay * 3 - low)
        return delay

    def calculate_delay(
        self,
        attempt: int,
        error: BaseException | None = None,
        operation_id: str | None = None,
    ) -> float:
        """Calculate the delay before retry number ``attempt``.

        Args:
            attempt: Retry number, starting at 1
            error: Error that caused the retry, for adaptive adjustment
            operation_id: Operation whose metrics drive adaptive adjustment

        Returns:
            Delay in milliseconds
        """
        delay = self._base_delay(attempt, operation_id)
        if self._config.adaptive:
            delay *= self._adaptive_factor(error, operation_id)
        delay = min(delay, self._config.max_delay_ms)
        delay = min(self._apply_jitter(delay), self._config.max_delay_ms)
        if operation_id is not None:
            self._previous_delay[operation_id] = delay
        return max(0.0, delay)

    def should_retry(self, error: BaseException) -> bool:
        """Authentication, authorization and validation failures are never retried."""
        return is_retryable_error(error)

    async def _attempt(self, operation: Callable[[], Awaitable[T]], timeout: float) -> T:
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise OperationTimeoutError(
                f"Attempt exceeded {timeout:.3f}s",
                timeout_seconds=timeout,
                timeout_type="operation",
            ) from exc

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_id: str = "default",
        on_retry: Callable[[int, BaseException, float], None] | None = None,
        attempt_timeout_seconds: float | None = None,
    ) -> BackoffResult:
        """Execute an operation, retrying with backoff.

        Each attempt is bounded by ``attempt_timeout_seconds``, or
        ``operation_timeout_seconds`` when not given; the whole
        sequence by ``total_timeout_seconds``. Whichever triggers first ends
        the sequence.

        Args:
            operation: Async operation to execute
            operation_id: Key for rolling metrics
            on_retry: Called with (attempt, error, delay_ms) before each retry
            attempt_timeout_seconds: Deadline of one attempt for this call

        Returns:
            BackoffResult with outcome
        """
        cfg = self._config
        per_attempt = (
            cfg.operation_timeout_seconds
            if attempt_timeout_seconds is None
            else attempt_timeout_seconds
        )
        start = self._clock.now()
        delays: list[float] = []
        last_error: BaseException | None = None
        attempt = 0

        def result(success: bool, value: Any = None, reason: str | None = None) -> BackoffResult:
            return BackoffResult(
                success=success,
                value=value,
                error=None if success else last_error,
                attempts=attempt,
                delays_ms=delays,
                total_time_seconds=self._clock.now() - start,
                aborted_reason=reason,
            )

        while attempt < cfg.max_attempts:
            remaining = cfg.total_timeout_seconds - (self._clock.now() - start)
            if remaining <= 0:
                return result(False, reason="total_timeout")

            attempt += 1
            try:
                value = await self._attempt(
                    operation, min(per_attempt, remaining)
                )
            except Exception as exc:
                last_error = exc
                self._record(operation_id, success=False, error=exc)
            else:
                self._record(operation_id, success=True)
                return result(True, value)

            if not self.should_retry(last_error):
                logger.info(
                    "Non-retryable failure, giving up",
                    operation_id=operation_id,
                    error=str(last_error),
                )
                return result(False, reason="non_retryable")

            if attempt >= cfg.max_attempts:
                break

            delay = self.calculate_delay(attempt, last_error, operation_id)
            elapsed = self._clock.now() - start
            if elapsed + delay / 1000 >= cfg.total_timeout_seconds:
                return result(False, reason="total_timeout")

            if on_retry:
                on_retry(attempt, last_error, delay)
            delays.append(delay)
            self._record_delay(operation_id, delay)
            await self._clock.sleep(delay / 1000)

        return result(False, reason="max_attempts")

    def _record(self, operation_id: str, success: bool, error: BaseException | None = None) -> None:
        metrics = self._metrics.setdefault(operation_id, OperationMetrics())
        metrics.total_attempts += 1
        outcome = 1.0 if success else 0.0
        metrics.success_rate = (1 - _EMA_ALPHA) * metrics.success_rate + _EMA_ALPHA * outcome
        if success:
            metrics.successes += 1
        else:
            metrics.failures += 1
            if error is not None:
                kind = classify_exception(error).value
                metrics.error_types[kind] = metrics.error_types.get(kind, 0) + 1

    def _record_delay(self, operation_id: str, delay_ms: float) -> None:
        metrics = self._metrics.setdefault(operation_id, OperationMetrics())
        metrics.average_delay_ms = (
            (1 - _EMA_ALPHA) * metrics.average_delay_ms + _EMA_ALPHA * delay_ms
            if metrics.average_delay_ms
            else delay_ms
        )

    def update_system_metrics(self, cpu_usage: float, memory_usage: float) -> None:
        """Report system load; both values are fractions in [0, 1]."""
        self._system_load = (cpu_usage + memory_usage) / 2

    def get_operation_metrics(self, operation_id: str) -> OperationMetrics | None:
        return self._metrics.get(operation_id)

    def get_success_rate(self, operation_id: str) -> float | None:
        metrics = self._metrics.get(operation_id)
        return metrics.success_rate if metrics else None

    def reset_operation_metrics(self, operation_id: str | None = None) -> None:
        if operation_id is None:
            self._metrics.clear()
            self._previous_delay.clear()
        else:
            self._metrics.pop(operation_id, None)
            self._previous_delay.pop(operation_id, None)

    def get_recommended_strategy(self, operation_id: str) -> BackoffStrategy:
        """Suggest a strategy from an operation's failure history.

        Mostly-network failures favour decorrelated delays; a poor success
        rate favours the gentler Fibonacci ramp.
        """
        metrics = self._metrics.get(operation_id)
        if metrics is None:
            return BackoffStrategy.EXPONENTIAL

        errors = metrics.error_types
        network = errors.get(ErrorCategory.NETWORK.value, 0)
        others = errors.get(ErrorCategory.TIMEOUT.value, 0) + errors.get(
            ErrorCategory.DEPENDENCY.value, 0
        )
        if network > others:
            return BackoffStrategy.DECORRELATED
        if metrics.success_rate < 0.3:
            return BackoffStrategy.FIBONACCI
        return BackoffStrategy.EXPONENTIAL
