"""
Recovery strategies.

Each strategy decides whether it applies to a failure, how urgently, and
runs one recovery attempt. Strategies never raise for an unsuccessful
recovery; they report it as a :class:`RecoveryResult`.
"""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar

from ai_resilience.context.error_context import OperationPhase, ProcessingStage
from ai_resilience.errors import ErrorCategory, ErrorSeverity, classify_exception
from ai_resilience.recovery.types import (
    RecoveryContext,
    RecoveryResult,
    RecoveryStrategyType,
    StrategyOutcome,
)
from ai_resilience.resilience.circuit_breaker import CircuitState
from ai_resilience.telemetry.logger import get_logger
from ai_resilience.utils.clock import default_clock

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ai_resilience.context.error_context import ErrorContext
    from ai_resilience.utils.clock import Clock

    FallbackExecutor = Callable[[str, ErrorContext], Awaitable[Any]]

logger = get_logger(__name__)


class RecoveryStrategy(ABC):
    """Base class for recovery strategies."""

    strategy_type: ClassVar[RecoveryStrategyType]

    @abstractmethod
    def can_handle(self, context: RecoveryContext) -> bool:
        """Check whether this strategy applies to the failure."""

    @abstractmethod
    async def execute(self, context: RecoveryContext) -> StrategyOutcome:
        """Run one recovery attempt."""

    def get_priority(self, context: RecoveryContext) -> int:
        return 1

    def get_max_attempts(self, context: RecoveryContext) -> int:
        return 1

    def should_attempt(self, context: RecoveryContext) -> bool:
        return context.attempts_for(self.strategy_type) < self.get_max_attempts(context)

    def estimate_recovery_time(self, context: RecoveryContext) -> float:
        """Estimated seconds one attempt takes."""
        return 1.0

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


@dataclass
class RetryStrategyConfig:
    base_delay_ms: float = 1000.0
    max_delay_ms: float = 30000.0
    jitter_factor: float = 0.1


_RETRY_ATTEMPTS_BY_SEVERITY: dict[ErrorSeverity, int] = {
    ErrorSeverity.LOW: 5,
    ErrorSeverity.MEDIUM: 3,
    ErrorSeverity.HIGH: 2,
    ErrorSeverity.CRITICAL: 1,
}

_RETRYABLE_PHASES = frozenset(
    {
        OperationPhase.TOOL_DISCOVERY,
        OperationPhase.TOOL_INVOCATION,
        OperationPhase.RESULT_PROCESSING,
    }
)
_RETRYABLE_STAGES = frozenset(
    {
        ProcessingStage.AI_PROCESSING,
        ProcessingStage.TOOL_EXECUTION,
        ProcessingStage.RESULT_VALIDATION,
    }
)
_NEVER_RETRIED = frozenset(
    {ErrorCategory.SECURITY, ErrorCategory.AUTHENTICATION, ErrorCategory.CONFIGURATION}
)


class RetryStrategy(RecoveryStrategy):
    """Re-run the failed operation after an exponential delay.

    The strategy owns the timing; the call itself is the re-entry callable
    the boundary places on the recovery context.
    """

    strategy_type = RecoveryStrategyType.RETRY

    def __init__(
        self,
        config: RetryStrategyConfig | None = None,
        clock: Clock | None = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._config = config or RetryStrategyConfig()
        self._clock = clock or default_clock()
        self._rng = rng

    def can_handle(self, context: RecoveryContext) -> bool:
        if classify_exception(context.original_error) in _NEVER_RETRIED:
            return False
        ctx = context.error_context
        return ctx.phase in _RETRYABLE_PHASES or ctx.stage in _RETRYABLE_STAGES

    def get_max_attempts(self, context: RecoveryContext) -> int:
        return _RETRY_ATTEMPTS_BY_SEVERITY[context.error_context.severity]

    def get_priority(self, context: RecoveryContext) -> int:
        return max(10 - 2 * context.attempts_for(self.strategy_type), 1)

    def calculate_delay(self, attempt: int) -> float:
        """Delay in milliseconds before retry ``attempt`` (0-based)."""
        cfg = self._config
        delay = min(cfg.base_delay_ms * 2**attempt, cfg.max_delay_ms)
        return delay + delay * cfg.jitter_factor * self._rng()

    def estimate_recovery_time(self, context: RecoveryContext) -> float:
        return self.calculate_delay(context.attempts_for(self.strategy_type)) / 1000

    async def execute(self, context: RecoveryContext) -> StrategyOutcome:
        attempt = context.attempts_for(self.strategy_type)
        delay_ms = self.calculate_delay(attempt)
        details: dict[str, Any] = {"attempt": attempt + 1, "delay_ms": delay_ms}

        if context.retry_operation is None:
            details["reason"] = "no re-entry operation supplied"
            return StrategyOutcome(RecoveryResult.FAILED, details=details)

        await self._clock.sleep(delay_ms / 1000)
        try:
            data = await context.retry_operation()
        except Exception as exc:
            details["error"] = str(exc)
            return StrategyOutcome(RecoveryResult.FAILED, details=details)
        return StrategyOutcome(RecoveryResult.SUCCESS, data=data, details=details)


DEFAULT_FALLBACK_MAP: dict[str, list[str]] = {
    "jenkins_trigger_job": ["jenkins_manual_build", "notification_only"],
    "database_query": ["cached_result", "manual_lookup"],
    "github_create_issue": ["email_notification", "slack_reminder"],
}


class FallbackStrategy(RecoveryStrategy):
    """Substitute a registered alternate for the failing tool.

    Candidates come from the user intent's fallback options, then the
    alternates registered for the tool name, then for the server id.
    """

    strategy_type = RecoveryStrategyType.FALLBACK

    def __init__(
        self,
        fallback_map: dict[str, list[str]] | None = None,
        executor: FallbackExecutor | None = None,
    ) -> None:
        self._fallbacks = {
            k: list(v) for k, v in (fallback_map if fallback_map is not None else DEFAULT_FALLBACK_MAP).items()
        }
        self._executor = executor

    def register_fallback(self, key: str, options: list[str]) -> None:
        """Register alternates for a tool name or server id."""
        self._fallbacks[key] = list(options)

    def set_executor(self, executor: FallbackExecutor | None) -> None:
        self._executor = executor

    def candidates(self, context: RecoveryContext) -> list[str]:
        ctx = context.error_context
        if ctx.user_intent and ctx.user_intent.fallback_options:
            return list(ctx.user_intent.fallback_options)
        for key in (ctx.tool_name, ctx.server_id):
            if key and self._fallbacks.get(key):
                return list(self._fallbacks[key])
        return []

    def can_handle(self, context: RecoveryContext) -> bool:
        return bool(self.candidates(context))

    def get_priority(self, context: RecoveryContext) -> int:
        return 5

    def estimate_recovery_time(self, context: RecoveryContext) -> float:
        return 2.0

    async def execute(self, context: RecoveryContext) -> StrategyOutcome:
        candidates = self.candidates(context)
        if not candidates:
            return StrategyOutcome(RecoveryResult.FAILED, details={"reason": "no fallback options"})

        option = candidates[0]
        details: dict[str, Any] = {"fallback_option": option, "alternatives": candidates[1:]}
        if self._executor is None:
            return StrategyOutcome(RecoveryResult.PARTIAL_SUCCESS, details=details)

        try:
            data = await asyncio.wait_for(
                self._executor(option, context.error_context), timeout=context.timeout_seconds
            )
        except Exception as exc:
            details["error"] = str(exc)
            return StrategyOutcome(RecoveryResult.FAILED, details=details)
        return StrategyOutcome(RecoveryResult.SUCCESS, data=data, details=details)


@dataclass
class CircuitStrategyConfig:
    failure_threshold: int = 5
    recovery_time_seconds: float = 60.0


@dataclass
class CircuitRecord:
    """Circuit state of one resource key."""

    failures: int = 0
    last_failure_time: float | None = None
    state: CircuitState = CircuitState.CLOSED


class CircuitBreakerStrategy(RecoveryStrategy):
    """Track per-resource failures and stop hammering a broken resource.

    Records are serialized per resource key, so independent resources
    never wait on each other.
    """

    strategy_type = RecoveryStrategyType.CIRCUIT_BREAKER

    def __init__(
        self,
        config: CircuitStrategyConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._config = config or CircuitStrategyConfig()
        self._clock = clock or default_clock()
        self._circuits: dict[str, CircuitRecord] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def can_handle(self, context: RecoveryContext) -> bool:
        return context.error_context.resource_key is not None

    def get_priority(self, context: RecoveryContext) -> int:
        return 8

    def estimate_recovery_time(self, context: RecoveryContext) -> float:
        key = context.error_context.resource_key
        record = self._circuits.get(key) if key else None
        if record is None or record.state != CircuitState.OPEN or record.last_failure_time is None:
            return 0.5
        remaining = self._config.recovery_time_seconds - (
            self._clock.now() - record.last_failure_time
        )
        return max(0.0, remaining)

    def get_state(self, resource_key: str) -> CircuitState:
        record = self._circuits.get(resource_key)
        return record.state if record else CircuitState.CLOSED

    def get_record(self, resource_key: str) -> CircuitRecord | None:
        record = self._circuits.get(resource_key)
        return CircuitRecord(**vars(record)) if record else None

    async def record_success(self, resource_key: str) -> None:
        """Note a success observed outside recovery; a closed circuit forgets its failures."""
        async with self._locks[resource_key]:
            record = self._circuits.get(resource_key)
            if record is not None and record.state == CircuitState.CLOSED:
                record.failures = 0

    def reset(self, resource_key: str | None = None) -> None:
        if resource_key is None:
            self._circuits.clear()
        else:
            self._circuits.pop(resource_key, None)

    def _open(self, key: str, record: CircuitRecord) -> None:
        record.state = CircuitState.OPEN
        record.last_failure_time = self._clock.now()
        logger.warning("Resource circuit opened", resource=key, failures=record.failures)

    async def execute(self, context: RecoveryContext) -> StrategyOutcome:
        key = context.error_context.resource_key
        if key is None:
            return StrategyOutcome(RecoveryResult.FAILED, details={"reason": "no resource"})

        async with self._locks[key]:
            record = self._circuits.setdefault(key, CircuitRecord())
            details: dict[str, Any] = {"resource": key, "state": record.state.value}

            if record.state == CircuitState.CLOSED:
                record.failures += 1
                record.last_failure_time = self._clock.now()
                details["failures"] = record.failures
                if record.failures >= self._config.failure_threshold:
                    self._open(key, record)
                    details["state"] = record.state.value
                    return StrategyOutcome(RecoveryResult.NEEDS_ESCALATION, details=details)
                return StrategyOutcome(RecoveryResult.PARTIAL_SUCCESS, details=details)

            if record.state == CircuitState.OPEN:
                elapsed = self._clock.now() - (record.last_failure_time or 0.0)
                if elapsed >= self._config.recovery_time_seconds:
                    record.state = CircuitState.HALF_OPEN
                    details["state"] = record.state.value
                    logger.info("Resource circuit half-open", resource=key)
                    return StrategyOutcome(RecoveryResult.REQUIRES_USER_INPUT, details=details)
                details["time_until_retry"] = self._config.recovery_time_seconds - elapsed
                return StrategyOutcome(RecoveryResult.FAILED, details=details)

            # HALF_OPEN: one trial decides
            if context.retry_operation is None:
                self._open(key, record)
                details["state"] = record.state.value
                return StrategyOutcome(RecoveryResult.FAILED, details=details)
            try:
                data = await context.retry_operation()
            except Exception as exc:
                self._open(key, record)
                details.update(state=record.state.value, error=str(exc))
                return StrategyOutcome(RecoveryResult.FAILED, details=details)

            record.state = CircuitState.CLOSED
            record.failures = 0
            details["state"] = record.state.value
            logger.info("Resource circuit closed", resource=key)
            return StrategyOutcome(RecoveryResult.SUCCESS, data=data, details=details)
