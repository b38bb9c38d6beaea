"""
Failure-isolation boundary.

A boundary wraps calls to one category of dependency. Consecutive failures
move it from HEALTHY to DEGRADED and then to ISOLATED, during which the
protected operation is not called at all. When the isolation window
elapses the next call is let through as a trial from DEGRADED.

Boundaries differ only by their :class:`BoundaryProfile`: default
thresholds, when to preserve context, what to snapshot and what a
boundary-specific fallback means.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from ai_resilience.context.preserver import (
    ContextPreserver,
    OperationState,
    PreservationPriority,
    SystemState,
    UserState,
    operation_state_from_context,
    user_state_from_context,
)
from ai_resilience.errors import (
    BoundaryIsolatedError,
    OperationTimeoutError,
    is_security_error,
)
from ai_resilience.recovery import (
    RecoveryContext,
    RecoveryOutcome,
    RecoveryResult,
    RecoveryStrategyManager,
)
from ai_resilience.telemetry.logger import get_logger, log_scope
from ai_resilience.telemetry.metrics import NullRecorder, safe_record
from ai_resilience.utils.clock import default_clock

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ai_resilience.context.error_context import ErrorContext
    from ai_resilience.telemetry.metrics import MetricsRecorder
    from ai_resilience.utils.clock import Clock

    Operation = Callable[[], Awaitable[Any]]

T = TypeVar("T")

logger = get_logger(__name__)


class BoundaryState(str, Enum):
    """Health of a boundary."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILED = "failed"
    ISOLATED = "isolated"


@dataclass
class BoundaryConfig:
    """Configuration for a boundary.

    Attributes:
        degradation_threshold: Error count at which the boundary degrades
        isolation_threshold: Error count at which the boundary isolates
        escalation_threshold: Error count at which the boundary fails
        timeout_seconds: Deadline of each protected call and fallback
        isolation_duration_seconds: Length of an isolation window
        preserve_context: Whether failures may snapshot context
        max_recovery_attempts: Attempt budget of one recovery episode
    """

    degradation_threshold: int = 3
    isolation_threshold: int = 5
    escalation_threshold: int = 10
    timeout_seconds: float = 30.0
    isolation_duration_seconds: float = 300.0
    preserve_context: bool = True
    max_recovery_attempts: int = 3

    @classmethod
    def default(cls) -> BoundaryConfig:
        return cls()

    @classmethod
    def from_env(cls, name: str, base: BoundaryConfig | None = None) -> BoundaryConfig:
        """Override ``base`` from ``AI_RESILIENCE_<NAME>_*`` variables."""
        base = base or cls()
        prefix = f"AI_RESILIENCE_{name.upper()}_"

        def read(key: str, current: Any, cast: Callable[[str], Any]) -> Any:
            raw = os.getenv(prefix + key)
            return cast(raw) if raw is not None else current

        return replace(
            base,
            degradation_threshold=read("DEGRADATION_THRESHOLD", base.degradation_threshold, int),
            isolation_threshold=read("ISOLATION_THRESHOLD", base.isolation_threshold, int),
            escalation_threshold=read("ESCALATION_THRESHOLD", base.escalation_threshold, int),
            timeout_seconds=read("TIMEOUT_SECS", base.timeout_seconds, float),
            isolation_duration_seconds=read(
                "ISOLATION_SECS", base.isolation_duration_seconds, float
            ),
        )

    def validate(self) -> list[str]:
        """Report threshold combinations that make a state unreachable.

        Thresholds are checked isolation first, then degradation, then
        escalation; this reports problems without reordering them.
        """
        warnings: list[str] = []
        if self.degradation_threshold >= self.isolation_threshold:
            warnings.append(
                "degradation_threshold >= isolation_threshold: DEGRADED is never entered"
            )
        if self.escalation_threshold < self.isolation_threshold:
            warnings.append(
                "escalation_threshold < isolation_threshold: FAILED may pre-empt isolation"
            )
        return warnings


@dataclass
class BoundaryMetrics:
    """Counters of a boundary.

    ``average_recovery_time`` is an incremental mean in seconds over
    successful recoveries.
    """

    error_count: int = 0
    recovery_attempts: int = 0
    successful_recoveries: int = 0
    isolation_count: int = 0
    last_error_time: float | None = None
    average_recovery_time: float = 0.0
    total_executions: int = 0
    fallback_executions: int = 0


@dataclass
class BoundaryResult(Generic[T]):
    """Outcome of a call through a boundary.

    Attributes:
        success: Whether a usable result was produced
        result: Result value (if success)
        error: Original failure (if the primary failed)
        boundary_state: Boundary state after the call
        recovery_result: Outcome of the recovery episode, if one ran
        recovered: Whether recovery produced the result
        fallback_used: Whether the fallback produced the result
        fallback_error: Failure of the fallback, if it ran and failed
        preserved_state_id: Id of the context snapshot, if one was taken
        execution_time_seconds: Time spent in the call
    """

    success: bool
    result: T | None = None
    error: BaseException | None = None
    boundary_state: BoundaryState = BoundaryState.HEALTHY
    recovery_result: RecoveryResult | None = None
    recovered: bool = False
    fallback_used: bool = False
    fallback_error: BaseException | None = None
    preserved_state_id: str | None = None
    execution_time_seconds: float = 0.0


def default_snapshot(
    context: ErrorContext, error: BaseException
) -> tuple[UserState, OperationState, SystemState]:
    """Snapshot derived from the error context alone."""
    return (
        user_state_from_context(context),
        operation_state_from_context(context),
        SystemState(temporary_data={"error": str(error), "error_type": type(error).__name__}),
    )


def _never(context: ErrorContext) -> bool:
    return False


def _no_fallback(context: ErrorContext, error: BaseException) -> Operation | None:
    return None


@dataclass
class BoundaryProfile:
    """What distinguishes one kind of boundary from another.

    Attributes:
        name: Boundary name
        config: Default thresholds and timeouts
        should_preserve_context: Whether a failure should be snapshotted
        preserve_execution_context: Builds the (user, operation, system) snapshot
        fallback_for: Boundary-specific fallback for a failure, if any
        preservation_priority: Eviction priority of snapshots
        on_failure: Hook notified of each primary failure
        on_success: Hook notified of each primary success
    """

    name: str
    config: BoundaryConfig = field(default_factory=BoundaryConfig)
    should_preserve_context: Callable[[ErrorContext], bool] = _never
    preserve_execution_context: Callable[
        [ErrorContext, BaseException], tuple[UserState, OperationState, SystemState]
    ] = default_snapshot
    fallback_for: Callable[[ErrorContext, BaseException], Operation | None] = _no_fallback
    preservation_priority: PreservationPriority = PreservationPriority.MEDIUM
    on_failure: Callable[[ErrorContext, BaseException], None] | None = None
    on_success: Callable[[ErrorContext], None] | None = None


class Boundary:
    """Generic failure-isolation boundary.

    Example:
        >>> boundary = Boundary(registry_profile(), clock=clock)
        >>> result = await boundary.execute(list_tools, ctx, fallback=cached_tools)
        >>> if not result.success:
        ...     print(result.error, result.boundary_state)
    """

    def __init__(
        self,
        profile: BoundaryProfile,
        config: BoundaryConfig | None = None,
        recovery_manager: RecoveryStrategyManager | None = None,
        preserver: ContextPreserver | None = None,
        metrics: MetricsRecorder | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._profile = profile
        self._config = config or profile.config
        self._clock = clock or default_clock()
        self._metrics_sink = metrics or NullRecorder()
        self._recovery = recovery_manager or RecoveryStrategyManager(
            metrics=self._metrics_sink, clock=self._clock
        )
        self._preserver = preserver or ContextPreserver(clock=self._clock)
        self._state = BoundaryState.HEALTHY
        self._isolation_end: float | None = None
        self._metrics = BoundaryMetrics()
        self._lock = asyncio.Lock()

        for warning in self._config.validate():
            logger.warning("Boundary configuration", boundary=profile.name, problem=warning)

    @property
    def name(self) -> str:
        return self._profile.name

    @property
    def profile(self) -> BoundaryProfile:
        return self._profile

    @property
    def config(self) -> BoundaryConfig:
        return self._config

    @property
    def state(self) -> BoundaryState:
        return self._state

    @property
    def isolation_end_time(self) -> float | None:
        return self._isolation_end

    @property
    def preserver(self) -> ContextPreserver:
        return self._preserver

    @property
    def recovery_manager(self) -> RecoveryStrategyManager:
        return self._recovery

    def get_metrics(self) -> BoundaryMetrics:
        return replace(self._metrics)

    def is_isolated(self) -> bool:
        """Check whether the boundary is inside an isolation window."""
        return (
            self._state == BoundaryState.ISOLATED
            and self._isolation_end is not None
            and self._clock.now() < self._isolation_end
        )

    def _transition(self, new_state: BoundaryState, reason: str) -> None:
        if new_state == self._state:
            return
        old_state = self._state
        self._state = new_state
        log = logger.info if new_state in (BoundaryState.HEALTHY, BoundaryState.DEGRADED) else logger.warning
        log(
            "Boundary state changed",
            boundary=self.name,
            from_state=old_state.value,
            to_state=new_state.value,
            reason=reason,
            error_count=self._metrics.error_count,
        )

    def _enter_isolation(self, duration_seconds: float, reason: str) -> None:
        self._isolation_end = self._clock.now() + duration_seconds
        self._metrics.isolation_count += 1
        self._transition(BoundaryState.ISOLATED, reason)

    def _update_state(self) -> None:
        count = self._metrics.error_count
        cfg = self._config
        if count >= cfg.isolation_threshold:
            if self._state != BoundaryState.ISOLATED:
                self._enter_isolation(cfg.isolation_duration_seconds, "isolation_threshold")
        elif count >= cfg.degradation_threshold:
            self._transition(BoundaryState.DEGRADED, "degradation_threshold")
        elif count >= cfg.escalation_threshold:
            self._transition(BoundaryState.FAILED, "escalation_threshold")

    def isolate(self, duration_seconds: float | None = None) -> None:
        """Force the boundary into isolation regardless of counters."""
        self._enter_isolation(
            duration_seconds if duration_seconds is not None else self._config.isolation_duration_seconds,
            "manual",
        )

    def reset(self) -> None:
        """Return to HEALTHY and zero all counters."""
        self._metrics = BoundaryMetrics()
        self._isolation_end = None
        self._transition(BoundaryState.HEALTHY, "reset")

    async def _run(self, operation: Operation) -> Any:
        timeout = self._config.timeout_seconds
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise OperationTimeoutError(
                f"Boundary '{self.name}' call exceeded {timeout:.3f}s",
                timeout_seconds=timeout,
            ) from exc

    def _result(self, started: float, **kwargs: Any) -> BoundaryResult[Any]:
        return BoundaryResult(
            boundary_state=self._state,
            execution_time_seconds=self._clock.now() - started,
            **kwargs,
        )

    async def _admit(self) -> bool:
        """Count an execution and end an expired isolation; True while isolated."""
        async with self._lock:
            self._metrics.total_executions += 1
            if self._state != BoundaryState.ISOLATED:
                return False
            if self.is_isolated():
                return True
            self._isolation_end = None
            self._transition(BoundaryState.DEGRADED, "isolation_expired")
            return False

    async def execute(
        self,
        operation: Operation,
        context: ErrorContext,
        fallback: Operation | None = None,
    ) -> BoundaryResult[Any]:
        """Run an operation under failure isolation.

        Args:
            operation: Zero-argument async operation
            context: Description of the operation, used on failure
            fallback: Caller fallback; defaults to the profile's fallback

        Returns:
            BoundaryResult; failures are reported, never raised
        """
        started = self._clock.now()
        if await self._admit():
            return await self._handle_isolated(context, fallback, started)

        try:
            value = await self._run(operation)
        except Exception as exc:
            with log_scope(
                boundary=self.name,
                correlation_id=context.correlation_id,
                resource=context.resource_key,
            ):
                return await self._handle_failure(operation, context, fallback, exc, started)

        await self._record_success(context, started)
        return self._result(started, success=True, result=value)

    async def _record_success(self, context: ErrorContext, started: float) -> None:
        async with self._lock:
            if self._state != BoundaryState.FAILED:
                self._metrics.error_count = 0
                if self._state == BoundaryState.DEGRADED:
                    self._transition(BoundaryState.HEALTHY, "success")
        if self._profile.on_success is not None:
            self._profile.on_success(context)
        safe_record(
            self._metrics_sink.record_performance_metric,
            "boundary.execution_ms",
            (self._clock.now() - started) * 1000,
            {"boundary": self.name, "outcome": "success"},
        )

    async def _handle_isolated(
        self, context: ErrorContext, fallback: Operation | None, started: float
    ) -> BoundaryResult[Any]:
        error = BoundaryIsolatedError(self.name, self._isolation_end)
        fallback = fallback or self._profile.fallback_for(context, error)
        if fallback is None:
            return self._result(started, success=False, error=error)

        try:
            value = await self._run(fallback)
        except Exception as exc:
            logger.warning("Fallback failed while isolated", boundary=self.name, error=str(exc))
            return self._result(started, success=False, error=error, fallback_error=exc)

        self._metrics.fallback_executions += 1
        return self._result(started, success=True, result=value, fallback_used=True)

    def _preserve(self, context: ErrorContext, error: BaseException) -> str | None:
        if not (self._config.preserve_context and self._profile.should_preserve_context(context)):
            return None
        try:
            user, operation, system = self._profile.preserve_execution_context(context, error)
            return self._preserver.preserve(
                context,
                user,
                operation,
                system,
                priority=self._profile.preservation_priority,
                tags=[self.name],
            )
        except Exception:
            logger.exception("Context preservation failed", boundary=self.name)
            return None

    async def _count_failure(self, error: BaseException) -> bool:
        """Count a failure and move the state machine; True for security failures."""
        security = is_security_error(error)
        async with self._lock:
            self._metrics.error_count += 1
            self._metrics.last_error_time = self._clock.now()
            if security:
                self._enter_isolation(self._config.isolation_duration_seconds, "security_failure")
            else:
                self._update_state()
        return security

    async def _handle_failure(
        self,
        operation: Operation,
        context: ErrorContext,
        fallback: Operation | None,
        error: BaseException,
        started: float,
    ) -> BoundaryResult[Any]:
        security = await self._count_failure(error)

        safe_record(
            self._metrics_sink.record_error,
            error,
            {"boundary": self.name, **context.log_fields()},
        )
        if self._profile.on_failure is not None:
            self._profile.on_failure(context, error)

        preserved_id = self._preserve(context, error)
        outcome = await self._recover(operation, context, error, security)

        if outcome.success:
            data = outcome.recovered_data
            if data is None and preserved_id is not None:
                restored = self._preserver.restore(preserved_id)
                if restored is not None and restored.operation_state.partial_results:
                    data = restored.operation_state.partial_results
            if data is not None:
                return self._result(
                    started,
                    success=True,
                    result=data,
                    error=error,
                    recovery_result=outcome.result,
                    recovered=True,
                    preserved_state_id=preserved_id,
                )
            logger.info("Recovery produced no data", boundary=self.name, error=str(error))

        fallback = fallback or self._profile.fallback_for(context, error)
        fallback_error: BaseException | None = None
        if fallback is not None:
            try:
                value = await self._run(fallback)
            except Exception as exc:
                fallback_error = exc
                logger.warning("Boundary fallback failed", boundary=self.name, error=str(exc))
            else:
                self._metrics.fallback_executions += 1
                return self._result(
                    started,
                    success=True,
                    result=value,
                    error=error,
                    recovery_result=outcome.result,
                    fallback_used=True,
                    preserved_state_id=preserved_id,
                )

        logger.error(
            "Boundary call failed",
            boundary=self.name,
            error=str(error),
            recovery=outcome.result.value,
            **context.log_fields(),
        )
        return self._result(
            started,
            success=False,
            error=error,
            recovery_result=outcome.result,
            fallback_error=fallback_error,
            preserved_state_id=preserved_id,
        )

    async def _recover(
        self,
        operation: Operation,
        context: ErrorContext,
        error: BaseException,
        security: bool,
    ) -> RecoveryOutcome:
        if security:
            return RecoveryOutcome(RecoveryResult.NEEDS_ESCALATION)

        self._metrics.recovery_attempts += 1
        started = self._clock.now()
        outcome = await self._recovery.execute_recovery(
            RecoveryContext(
                original_error=error,
                error_context=context,
                max_attempts=self._config.max_recovery_attempts,
                timeout_seconds=self._config.timeout_seconds,
                retry_operation=lambda: self._run(operation),
            )
        )
        if outcome.success:
            self._metrics.successful_recoveries += 1
            n = self._metrics.successful_recoveries
            elapsed = self._clock.now() - started
            self._metrics.average_recovery_time = (
                self._metrics.average_recovery_time * (n - 1) + elapsed
            ) / n
        return outcome

    def __repr__(self) -> str:
        return (
            f"Boundary(name={self.name!r}, state={self._state.value}, "
            f"errors={self._metrics.error_count})"
        )
