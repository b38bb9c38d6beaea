"""
Resilience orchestrator.

Composes degradation checks, circuit breaking, backoff-driven retry,
timeouts, the fallback chain and caller fallbacks into one call path. Each
stage appends an :class:`ExecutionStep` so callers can see which patterns
took part in producing a result.
"""

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from ai_resilience.errors import ResilienceError
from ai_resilience.resilience.backoff import BackoffConfig, BackoffPolicy
from ai_resilience.resilience.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerManager,
    CircuitState,
)
from ai_resilience.resilience.degradation import DegradationLevel, DegradationManager
from ai_resilience.resilience.fallback import FallbackChain, ToolCapability
from ai_resilience.resilience.timeout import ResourceType, TimeoutManager
from ai_resilience.telemetry.logger import get_logger
from ai_resilience.telemetry.metrics import NullRecorder, safe_record
from ai_resilience.utils.clock import default_clock

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ai_resilience.context.error_context import ErrorContext
    from ai_resilience.resilience.fallback import ToolExecutor
    from ai_resilience.telemetry.metrics import MetricsRecorder
    from ai_resilience.utils.clock import Clock

    Operation = Callable[[], Awaitable[Any]]

logger = get_logger(__name__)


class ExecutionPlan(str, Enum):
    """Order in which the patterns wrap the operation."""

    CIRCUIT_BREAKER_FIRST = "circuit_breaker_first"
    BACKOFF_RETRY = "backoff_retry"
    TIMEOUT_WITH_FALLBACK = "timeout_with_fallback"


class ResiliencePattern(str, Enum):
    DEGRADATION = "degradation"
    CIRCUIT_BREAKER = "circuit_breaker"
    BACKOFF = "backoff"
    TIMEOUT = "timeout"
    FALLBACK_CHAIN = "fallback_chain"
    CALLER_FALLBACK = "caller_fallback"
    EMERGENCY = "emergency"


@dataclass
class OrchestratorConfig:
    """Configuration for the orchestrator.

    Attributes:
        auto_degrade: Check degradation triggers after every call
        error_rate_threshold: Aggregate error rate forcing MINIMAL
        response_time_threshold_ms: Average response time forcing MINIMAL
        circuit_open_threshold: Open circuits forcing MINIMAL
        poor_success_rate: Backoff success rate below which retry leads
        enable_fallback_chain: Consult the fallback chain on exhaustion
        enable_emergency: End with an emergency response for catalogued tools
    """

    auto_degrade: bool = True
    error_rate_threshold: float = 0.3
    response_time_threshold_ms: float = 10_000.0
    circuit_open_threshold: int = 3
    poor_success_rate: float = 0.5
    enable_fallback_chain: bool = True
    enable_emergency: bool = True

    @classmethod
    def default(cls) -> OrchestratorConfig:
        return cls()

    @classmethod
    def from_env(cls) -> OrchestratorConfig:
        return cls(
            auto_degrade=os.getenv("AI_RESILIENCE_AUTO_DEGRADE", "true").lower()
            in ("1", "true", "yes"),
            error_rate_threshold=float(os.getenv("AI_RESILIENCE_DEGRADE_ERROR_RATE", "0.3")),
            response_time_threshold_ms=float(
                os.getenv("AI_RESILIENCE_DEGRADE_RESPONSE_MS", "10000")
            ),
            circuit_open_threshold=int(os.getenv("AI_RESILIENCE_DEGRADE_OPEN_CIRCUITS", "3")),
        )


@dataclass
class OperationDefinition:
    """Describes an operation to the orchestrator.

    Attributes:
        id: Key for backoff metrics and timeout resources
        service_name: Circuit breaker and fallback-chain key
        action: Action name used by the fallback chain
        essential: Whether the operation must not be skipped when degraded
        timeout_seconds: Per-attempt deadline; the timeout manager default if None
        backoff_config: Backoff configuration for this service
        circuit_config: Circuit breaker configuration for this service
        feature: Degradation feature the operation belongs to
        params: Parameters handed to fallback-chain steps
    """

    id: str
    service_name: str
    action: str = "execute"
    essential: bool = False
    timeout_seconds: float | None = None
    backoff_config: BackoffConfig | None = None
    circuit_config: CircuitBreakerConfig | None = None
    feature: str | None = None
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionStep:
    pattern: ResiliencePattern
    action: str
    timestamp: float
    duration_seconds: float
    success: bool
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class OrchestrationResult:
    """Result of an orchestrated execution.

    Attributes:
        success: Whether a usable result was produced
        result: Result value (if success)
        error: Failure of the primary path, if it failed
        plan: Execution plan that was selected
        patterns_used: Patterns in order of first use
        execution_path: Every stage that ran
        final_strategy: Stage that decided the outcome
        total_execution_time: Seconds spent in the call
    """

    success: bool
    result: Any = None
    error: BaseException | None = None
    plan: ExecutionPlan | None = None
    patterns_used: list[ResiliencePattern] = field(default_factory=list)
    execution_path: list[ExecutionStep] = field(default_factory=list)
    final_strategy: str | None = None
    total_execution_time: float = 0.0

    @property
    def path_actions(self) -> list[str]:
        return [f"{s.pattern.value}:{s.action}" for s in self.execution_path]


class _Trace:
    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self.steps: list[ExecutionStep] = []
        self.patterns: list[ResiliencePattern] = []

    def record(
        self,
        pattern: ResiliencePattern,
        action: str,
        started: float,
        success: bool,
        **metadata: Any,
    ) -> None:
        now = self._clock.now()
        self.steps.append(
            ExecutionStep(
                pattern=pattern,
                action=action,
                timestamp=started,
                duration_seconds=now - started,
                success=success,
                metadata=metadata,
            )
        )
        if pattern not in self.patterns:
            self.patterns.append(pattern)


@dataclass
class _Counters:
    total: int = 0
    successful: int = 0
    failed: int = 0
    by_strategy: dict[str, int] = field(default_factory=dict)


class ResilienceOrchestrator:
    """Single entry point coordinating every resilience pattern.

    Example:
        >>> orchestrator = ResilienceOrchestrator(tool_executor=run_tool)
        >>> orchestrator.register_tool(ToolCapability("jenkins", ["trigger_job"]))
        >>> result = await orchestrator.execute_with_resilience(
        ...     trigger_build,
        ...     OperationDefinition(id="build", service_name="jenkins",
        ...                         action="trigger_job", essential=True),
        ... )
        >>> result.plan
        <ExecutionPlan.CIRCUIT_BREAKER_FIRST: 'circuit_breaker_first'>
    """

    def __init__(
        self,
        config: OrchestratorConfig | None = None,
        circuit_manager: CircuitBreakerManager | None = None,
        degradation: DegradationManager | None = None,
        fallback_chain: FallbackChain | None = None,
        timeouts: TimeoutManager | None = None,
        backoff_config: BackoffConfig | None = None,
        tool_executor: ToolExecutor | None = None,
        metrics: MetricsRecorder | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._config = config or OrchestratorConfig()
        self._clock = clock or default_clock()
        self._circuits = circuit_manager or CircuitBreakerManager(clock=self._clock)
        self._degradation = degradation or DegradationManager(clock=self._clock)
        self._chain = fallback_chain or FallbackChain(clock=self._clock)
        self._timeouts = timeouts or TimeoutManager(clock=self._clock)
        self._backoff_config = backoff_config or BackoffConfig()
        self._backoff: dict[str, BackoffPolicy] = {}
        self._tool_executor = tool_executor
        self._metrics = metrics or NullRecorder()
        self._counters = _Counters()

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def circuit_manager(self) -> CircuitBreakerManager:
        return self._circuits

    @property
    def degradation(self) -> DegradationManager:
        return self._degradation

    @property
    def fallback_chain(self) -> FallbackChain:
        return self._chain

    @property
    def timeouts(self) -> TimeoutManager:
        return self._timeouts

    def set_tool_executor(self, executor: ToolExecutor | None) -> None:
        self._tool_executor = executor

    def register_tool(self, capability: ToolCapability) -> None:
        self._chain.register_tool(capability)

    def register_resource(
        self,
        resource: Any,
        cleanup: Callable[[Any], Any],
        resource_type: ResourceType = ResourceType.OTHER,
        operation_id: str | None = None,
    ) -> str:
        """Register a resource with the timeout manager.

        Called from inside an orchestrated operation, the resource is tied to
        that operation and released when it ends.
        """
        return self._timeouts.register_resource(
            resource, cleanup, resource_type, operation_id=operation_id
        )

    def backoff_for(self, definition: OperationDefinition) -> BackoffPolicy:
        """Backoff policy of a service, created on first use."""
        policy = self._backoff.get(definition.service_name)
        if policy is None:
            policy = BackoffPolicy(definition.backoff_config or self._backoff_config, self._clock)
            self._backoff[definition.service_name] = policy
        return policy

    def select_plan(self, definition: OperationDefinition) -> ExecutionPlan:
        """Choose how the patterns wrap an operation.

        An open circuit leads to a single timeout-bounded attempt; a poor
        retry history leads to backoff; otherwise essential operations gate
        on the circuit before spending a backoff budget.
        """
        if self._circuits.get_state(definition.service_name) == CircuitState.OPEN:
            return ExecutionPlan.TIMEOUT_WITH_FALLBACK
        success_rate = self.backoff_for(definition).get_success_rate(definition.id)
        if success_rate is not None and success_rate < self._config.poor_success_rate:
            return ExecutionPlan.BACKOFF_RETRY
        if definition.essential:
            return ExecutionPlan.CIRCUIT_BREAKER_FIRST
        return ExecutionPlan.BACKOFF_RETRY

    async def _attempt(
        self, operation: Operation, definition: OperationDefinition, trace: _Trace
    ) -> Any:
        started = self._clock.now()
        outcome = await self._timeouts.execute_with_timeout(
            operation,
            operation_id=f"{definition.id}:{uuid.uuid4().hex[:8]}",
            timeout_seconds=definition.timeout_seconds,
        )
        trace.record(
            ResiliencePattern.TIMEOUT,
            "attempt",
            started,
            outcome.success,
            timed_out=outcome.timed_out,
            resources_cleaned=outcome.resources_cleaned,
        )
        if outcome.success:
            return outcome.value
        assert outcome.error is not None
        raise outcome.error

    async def _with_backoff(
        self, operation: Operation, definition: OperationDefinition, trace: _Trace
    ) -> Any:
        started = self._clock.now()
        timeouts = self._timeouts.config
        # The timeout manager bounds each attempt; this only guards a stuck cleanup.
        attempt_timeout = (
            timeouts.operation_timeout_seconds
            if definition.timeout_seconds is None
            else definition.timeout_seconds
        ) + timeouts.cleanup_timeout_seconds
        outcome = await self.backoff_for(definition).execute(
            operation, operation_id=definition.id, attempt_timeout_seconds=attempt_timeout
        )
        trace.record(
            ResiliencePattern.BACKOFF,
            "retry_sequence",
            started,
            outcome.success,
            attempts=outcome.attempts,
            delays_ms=list(outcome.delays_ms),
            aborted_reason=outcome.aborted_reason,
        )
        if outcome.success:
            return outcome.value
        raise outcome.error or ResilienceError(
            f"Retries for '{definition.id}' ended: {outcome.aborted_reason}"
        )

    async def _through_circuit(
        self, operation: Operation, definition: OperationDefinition, trace: _Trace
    ) -> Any:
        breaker = self._circuits.get_circuit_breaker(
            definition.service_name, definition.circuit_config
        )
        started = self._clock.now()
        try:
            value = await breaker.execute(operation)
        except Exception as exc:
            trace.record(
                ResiliencePattern.CIRCUIT_BREAKER,
                "gate",
                started,
                False,
                state=breaker.state.value,
                error=str(exc),
            )
            raise
        trace.record(
            ResiliencePattern.CIRCUIT_BREAKER, "gate", started, True, state=breaker.state.value
        )
        return value

    async def _run_plan(
        self,
        plan: ExecutionPlan,
        operation: Operation,
        definition: OperationDefinition,
        trace: _Trace,
    ) -> Any:
        def attempt() -> Awaitable[Any]:
            return self._attempt(operation, definition, trace)

        if plan == ExecutionPlan.CIRCUIT_BREAKER_FIRST:
            return await self._through_circuit(
                lambda: self._with_backoff(attempt, definition, trace), definition, trace
            )
        if plan == ExecutionPlan.BACKOFF_RETRY:
            return await self._with_backoff(
                lambda: self._through_circuit(attempt, definition, trace), definition, trace
            )
        return await self._through_circuit(attempt, definition, trace)

    async def execute_with_resilience(
        self,
        operation: Operation,
        definition: OperationDefinition,
        context: ErrorContext | None = None,
        fallback: Operation | None = None,
    ) -> OrchestrationResult:
        """Run an operation through every applicable resilience pattern.

        Args:
            operation: Zero-argument async operation
            definition: How the operation is keyed and treated
            context: Description of the operation for fallbacks and logs
            fallback: Caller fallback used when the chain is exhausted

        Returns:
            OrchestrationResult with the execution trace
        """
        started = self._clock.now()
        trace = _Trace(self._clock)
        plan = self.select_plan(definition)
        self._counters.total += 1

        def finish(
            success: bool, strategy: str, result: Any = None, error: BaseException | None = None
        ) -> OrchestrationResult:
            elapsed = self._clock.now() - started
            if success:
                self._counters.successful += 1
            else:
                self._counters.failed += 1
            self._counters.by_strategy[strategy] = self._counters.by_strategy.get(strategy, 0) + 1
            safe_record(
                self._metrics.record_performance_metric,
                "orchestrator.execution_ms",
                elapsed * 1000,
                {"service": definition.service_name, "strategy": strategy, "success": success},
            )
            if self._config.auto_degrade:
                self.check_degradation_triggers()
            return OrchestrationResult(
                success=success,
                result=result,
                error=error,
                plan=plan,
                patterns_used=list(trace.patterns),
                execution_path=list(trace.steps),
                final_strategy=strategy,
                total_execution_time=elapsed,
            )

        level = self._degradation.current_level
        primary_error: BaseException | None = None

        if level != DegradationLevel.FULL:
            check_started = self._clock.now()
            if level == DegradationLevel.EMERGENCY and not definition.essential:
                trace.record(
                    ResiliencePattern.DEGRADATION, "skip_non_essential", check_started, False,
                    level=level.value,
                )
                return finish(
                    False,
                    "degradation_skip",
                    error=ResilienceError(
                        f"Operation '{definition.id}' skipped in emergency mode"
                    ),
                )

            if definition.feature and self._degradation.get_feature_config(definition.feature):
                degraded = await self._degradation.execute_with_degradation(
                    definition.feature,
                    lambda: self._run_plan(plan, operation, definition, trace),
                )
                trace.record(
                    ResiliencePattern.DEGRADATION,
                    "degraded_execution",
                    check_started,
                    degraded.success,
                    level=level.value,
                    behavior=degraded.behavior.value if degraded.behavior else None,
                    user_message=degraded.user_message,
                )
                if degraded.success:
                    strategy = "degradation" if degraded.behavior else plan.value
                    return finish(True, strategy, result=degraded.result)
                primary_error = degraded.error
            else:
                trace.record(
                    ResiliencePattern.DEGRADATION, "level_check", check_started, True,
                    level=level.value,
                )

        if primary_error is None:
            attempt_started = self._clock.now()
            try:
                value = await self._run_plan(plan, operation, definition, trace)
            except Exception as exc:
                primary_error = exc
                self._degradation.record_failure()
                logger.warning(
                    "Primary path failed",
                    operation_id=definition.id,
                    service=definition.service_name,
                    plan=plan.value,
                    error=str(exc),
                )
            else:
                self._degradation.record_success((self._clock.now() - attempt_started) * 1000)
                return finish(True, plan.value, result=value)

        safe_record(
            self._metrics.record_error,
            primary_error,
            {"service": definition.service_name, "operation_id": definition.id},
        )

        catalogued = self._chain.get_tool(definition.service_name) is not None
        if self._config.enable_fallback_chain and catalogued and self._tool_executor is not None:
            chain_started = self._clock.now()
            chain_result = await self._chain.execute(
                definition.service_name,
                definition.action,
                self._tool_executor,
                params=definition.params,
                context=context,
                include_primary=False,
                allow_emergency=False,
            )
            trace.record(
                ResiliencePattern.FALLBACK_CHAIN,
                "chain",
                chain_started,
                chain_result.success,
                tool=chain_result.tool_used,
                level=chain_result.level_used.value if chain_result.level_used else None,
                steps=len(chain_result.steps),
            )
            if chain_result.success:
                return finish(True, "fallback_chain", result=chain_result.result, error=primary_error)

        if fallback is not None:
            fallback_started = self._clock.now()
            try:
                value = await self._attempt(fallback, definition, trace)
            except Exception as exc:
                trace.record(
                    ResiliencePattern.CALLER_FALLBACK, "fallback", fallback_started, False,
                    error=str(exc),
                )
            else:
                trace.record(ResiliencePattern.CALLER_FALLBACK, "fallback", fallback_started, True)
                return finish(True, "caller_fallback", result=value, error=primary_error)

        if self._config.enable_emergency and catalogued:
            emergency_started = self._clock.now()
            response = self._chain.emergency_response(
                definition.service_name, definition.action, context
            )
            trace.record(ResiliencePattern.EMERGENCY, "emergency_response", emergency_started, True)
            return finish(True, "emergency", result=response, error=primary_error)

        return finish(False, "exhausted", error=primary_error)

    def check_degradation_triggers(self) -> DegradationLevel:
        """Degrade on aggregate health, then let level triggers apply.

        Error rate, average response time or the number of open circuits
        beyond their thresholds force at least MINIMAL.
        """
        health = self._degradation.get_degradation_stats()["health"]
        open_circuits = self._circuits.open_circuit_count()
        reasons = []
        if health["error_rate"] > self._config.error_rate_threshold:
            reasons.append("error_rate")
        if health["avg_response_time_ms"] > self._config.response_time_threshold_ms:
            reasons.append("response_time")
        if open_circuits >= self._config.circuit_open_threshold:
            reasons.append("open_circuits")

        current = self._degradation.current_level
        if reasons and current.rank < DegradationLevel.MINIMAL.rank:
            self._degradation.manual_degrade(DegradationLevel.MINIMAL, reason="+".join(reasons))
            return self._degradation.current_level
        return self._degradation.evaluate_triggers()

    def force_recovery(self) -> None:
        """Close every circuit and return degradation to FULL."""
        self._circuits.reset_all()
        self._degradation.force_full_recovery()
        for policy in self._backoff.values():
            policy.reset_operation_metrics()
        self._chain.clear_history()
        logger.info("Forced recovery", services=len(self._circuits.get_all_statuses()))

    def get_resilience_status(self) -> dict[str, Any]:
        """Aggregate view of every component."""
        degradation = self._degradation.get_degradation_stats()
        circuits = self._circuits.get_health_report()
        level = self._degradation.current_level

        if level == DegradationLevel.EMERGENCY or circuits["status"] == "unhealthy":
            overall = "critical"
        elif level != DegradationLevel.FULL or circuits["status"] == "degraded":
            overall = "degraded"
        else:
            overall = "healthy"

        counters = self._counters
        return {
            "overall_health": overall,
            "operations": {
                "total": counters.total,
                "successful": counters.successful,
                "failed": counters.failed,
                "success_rate": counters.successful / counters.total if counters.total else 1.0,
                "by_strategy": dict(counters.by_strategy),
            },
            "degradation": degradation,
            "circuits": circuits,
            "fallback": self._chain.get_fallback_stats(),
            "timeouts": {
                **vars(self._timeouts.get_metrics()),
                **self._timeouts.get_resource_summary(),
            },
        }

    async def shutdown(self) -> None:
        """Stop monitoring and release every managed resource."""
        await self._degradation.stop_monitoring()
        await self._timeouts.shutdown()
        logger.info("Orchestrator shut down")
