"""
Boundary coordinated with the resilience orchestrator.

A :class:`ResilienceBoundary` is a regular :class:`Boundary` that can also
hand a call to a :class:`ResilienceOrchestrator`. Each call picks one of
three integration strategies:

- ``boundary_first``: the boundary runs the call, the orchestrator is a
  second chance when the boundary could not produce a result
- ``orchestrator_first``: the orchestrator runs the call, the boundary
  fallback is a second chance
- ``hybrid``: the orchestrated call runs inside the boundary, so boundary
  isolation, recovery and fallbacks wrap the resilience patterns
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from ai_resilience.boundaries.boundary import Boundary, BoundaryConfig, BoundaryProfile, BoundaryResult
from ai_resilience.errors import ResilienceError
from ai_resilience.resilience.orchestrator import (
    OperationDefinition,
    OrchestrationResult,
    ResilienceOrchestrator,
)
from ai_resilience.telemetry.logger import get_logger, log_scope
from ai_resilience.telemetry.metrics import safe_record

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ai_resilience.context.error_context import ErrorContext
    from ai_resilience.context.preserver import ContextPreserver
    from ai_resilience.recovery import RecoveryStrategyManager
    from ai_resilience.telemetry.metrics import MetricsRecorder
    from ai_resilience.utils.clock import Clock

    Operation = Callable[[], Awaitable[Any]]

T = TypeVar("T")

logger = get_logger(__name__)


class IntegrationStrategy(str, Enum):
    """Which component runs a call first."""

    ORCHESTRATOR_FIRST = "orchestrator_first"
    BOUNDARY_FIRST = "boundary_first"
    HYBRID = "hybrid"


@dataclass
class ResilienceBoundaryConfig:
    """Configuration of the boundary and orchestrator coordination.

    Attributes:
        enable_orchestration: Use the orchestrator at all
        fallback_after_orchestrator: Run the boundary fallback when the orchestrator fails
        orchestrator_preference: Orchestrator usage share above which it goes first
    """

    enable_orchestration: bool = True
    fallback_after_orchestrator: bool = True
    orchestrator_preference: float = 0.7


@dataclass
class IntegrationStep:
    component: str
    action: str
    timestamp: float
    success: bool


@dataclass
class ResilienceBoundaryResult(BoundaryResult[T]):
    """Boundary result extended with the orchestrator's part in it.

    Attributes:
        strategy: Integration strategy the call used
        orchestration: Orchestrator result, if the orchestrator ran
        orchestrator_used: Whether the orchestrator ran
        patterns_used: Patterns that took part, orchestrator and boundary
        integration_path: Component steps in order
    """

    strategy: IntegrationStrategy | None = None
    orchestration: OrchestrationResult | None = None
    orchestrator_used: bool = False
    patterns_used: list[str] = field(default_factory=list)
    integration_path: list[IntegrationStep] = field(default_factory=list)


def _pattern_names(orchestration: OrchestrationResult | None) -> list[str]:
    if orchestration is None:
        return []
    return [p.value for p in orchestration.patterns_used]


class ResilienceBoundary(Boundary):
    """Boundary that coordinates with a resilience orchestrator.

    :meth:`execute` keeps the plain boundary behavior;
    :meth:`execute_with_resilience` adds the orchestrator.

    Example:
        >>> boundary = ResilienceBoundary(tool_execution_profile(), orchestrator=orchestrator)
        >>> result = await boundary.execute_with_resilience(
        ...     trigger_build, ctx, OperationDefinition("build", "jenkins", essential=True)
        ... )
        >>> result.strategy
        <IntegrationStrategy.HYBRID: 'hybrid'>
    """

    def __init__(
        self,
        profile: BoundaryProfile,
        config: BoundaryConfig | None = None,
        orchestrator: ResilienceOrchestrator | None = None,
        resilience_config: ResilienceBoundaryConfig | None = None,
        recovery_manager: RecoveryStrategyManager | None = None,
        preserver: ContextPreserver | None = None,
        metrics: MetricsRecorder | None = None,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(
            profile,
            config=config,
            recovery_manager=recovery_manager,
            preserver=preserver,
            metrics=metrics,
            clock=clock,
        )
        self._orchestrator = orchestrator or ResilienceOrchestrator(metrics=metrics, clock=self._clock)
        self._resilience_config = resilience_config or ResilienceBoundaryConfig()
        self._orchestrator_usage = 0
        self._boundary_usage = 0

    @property
    def orchestrator(self) -> ResilienceOrchestrator:
        return self._orchestrator

    @property
    def resilience_config(self) -> ResilienceBoundaryConfig:
        return self._resilience_config

    def select_strategy(self, definition: OperationDefinition) -> IntegrationStrategy:
        """Pick the integration strategy for a call.

        An isolated boundary or disabled orchestration keeps the boundary in
        front. Essential operations get both layers. A boundary past its
        degradation threshold, or one that has mostly relied on the
        orchestrator, lets the orchestrator lead.
        """
        if self.is_isolated() or not self._resilience_config.enable_orchestration:
            return IntegrationStrategy.BOUNDARY_FIRST
        if definition.essential:
            return IntegrationStrategy.HYBRID
        if self._metrics.error_count >= self._config.degradation_threshold:
            return IntegrationStrategy.ORCHESTRATOR_FIRST
        if self._orchestrator_share() > self._resilience_config.orchestrator_preference:
            return IntegrationStrategy.ORCHESTRATOR_FIRST
        return IntegrationStrategy.HYBRID

    def _orchestrator_share(self) -> float:
        total = self._orchestrator_usage + self._boundary_usage
        if self._orchestrator_usage == 0:
            return 0.5
        return self._orchestrator_usage / total

    def _step(self, path: list[IntegrationStep], component: str, action: str, success: bool) -> None:
        path.append(IntegrationStep(component, action, self._clock.now(), success))

    async def execute_with_resilience(
        self,
        operation: Operation,
        context: ErrorContext,
        definition: OperationDefinition,
        fallback: Operation | None = None,
        strategy: IntegrationStrategy | None = None,
    ) -> ResilienceBoundaryResult[Any]:
        """Run an operation through the boundary and the orchestrator.

        Args:
            operation: Zero-argument async operation
            context: Description of the operation, used on failure
            definition: How the orchestrator keys and treats the operation
            fallback: Caller fallback; defaults to the profile's fallback
            strategy: Integration strategy; selected per call if None

        Returns:
            ResilienceBoundaryResult; failures are reported, never raised
        """
        strategy = strategy or self.select_strategy(definition)
        logger.debug(
            "Integration strategy selected",
            boundary=self.name,
            strategy=strategy.value,
            operation_id=definition.id,
        )
        if strategy == IntegrationStrategy.ORCHESTRATOR_FIRST:
            return await self._orchestrator_first(operation, context, definition, fallback)
        if strategy == IntegrationStrategy.BOUNDARY_FIRST:
            return await self._boundary_first(operation, context, definition, fallback, [])
        return await self._hybrid(operation, context, definition, fallback)

    async def _orchestrator_first(
        self,
        operation: Operation,
        context: ErrorContext,
        definition: OperationDefinition,
        fallback: Operation | None,
    ) -> ResilienceBoundaryResult[Any]:
        path: list[IntegrationStep] = []
        if self.is_isolated():
            return await self._boundary_first(operation, context, definition, fallback, path)
        started = self._clock.now()
        await self._admit()

        orchestration = await self._orchestrator.execute_with_resilience(operation, definition, context)
        self._orchestrator_usage += 1
        self._step(path, "orchestrator", "execute_with_resilience", orchestration.success)

        if orchestration.success:
            await self._record_success(context, started)
            return self._integrated(
                started,
                IntegrationStrategy.ORCHESTRATOR_FIRST,
                path,
                success=True,
                result=orchestration.result,
                orchestration=orchestration,
                orchestrator_used=True,
                patterns_used=_pattern_names(orchestration),
            )

        error = orchestration.error or ResilienceError(f"Operation '{definition.id}' failed")
        if self._resilience_config.fallback_after_orchestrator and fallback is not None:
            fallback_result = await self.execute(fallback, context)
            self._boundary_usage += 1
            self._step(path, "boundary", "execute_fallback", fallback_result.success)
            return self._integrated(
                started,
                IntegrationStrategy.ORCHESTRATOR_FIRST,
                path,
                success=fallback_result.success,
                result=fallback_result.result,
                error=error,
                fallback_used=True,
                fallback_error=fallback_result.error,
                preserved_state_id=fallback_result.preserved_state_id,
                orchestration=orchestration,
                orchestrator_used=True,
                patterns_used=["error_boundary", "fallback"],
            )

        with log_scope(boundary=self.name, correlation_id=context.correlation_id):
            await self._count_failure(error)
            safe_record(self._metrics_sink.record_error, error, {"boundary": self.name, **context.log_fields()})
            logger.warning(
                "Orchestrated call failed",
                boundary=self.name,
                operation_id=definition.id,
                strategy=orchestration.final_strategy,
                error=str(error),
            )
        return self._integrated(
            started,
            IntegrationStrategy.ORCHESTRATOR_FIRST,
            path,
            success=False,
            error=error,
            orchestration=orchestration,
            orchestrator_used=True,
            patterns_used=_pattern_names(orchestration),
        )

    async def _boundary_first(
        self,
        operation: Operation,
        context: ErrorContext,
        definition: OperationDefinition,
        fallback: Operation | None,
        path: list[IntegrationStep],
    ) -> ResilienceBoundaryResult[Any]:
        started = self._clock.now()
        outcome = await self.execute(operation, context, fallback)
        self._boundary_usage += 1
        self._step(path, "boundary", "execute", outcome.success)

        # An isolated boundary keeps the primary out of the orchestrator too.
        if outcome.success or self.is_isolated() or not self._resilience_config.enable_orchestration:
            return self._from_boundary(outcome, IntegrationStrategy.BOUNDARY_FIRST, path, ["error_boundary"])

        orchestration = await self._orchestrator.execute_with_resilience(operation, definition, context)
        self._orchestrator_usage += 1
        self._step(path, "orchestrator", "execute_fallback", orchestration.success)
        return self._integrated(
            started,
            IntegrationStrategy.BOUNDARY_FIRST,
            path,
            success=orchestration.success,
            result=orchestration.result,
            error=outcome.error or orchestration.error,
            recovery_result=outcome.recovery_result,
            fallback_used=True,
            fallback_error=outcome.fallback_error,
            preserved_state_id=outcome.preserved_state_id,
            orchestration=orchestration,
            orchestrator_used=True,
            patterns_used=[*_pattern_names(orchestration), "orchestrator_fallback"],
        )

    async def _hybrid(
        self,
        operation: Operation,
        context: ErrorContext,
        definition: OperationDefinition,
        fallback: Operation | None,
    ) -> ResilienceBoundaryResult[Any]:
        path: list[IntegrationStep] = []
        if self.is_isolated():
            return await self._boundary_first(operation, context, definition, fallback, path)

        runs: list[OrchestrationResult] = []

        async def orchestrated() -> Any:
            orchestration = await self._orchestrator.execute_with_resilience(operation, definition, context)
            runs.append(orchestration)
            self._step(path, "orchestrator", "execute_with_resilience", orchestration.success)
            if not orchestration.success:
                raise orchestration.error or ResilienceError(f"Operation '{definition.id}' failed")
            return orchestration.result

        outcome = await self.execute(orchestrated, context, fallback)
        self._boundary_usage += 1
        self._orchestrator_usage += 1
        self._step(path, "boundary", "execute_hybrid", outcome.success)

        orchestration = runs[-1] if runs else None
        patterns = ["fallback"] if outcome.fallback_used else _pattern_names(orchestration)
        result = self._from_boundary(outcome, IntegrationStrategy.HYBRID, path, [*patterns, "error_boundary"])
        result.orchestration = orchestration
        result.orchestrator_used = orchestration is not None
        return result

    def _integrated(
        self,
        started: float,
        strategy: IntegrationStrategy,
        path: list[IntegrationStep],
        **kwargs: Any,
    ) -> ResilienceBoundaryResult[Any]:
        return ResilienceBoundaryResult(
            boundary_state=self._state,
            execution_time_seconds=self._clock.now() - started,
            strategy=strategy,
            integration_path=path,
            **kwargs,
        )

    def _from_boundary(
        self,
        outcome: BoundaryResult[Any],
        strategy: IntegrationStrategy,
        path: list[IntegrationStep],
        patterns: list[str],
    ) -> ResilienceBoundaryResult[Any]:
        return ResilienceBoundaryResult(
            success=outcome.success,
            result=outcome.result,
            error=outcome.error,
            boundary_state=outcome.boundary_state,
            recovery_result=outcome.recovery_result,
            recovered=outcome.recovered,
            fallback_used=outcome.fallback_used,
            fallback_error=outcome.fallback_error,
            preserved_state_id=outcome.preserved_state_id,
            execution_time_seconds=outcome.execution_time_seconds,
            strategy=strategy,
            patterns_used=patterns,
            integration_path=path,
        )

    def get_usage_stats(self) -> dict[str, Any]:
        """How often each component has run a call of this boundary."""
        total = self._orchestrator_usage + self._boundary_usage
        return {
            "orchestrator_usage": self._orchestrator_usage,
            "boundary_usage": self._boundary_usage,
            "total_usage": total,
            "orchestrator_share": self._orchestrator_usage / total if total else 0.0,
        }

    def get_comprehensive_status(self) -> dict[str, Any]:
        """Boundary state and metrics, orchestrator status and usage in one view."""
        return {
            "boundary": {
                "name": self.name,
                "state": self._state.value,
                "metrics": vars(self.get_metrics()),
            },
            "orchestrator": self._orchestrator.get_resilience_status(),
            "usage": self.get_usage_stats(),
        }

    async def shutdown(self) -> None:
        await self._orchestrator.shutdown()

    def __repr__(self) -> str:
        return (
            f"ResilienceBoundary(name={self.name!r}, state={self._state.value}, "
            f"orchestrator_usage={self._orchestrator_usage}, boundary_usage={self._boundary_usage})"
        )
