"""Tests for boundaries coordinated with the resilience orchestrator."""

from typing import Any

import pytest

from ai_resilience.boundaries import (
    BoundaryConfig,
    BoundaryManager,
    BoundaryProfile,
    BoundaryState,
    IntegrationStrategy,
    ResilienceBoundary,
    ResilienceBoundaryConfig,
    ResilienceBoundaryResult,
)
from ai_resilience.context import ErrorContext
from ai_resilience.errors import BoundaryIsolatedError
from ai_resilience.recovery import RecoveryStrategyManager
from ai_resilience.resilience import (
    BackoffConfig,
    JitterStrategy,
    OperationDefinition,
    ResilienceOrchestrator,
)
from ai_resilience.utils import ManualClock

_FAST_BACKOFF = BackoffConfig(
    base_delay_ms=100, max_attempts=3, jitter=JitterStrategy.NONE, adaptive=False
)

_OPTIONAL = OperationDefinition("lint", "billing")
_ESSENTIAL = OperationDefinition("build", "billing", essential=True)


class _Service:
    def __init__(self, failures: int = 0, value: Any = "ok") -> None:
        self.failures = failures
        self.value = value
        self.calls = 0

    async def __call__(self) -> Any:
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("billing unreachable")
        return self.value


async def _cached() -> str:
    return "cached"


def _boundary(clock: ManualClock, **resilience: Any) -> ResilienceBoundary:
    config = BoundaryConfig(
        degradation_threshold=2,
        isolation_threshold=4,
        escalation_threshold=10,
        isolation_duration_seconds=60,
    )
    return ResilienceBoundary(
        BoundaryProfile("dependency", config),
        orchestrator=ResilienceOrchestrator(backoff_config=_FAST_BACKOFF, clock=clock),
        resilience_config=ResilienceBoundaryConfig(**resilience),
        recovery_manager=RecoveryStrategyManager([], clock=clock),
        clock=clock,
    )


async def _degrade(boundary: ResilienceBoundary, context: ErrorContext) -> None:
    for _ in range(2):
        await boundary.execute(_Service(failures=1), context)
    assert boundary.state == BoundaryState.DEGRADED


def _path(result: ResilienceBoundaryResult[Any]) -> list[tuple[str, str, bool]]:
    return [(s.component, s.action, s.success) for s in result.integration_path]


class TestStrategySelection:
    """Tests for ResilienceBoundary.select_strategy."""

    def test_healthy_boundary_uses_hybrid(self, clock: ManualClock) -> None:
        """Test both layers wrap calls on a healthy boundary."""
        boundary = _boundary(clock)
        assert boundary.select_strategy(_ESSENTIAL) == IntegrationStrategy.HYBRID
        assert boundary.select_strategy(_OPTIONAL) == IntegrationStrategy.HYBRID

    def test_isolated_or_disabled_keeps_boundary_first(self, clock: ManualClock) -> None:
        """Test isolation and disabled orchestration put the boundary in front."""
        isolated = _boundary(clock)
        isolated.isolate()
        assert isolated.select_strategy(_ESSENTIAL) == IntegrationStrategy.BOUNDARY_FIRST

        disabled = _boundary(clock, enable_orchestration=False)
        assert disabled.select_strategy(_ESSENTIAL) == IntegrationStrategy.BOUNDARY_FIRST

    @pytest.mark.asyncio
    async def test_degraded_boundary_lets_orchestrator_lead(
        self, clock: ManualClock, plain_context: ErrorContext
    ) -> None:
        """Test optional calls go to the orchestrator once errors reach the degradation threshold."""
        boundary = _boundary(clock)
        await _degrade(boundary, plain_context)

        assert boundary.select_strategy(_OPTIONAL) == IntegrationStrategy.ORCHESTRATOR_FIRST
        assert boundary.select_strategy(_ESSENTIAL) == IntegrationStrategy.HYBRID

    @pytest.mark.asyncio
    async def test_orchestrator_preference_follows_usage(
        self, clock: ManualClock, plain_context: ErrorContext
    ) -> None:
        """Test a boundary served by the orchestrator keeps preferring it after healing."""
        boundary = _boundary(clock)
        await _degrade(boundary, plain_context)
        await boundary.execute_with_resilience(_Service(), plain_context, _OPTIONAL)

        assert boundary.state == BoundaryState.HEALTHY
        assert boundary.get_metrics().error_count == 0
        assert boundary.get_usage_stats()["orchestrator_share"] == 1.0
        assert boundary.select_strategy(_OPTIONAL) == IntegrationStrategy.ORCHESTRATOR_FIRST


class TestOrchestratorFirst:
    """Tests for the orchestrator-first strategy."""

    @pytest.mark.asyncio
    async def test_success_heals_boundary(self, clock: ManualClock, plain_context: ErrorContext) -> None:
        """Test an orchestrated success counts as a boundary success."""
        boundary = _boundary(clock)
        await _degrade(boundary, plain_context)
        service = _Service(failures=1)

        result = await boundary.execute_with_resilience(service, plain_context, _OPTIONAL)

        assert result.success
        assert result.result == "ok"
        assert result.strategy == IntegrationStrategy.ORCHESTRATOR_FIRST
        assert result.orchestrator_used
        assert result.orchestration is not None
        assert result.orchestration.final_strategy == "backoff_retry"
        assert result.patterns_used == ["timeout", "circuit_breaker", "backoff"]
        assert _path(result) == [("orchestrator", "execute_with_resilience", True)]
        assert result.boundary_state == BoundaryState.HEALTHY
        assert service.calls == 2

    @pytest.mark.asyncio
    async def test_failure_runs_boundary_fallback(self, clock: ManualClock, plain_context: ErrorContext) -> None:
        """Test the fallback runs through the boundary after the orchestrator gives up."""
        boundary = _boundary(clock)
        await _degrade(boundary, plain_context)
        service = _Service(failures=100)

        result = await boundary.execute_with_resilience(service, plain_context, _OPTIONAL, fallback=_cached)

        assert result.success
        assert result.result == "cached"
        assert result.fallback_used
        assert isinstance(result.error, ConnectionError)
        assert result.orchestration is not None and not result.orchestration.success
        assert result.patterns_used == ["error_boundary", "fallback"]
        assert _path(result) == [
            ("orchestrator", "execute_with_resilience", False),
            ("boundary", "execute_fallback", True),
        ]
        assert service.calls == 3
        assert boundary.get_usage_stats() == {
            "orchestrator_usage": 1,
            "boundary_usage": 1,
            "total_usage": 2,
            "orchestrator_share": 0.5,
        }

    @pytest.mark.asyncio
    async def test_failure_without_fallback_moves_state(
        self, clock: ManualClock, plain_context: ErrorContext
    ) -> None:
        """Test orchestrated failures count towards boundary isolation."""
        boundary = _boundary(clock, fallback_after_orchestrator=False)
        await _degrade(boundary, plain_context)

        first = await boundary.execute_with_resilience(
            _Service(failures=100), plain_context, _OPTIONAL, fallback=_cached
        )
        second = await boundary.execute_with_resilience(
            _Service(failures=100), plain_context, OperationDefinition("report", "ledger")
        )

        assert not first.success
        assert not first.fallback_used
        assert first.boundary_state == BoundaryState.DEGRADED
        assert not second.success
        assert isinstance(second.error, ConnectionError)
        assert second.boundary_state == BoundaryState.ISOLATED
        assert boundary.get_metrics().error_count == 4


class TestBoundaryFirst:
    """Tests for the boundary-first strategy."""

    @pytest.mark.asyncio
    async def test_orchestrator_is_second_chance(self, clock: ManualClock, plain_context: ErrorContext) -> None:
        """Test the orchestrator retries a call the boundary could not save."""
        boundary = _boundary(clock)
        service = _Service(failures=1)

        result = await boundary.execute_with_resilience(
            service, plain_context, _OPTIONAL, strategy=IntegrationStrategy.BOUNDARY_FIRST
        )

        assert result.success
        assert result.result == "ok"
        assert result.fallback_used
        assert isinstance(result.error, ConnectionError)
        assert result.patterns_used == ["timeout", "circuit_breaker", "backoff", "orchestrator_fallback"]
        assert _path(result) == [
            ("boundary", "execute", False),
            ("orchestrator", "execute_fallback", True),
        ]
        assert service.calls == 2
        assert boundary.get_metrics().error_count == 1

    @pytest.mark.asyncio
    async def test_disabled_orchestration(self, clock: ManualClock, plain_context: ErrorContext) -> None:
        """Test only the boundary runs when orchestration is disabled."""
        boundary = _boundary(clock, enable_orchestration=False)
        service = _Service(failures=1)

        result = await boundary.execute_with_resilience(service, plain_context, _OPTIONAL)

        assert not result.success
        assert result.strategy == IntegrationStrategy.BOUNDARY_FIRST
        assert not result.orchestrator_used
        assert result.patterns_used == ["error_boundary"]
        assert _path(result) == [("boundary", "execute", False)]
        assert service.calls == 1

    @pytest.mark.asyncio
    async def test_isolated_boundary_keeps_primary_out(
        self, clock: ManualClock, plain_context: ErrorContext
    ) -> None:
        """Test an isolated boundary does not hand the primary to the orchestrator."""
        boundary = _boundary(clock)
        boundary.isolate()
        service = _Service()

        result = await boundary.execute_with_resilience(service, plain_context, _ESSENTIAL)

        assert not result.success
        assert isinstance(result.error, BoundaryIsolatedError)
        assert not result.orchestrator_used
        assert service.calls == 0
        assert boundary.orchestrator.get_resilience_status()["operations"]["total"] == 0

        fallback = await boundary.execute_with_resilience(service, plain_context, _ESSENTIAL, fallback=_cached)
        assert fallback.success
        assert fallback.result == "cached"
        assert fallback.fallback_used

        forced = await boundary.execute_with_resilience(
            service, plain_context, _OPTIONAL, strategy=IntegrationStrategy.ORCHESTRATOR_FIRST
        )
        assert isinstance(forced.error, BoundaryIsolatedError)
        assert forced.strategy == IntegrationStrategy.BOUNDARY_FIRST
        assert service.calls == 0


class TestHybrid:
    """Tests for the hybrid strategy."""

    @pytest.mark.asyncio
    async def test_success(self, clock: ManualClock, plain_context: ErrorContext) -> None:
        """Test the orchestrated call runs inside the boundary."""
        boundary = _boundary(clock)

        result = await boundary.execute_with_resilience(_Service(value="build #7"), plain_context, _ESSENTIAL)

        assert result.success
        assert result.result == "build #7"
        assert result.strategy == IntegrationStrategy.HYBRID
        assert result.orchestrator_used
        assert result.orchestration is not None
        assert result.orchestration.final_strategy == "circuit_breaker_first"
        assert result.patterns_used == ["timeout", "backoff", "circuit_breaker", "error_boundary"]
        assert _path(result) == [
            ("orchestrator", "execute_with_resilience", True),
            ("boundary", "execute_hybrid", True),
        ]
        assert boundary.get_usage_stats()["total_usage"] == 2

    @pytest.mark.asyncio
    async def test_orchestrator_failure_reaches_boundary_fallback(
        self, clock: ManualClock, plain_context: ErrorContext
    ) -> None:
        """Test an exhausted orchestration is a boundary failure with a fallback."""
        boundary = _boundary(clock)
        service = _Service(failures=100)

        result = await boundary.execute_with_resilience(service, plain_context, _ESSENTIAL, fallback=_cached)

        assert result.success
        assert result.result == "cached"
        assert result.fallback_used
        assert isinstance(result.error, ConnectionError)
        assert result.orchestration is not None
        assert result.orchestration.final_strategy == "exhausted"
        assert result.patterns_used == ["fallback", "error_boundary"]
        assert service.calls == 3
        assert boundary.get_metrics().error_count == 1


class TestStatus:
    """Tests for usage and status reporting."""

    @pytest.mark.asyncio
    async def test_comprehensive_status(self, clock: ManualClock, plain_context: ErrorContext) -> None:
        """Test boundary, orchestrator and usage appear in one view."""
        boundary = _boundary(clock)
        await boundary.execute_with_resilience(_Service(), plain_context, _ESSENTIAL)

        status = boundary.get_comprehensive_status()

        assert status["boundary"]["name"] == "dependency"
        assert status["boundary"]["state"] == "healthy"
        assert status["boundary"]["metrics"]["total_executions"] == 1
        assert status["orchestrator"]["operations"]["total"] == 1
        assert status["usage"]["orchestrator_usage"] == 1
        await boundary.shutdown()

    def test_manager_shares_orchestrator(self, clock: ManualClock) -> None:
        """Test a manager given an orchestrator builds resilience boundaries around it."""
        orchestrator = ResilienceOrchestrator(clock=clock)
        manager = BoundaryManager(orchestrator=orchestrator, clock=clock)

        boundaries = [manager.get_boundary(name) for name in manager.names()]
        assert all(isinstance(b, ResilienceBoundary) for b in boundaries)
        assert all(b.orchestrator is orchestrator for b in boundaries)
        assert not isinstance(BoundaryManager(clock=clock).registry, ResilienceBoundary)
