"""Tests for graceful degradation."""

import asyncio

import pytest

from ai_resilience.resilience import (
    DegradationLevel,
    DegradationManager,
    DegradationThresholds,
    DegradedBehavior,
    FeatureConfig,
)
from ai_resilience.utils import ManualClock


class _Operation:
    def __init__(self, value: object = "live", error: Exception | None = None) -> None:
        self.value = value
        self.error = error
        self.calls = 0

    async def __call__(self) -> object:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.value


class TestDegradationLevels:
    """Tests for level transitions."""

    def test_starts_full(self, clock: ManualClock) -> None:
        """Test the initial level."""
        manager = DegradationManager(clock=clock)
        assert manager.current_level == DegradationLevel.FULL
        assert not manager.is_feature_disabled("tool_execution")

    def test_manual_degrade_disables_features(self, clock: ManualClock) -> None:
        """Test DISABLE features of the level are switched off."""
        manager = DegradationManager(clock=clock)
        manager.manual_degrade(DegradationLevel.MINIMAL, reason="incident")

        assert manager.is_feature_disabled("tool_execution")
        assert manager.is_feature_disabled("complex_operations")
        assert not manager.is_feature_disabled("ai_processing")
        assert manager.history[-1].reason == "incident"

    def test_failures_trigger_most_severe_level(self, clock: ManualClock) -> None:
        """Test the error rate selects the worst matching level."""
        manager = DegradationManager(clock=clock)
        for _ in range(7):
            manager.record_failure()

        assert manager.evaluate_triggers() == DegradationLevel.MINIMAL
        assert manager.history[-1].reason == "automatic_trigger"

    def test_slow_responses_trigger(self, clock: ManualClock) -> None:
        """Test response time alone can degrade."""
        manager = DegradationManager(clock=clock)
        manager.record_response_time(12000)
        assert manager.evaluate_triggers() == DegradationLevel.REDUCED

    def test_evaluate_never_improves(self, clock: ManualClock) -> None:
        """Test trigger evaluation only moves down the ladder."""
        manager = DegradationManager(clock=clock)
        manager.manual_degrade(DegradationLevel.EMERGENCY)
        assert manager.evaluate_triggers() == DegradationLevel.EMERGENCY

    def test_health_based_recovery(self, clock: ManualClock) -> None:
        """Test recovery once health crosses the level's threshold."""
        manager = DegradationManager(clock=clock)
        for _ in range(7):
            manager.record_failure()
        manager.evaluate_triggers()
        assert manager.check_recovery() == DegradationLevel.MINIMAL

        for _ in range(25):
            manager.record_success()
        assert manager.check_recovery() == DegradationLevel.REDUCED
        assert manager.history[-1].reason == "recovery_health_based"

    def test_time_based_recovery(self, clock: ManualClock) -> None:
        """Test recovery after the level's dwell time."""
        manager = DegradationManager(clock=clock)
        manager.manual_degrade(DegradationLevel.EMERGENCY)
        assert manager.estimate_recovery_seconds() == pytest.approx(1200)

        clock.advance(1200)
        assert manager.check_recovery() == DegradationLevel.FULL
        assert manager.history[-1].reason == "recovery_time_based"

    def test_force_full_recovery(self, clock: ManualClock) -> None:
        """Test forced recovery clears health metrics."""
        manager = DegradationManager(clock=clock)
        for _ in range(12):
            manager.record_failure()
        manager.evaluate_triggers()

        manager.force_full_recovery()
        assert manager.current_level == DegradationLevel.FULL
        assert manager.error_rate == 0.0
        assert manager.get_degradation_stats()["can_recover"]

    def test_history_is_bounded(self, clock: ManualClock) -> None:
        """Test only the most recent level changes are kept."""
        manager = DegradationManager(clock=clock, history_size=3)
        for _ in range(4):
            manager.manual_degrade(DegradationLevel.REDUCED, reason="load")
            manager.force_full_recovery()

        assert len(manager.history) == 3
        assert manager.history[-1].to_level == DegradationLevel.FULL
        assert len(manager.get_degradation_stats()["history"]) == 3

    def test_thresholds_to_policies(self) -> None:
        """Test settings thresholds override the default triggers."""
        policies = DegradationThresholds(minimal_error_rate=0.2).to_policies()
        assert policies[DegradationLevel.MINIMAL].trigger.error_rate == 0.2
        assert policies[DegradationLevel.REDUCED].trigger.error_rate == 0.15


class TestExecuteWithDegradation:
    """Tests for DegradationManager.execute_with_degradation."""

    @pytest.mark.asyncio
    async def test_full_runs_operation_and_caches(self, clock: ManualClock) -> None:
        """Test normal execution."""
        manager = DegradationManager(clock=clock)
        operation = _Operation("report")

        result = await manager.execute_with_degradation("file_operations", operation)

        assert result.success
        assert result.result == "report"
        assert result.behavior is None
        assert result.level == DegradationLevel.FULL
        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_enabled_feature_runs_primary(self, clock: ManualClock) -> None:
        """Test a listed feature that is still enabled runs its operation."""
        manager = DegradationManager(clock=clock)
        manager.manual_degrade(DegradationLevel.REDUCED)
        operation = _Operation("full answer")

        result = await manager.execute_with_degradation("ai_processing", operation)

        assert not manager.is_feature_disabled("ai_processing")
        assert result.success
        assert result.result == "full answer"
        assert result.behavior is None
        assert result.level == DegradationLevel.REDUCED
        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_fallback_behavior_after_failure(self, clock: ManualClock) -> None:
        """Test a listed FALLBACK feature returns its value once the operation fails."""
        manager = DegradationManager(clock=clock)
        manager.manual_degrade(DegradationLevel.MINIMAL)
        operation = _Operation(error=TimeoutError("model slow"))

        result = await manager.execute_with_degradation("ai_processing", operation)

        assert result.success
        assert result.result == "Simple acknowledgment"
        assert result.behavior == DegradedBehavior.FALLBACK
        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_disabled_feature_fails(self, clock: ManualClock) -> None:
        """Test a DISABLE feature reports the level's message."""
        manager = DegradationManager(clock=clock)
        manager.manual_degrade(DegradationLevel.MINIMAL)
        operation = _Operation()

        result = await manager.execute_with_degradation("tool_execution", operation)

        assert not result.success
        assert result.behavior == DegradedBehavior.DISABLE
        assert "temporarily disabled" in str(result.error)
        assert result.user_message == "Operating in minimal mode. Only basic responses available."
        assert "tool_execution" in result.features_disabled
        assert operation.calls == 0

    @pytest.mark.asyncio
    async def test_cache_behavior(self, clock: ManualClock) -> None:
        """Test a CACHE feature serves the last good value when the operation fails."""
        manager = DegradationManager(clock=clock)
        await manager.execute_with_degradation("file_operations", _Operation("listing"))
        manager.manual_degrade(DegradationLevel.REDUCED)

        fresh = await manager.execute_with_degradation("file_operations", _Operation("fresh"))
        assert fresh.result == "fresh"
        assert fresh.behavior is None

        result = await manager.execute_with_degradation(
            "file_operations", _Operation(error=OSError("disk"))
        )

        assert result.success
        assert result.result == "fresh"
        assert result.behavior == DegradedBehavior.CACHE

    @pytest.mark.asyncio
    async def test_simplify_uses_callers_implementation(self, clock: ManualClock) -> None:
        """Test SIMPLIFY runs the simplified implementation the caller supplies."""
        manager = DegradationManager(clock=clock)
        manager.manual_degrade(DegradationLevel.REDUCED)
        simplified = _Operation("short answer")

        result = await manager.execute_with_degradation(
            "ai_processing",
            _Operation(error=ConnectionError("model down")),
            FeatureConfig("ai_processing", simplified_implementation=simplified),
        )

        assert result.result == "short answer"
        assert result.behavior == DegradedBehavior.SIMPLIFY
        assert simplified.calls == 1

    @pytest.mark.asyncio
    async def test_simplify_without_implementation_surfaces_error(self, clock: ManualClock) -> None:
        """Test a failing SIMPLIFY feature with nothing to simplify to reports the error."""
        manager = DegradationManager(clock=clock)
        manager.manual_degrade(DegradationLevel.REDUCED)
        error = ConnectionError("model down")

        result = await manager.execute_with_degradation("ai_processing", _Operation(error=error))

        assert not result.success
        assert result.error is error

    @pytest.mark.asyncio
    async def test_emergency_refuses_non_essential(self, clock: ManualClock) -> None:
        """Test non-essential features are refused in emergency mode."""
        manager = DegradationManager(clock=clock)
        manager.manual_degrade(DegradationLevel.EMERGENCY)
        operation = _Operation()

        result = await manager.execute_with_degradation(
            "reports", operation, FeatureConfig("reports", essential=False)
        )

        assert not result.success
        assert not result.can_retry
        assert operation.calls == 0
        assert manager.is_feature_disabled("reports")

    @pytest.mark.asyncio
    async def test_essential_failure_uses_fallback_value(self, clock: ManualClock) -> None:
        """Test essential features get an alternative on failure."""
        manager = DegradationManager(clock=clock)

        result = await manager.execute_with_degradation(
            "status",
            _Operation(error=ConnectionError("down")),
            FeatureConfig("status", fallback_value={"status": "unknown"}),
        )

        assert result.success
        assert result.result == {"status": "unknown"}
        assert result.behavior == DegradedBehavior.FALLBACK
        assert manager.error_rate == pytest.approx(0.05)

    @pytest.mark.asyncio
    async def test_non_essential_failure_reports_error(self, clock: ManualClock) -> None:
        """Test non-essential failures surface the error."""
        manager = DegradationManager(clock=clock)
        error = ConnectionError("down")

        result = await manager.execute_with_degradation(
            "reports", _Operation(error=error), FeatureConfig("reports", essential=False)
        )

        assert not result.success
        assert result.error is error
        assert "reports" in (result.user_message or "")


class TestDegradationMonitor:
    """Tests for the monitoring task."""

    @pytest.mark.asyncio
    async def test_monitor_decays_and_recovers(self) -> None:
        """Test the periodic check recovers a healthy degraded system."""
        clock = ManualClock(start=0.0, auto_advance=False)
        manager = DegradationManager(clock=clock, decay_interval_seconds=10)
        manager.manual_degrade(DegradationLevel.REDUCED)

        task = manager.start_monitoring()
        for _ in range(3):
            await asyncio.sleep(0)
        clock.advance(10)
        for _ in range(3):
            await asyncio.sleep(0)

        assert manager.current_level == DegradationLevel.FULL
        await manager.stop_monitoring()
        assert task.done()
