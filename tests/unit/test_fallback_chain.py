"""Tests for the tool fallback chain."""

import asyncio
from typing import Any

import pytest

from ai_resilience.context import ErrorContext
from ai_resilience.errors import OperationTimeoutError
from ai_resilience.resilience import (
    FallbackChain,
    FallbackChainConfig,
    FallbackLevel,
    ToolCapability,
)
from ai_resilience.utils import ManualClock


def _chain(clock: ManualClock, **config: Any) -> FallbackChain:
    chain = FallbackChain(FallbackChainConfig(**config), clock=clock)
    chain.register_tool(ToolCapability("jenkins", ["trigger_job"], reliability=0.7))
    chain.register_tool(ToolCapability("gitlab_ci", ["trigger_pipeline", "run_job"], reliability=0.8))
    chain.register_tool(ToolCapability("github_actions", ["trigger_workflow"], reliability=0.95))
    chain.register_tool(
        ToolCapability("notifier", ["send_notification"], capabilities=["basic_fallback"])
    )
    return chain


class _Executor:
    """Records calls and fails for the listed tools."""

    def __init__(self, failing: set[str]) -> None:
        self.failing = failing
        self.calls: list[tuple[str, str]] = []

    async def __call__(self, tool: str, action: str, params: dict[str, Any]) -> dict[str, Any]:
        self.calls.append((tool, action))
        if tool in self.failing:
            raise ConnectionError(f"{tool} unreachable")
        return {"tool": tool, "action": action, **params}


class TestToolCapability:
    """Tests for ToolCapability."""

    def test_best_action_for(self) -> None:
        """Test exact and word-overlap matches."""
        tool = ToolCapability("gitlab_ci", ["trigger_pipeline", "get_status"])
        assert tool.best_action_for("trigger_pipeline") == "trigger_pipeline"
        assert tool.best_action_for("trigger_job") == "trigger_pipeline"
        assert tool.best_action_for("delete_repo") is None


class TestFallbackChain:
    """Tests for FallbackChain."""

    def test_build_chain_orders_by_reliability(self, clock: ManualClock) -> None:
        """Test alternates are ranked by reliability, basic tool last."""
        chain = _chain(clock)
        assert chain.get_recommended_chain("jenkins", "trigger_job") == [
            "primary:jenkins.trigger_job",
            "secondary:github_actions.trigger_workflow",
            "tertiary:gitlab_ci.trigger_pipeline",
            "basic:notifier.basic_build",
        ]

    def test_priority_breaks_close_reliability(self, clock: ManualClock) -> None:
        """Test fallback_priority decides within the reliability margin."""
        chain = FallbackChain(clock=clock)
        chain.register_tool(ToolCapability("a", ["trigger_job"], reliability=0.9, fallback_priority=2))
        chain.register_tool(ToolCapability("b", ["trigger_job"], reliability=0.85, fallback_priority=1))
        assert [t.name for t, _ in chain.find_compatible_tools("trigger_job")] == ["b", "a"]

    def test_ranking_ignores_registration_order(self, clock: ManualClock) -> None:
        """Test overlapping reliability margins give the same order either way round."""
        tools = [
            ToolCapability("buildkite", ["trigger_job"], reliability=0.9, fallback_priority=3),
            ToolCapability("circleci", ["trigger_job"], reliability=0.82, fallback_priority=2),
            ToolCapability("drone", ["trigger_job"], reliability=0.74, fallback_priority=1),
        ]
        orders = []
        for registration in (tools, list(reversed(tools))):
            chain = FallbackChain(clock=clock)
            for tool in registration:
                chain.register_tool(tool)
            orders.append([t.name for t, _ in chain.find_compatible_tools("trigger_job")])

        assert orders[0] == orders[1] == ["circleci", "buildkite", "drone"]

    def test_max_chain_length(self, clock: ManualClock) -> None:
        """Test the chain is truncated."""
        steps = _chain(clock, max_chain_length=2).build_chain("jenkins", "trigger_job")
        assert [s.level for s in steps] == [FallbackLevel.PRIMARY, FallbackLevel.SECONDARY]

    def test_simplify_action(self) -> None:
        """Test simplified actions for the basic tool."""
        assert FallbackChain.simplify_action("trigger_job") == "basic_build"
        assert FallbackChain.simplify_action("unknown") == "basic_operation"

    @pytest.mark.asyncio
    async def test_secondary_used_when_primary_fails(self, clock: ManualClock) -> None:
        """Test the most reliable alternate answers for a failing primary."""
        chain = _chain(clock)
        executor = _Executor(failing={"jenkins"})

        result = await chain.execute("jenkins", "trigger_job", executor, {"job": "deploy"})

        assert result.success
        assert result.used_fallback
        assert result.level_used == FallbackLevel.SECONDARY
        assert result.tool_used == "github_actions"
        assert result.result == {"tool": "github_actions", "action": "trigger_workflow", "job": "deploy"}
        assert executor.calls == [("jenkins", "trigger_job"), ("github_actions", "trigger_workflow")]
        assert list(result.errors) == ["primary:jenkins"]

    @pytest.mark.asyncio
    async def test_reliability_feedback(self, clock: ManualClock) -> None:
        """Test step outcomes adjust tool reliability."""
        chain = _chain(clock)
        await chain.execute("jenkins", "trigger_job", _Executor(failing={"jenkins"}))

        jenkins = chain.get_tool("jenkins")
        github = chain.get_tool("github_actions")
        assert jenkins is not None and github is not None
        assert jenkins.reliability == pytest.approx(0.65)
        assert jenkins.last_failure_time == clock.now()
        assert github.reliability == pytest.approx(0.96)

    @pytest.mark.asyncio
    async def test_exhausted_chain_ends_in_emergency(self, clock: ManualClock, tool_context: ErrorContext) -> None:
        """Test every step failing yields an emergency response."""
        chain = _chain(clock)
        executor = _Executor(failing={"jenkins", "github_actions", "gitlab_ci", "notifier"})

        result = await chain.execute("jenkins", "trigger_job", executor, context=tool_context)

        assert result.success
        assert result.level_used == FallbackLevel.EMERGENCY
        assert result.result["status"] == "emergency_fallback"
        assert result.result["user_intent"] == "deploy the app"
        assert result.result["correlation_id"] == tool_context.correlation_id
        assert len(result.steps) == 4
        assert not any(step.success for step in result.steps)

    @pytest.mark.asyncio
    async def test_exhausted_chain_without_emergency(self, clock: ManualClock) -> None:
        """Test disabling the emergency step reports failure."""
        chain = _chain(clock)
        executor = _Executor(failing={"jenkins", "github_actions", "gitlab_ci", "notifier"})

        result = await chain.execute("jenkins", "trigger_job", executor, allow_emergency=False)

        assert not result.success
        assert result.level_used is None
        assert len(result.errors) == 4

    @pytest.mark.asyncio
    async def test_skip_primary(self, clock: ManualClock) -> None:
        """Test the chain can start at the first alternate."""
        chain = _chain(clock)
        executor = _Executor(failing=set())

        result = await chain.execute("jenkins", "trigger_job", executor, include_primary=False)

        assert result.level_used == FallbackLevel.SECONDARY
        assert executor.calls == [("github_actions", "trigger_workflow")]

    @pytest.mark.asyncio
    async def test_step_timeout_moves_on(self, clock: ManualClock) -> None:
        """Test a slow step times out and the next step runs."""
        timeouts = {
            FallbackLevel.PRIMARY: 0.01,
            FallbackLevel.SECONDARY: 1.0,
            FallbackLevel.TERTIARY: 1.0,
            FallbackLevel.BASIC: 1.0,
        }
        chain = _chain(clock, step_timeouts=timeouts)

        async def executor(tool: str, action: str, params: dict[str, Any]) -> str:
            if tool == "jenkins":
                await asyncio.sleep(5)
            return tool

        result = await chain.execute("jenkins", "trigger_job", executor)

        assert result.tool_used == "github_actions"
        assert isinstance(result.errors["primary:jenkins"], OperationTimeoutError)

    @pytest.mark.asyncio
    async def test_stats(self, clock: ManualClock) -> None:
        """Test history-based statistics."""
        chain = _chain(clock)
        await chain.execute("jenkins", "trigger_job", _Executor(failing=set()))
        await chain.execute("jenkins", "trigger_job", _Executor(failing={"jenkins"}))

        stats = chain.get_fallback_stats()
        assert stats["total_executions"] == 2
        assert stats["success_rate"] == 1.0
        assert stats["level_usage"]["primary"] == 1
        assert stats["level_usage"]["secondary"] == 1
        assert stats["average_chain_length"] == 1.5

        chain.clear_history()
        assert chain.get_fallback_stats()["total_executions"] == 0

    def test_update_tool_performance(self, clock: ManualClock) -> None:
        """Test outside observations move the moving averages."""
        chain = _chain(clock)
        chain.update_tool_performance("jenkins", success=True, response_time_ms=2000)
        jenkins = chain.get_tool("jenkins")
        assert jenkins is not None
        assert jenkins.average_response_time_ms == pytest.approx(1100)
        assert jenkins.reliability == pytest.approx(0.705)
