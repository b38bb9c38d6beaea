"""
Fallback chain over a catalog of tool capabilities.

Given a primary (tool, action) the chain tries, in order: the primary, the
best and second-best compatible alternates, a designated basic tool running
a simplified action and finally a synthetic emergency response. Each step
has its own timeout; a failing step moves on to the next.
"""

from __future__ import annotations

import asyncio
import os
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from ai_resilience.errors import OperationTimeoutError
from ai_resilience.telemetry.logger import get_logger
from ai_resilience.utils.clock import default_clock

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ai_resilience.context.error_context import ErrorContext
    from ai_resilience.utils.clock import Clock

    ToolExecutor = Callable[[str, str, dict[str, Any]], Awaitable[Any]]

logger = get_logger(__name__)

BASIC_FALLBACK_CAPABILITY = "basic_fallback"

_SIMPLIFIED_ACTIONS: dict[str, str] = {
    "trigger_job": "basic_build",
    "deploy_application": "basic_deploy",
    "run_tests": "basic_test",
    "send_notification": "basic_notify",
    "create_issue": "basic_log",
    "query_database": "basic_query",
}
_DEFAULT_SIMPLIFIED_ACTION = "basic_operation"


class FallbackLevel(str, Enum):
    """Position of a step in the chain."""

    PRIMARY = "primary"
    SECONDARY = "secondary"
    TERTIARY = "tertiary"
    BASIC = "basic"
    EMERGENCY = "emergency"


def _default_step_timeouts() -> dict[FallbackLevel, float]:
    return {
        FallbackLevel.PRIMARY: 10.0,
        FallbackLevel.SECONDARY: 8.0,
        FallbackLevel.TERTIARY: 6.0,
        FallbackLevel.BASIC: 5.0,
    }


@dataclass
class ToolCapability:
    """A tool registered in the catalog.

    Attributes:
        name: Tool name
        actions: Actions the tool can perform
        reliability: Observed reliability in [0, 1]
        average_response_time_ms: Moving average response time
        fallback_priority: Tie-breaker, lower is preferred
        capabilities: Free-form tags such as ``basic_fallback``
        last_failure_time: Time of the last observed failure
    """

    name: str
    actions: list[str]
    reliability: float = 0.9
    average_response_time_ms: float = 1000.0
    fallback_priority: int = 1
    capabilities: list[str] = field(default_factory=list)
    last_failure_time: float | None = None

    def best_action_for(self, action: str) -> str | None:
        """Pick the action of this tool most similar to ``action``."""
        if action in self.actions:
            return action
        wanted = set(action.split("_"))
        scored = [(len(wanted & set(a.split("_"))), a) for a in self.actions]
        scored = [s for s in scored if s[0] > 0]
        if not scored:
            return None
        return max(scored, key=lambda s: s[0])[1]


@dataclass
class FallbackStep:
    level: FallbackLevel
    tool: str
    action: str
    timeout_seconds: float


@dataclass
class StepAttempt:
    """Outcome of one executed step."""

    level: FallbackLevel
    tool: str
    action: str
    success: bool
    duration_ms: float
    error: str | None = None


@dataclass
class FallbackChainConfig:
    """Configuration for fallback chains.

    Attributes:
        max_chain_length: Maximum number of executable steps
        step_timeouts: Per-level step timeout in seconds
        enable_emergency: Whether an exhausted chain ends in an emergency response
        reliability_margin: Reliability difference below which fallback_priority decides
        history_size: Number of chain executions kept for statistics
    """

    max_chain_length: int = 5
    step_timeouts: dict[FallbackLevel, float] = field(default_factory=_default_step_timeouts)
    enable_emergency: bool = True
    reliability_margin: float = 0.1
    history_size: int = 100

    @classmethod
    def default(cls) -> FallbackChainConfig:
        return cls()

    @classmethod
    def from_env(cls) -> FallbackChainConfig:
        return cls(
            max_chain_length=int(os.getenv("AI_RESILIENCE_FALLBACK_MAX_CHAIN", "5")),
            enable_emergency=os.getenv("AI_RESILIENCE_FALLBACK_EMERGENCY", "true").lower()
            in ("1", "true", "yes"),
        )


@dataclass
class FallbackChainResult:
    """Result of a fallback chain execution.

    Attributes:
        success: Whether some step produced a result
        result: Result value (if success)
        level_used: Level of the step that produced the result
        tool_used: Tool of the step that produced the result
        action_used: Action of the step that produced the result
        steps: Every executed step in order
        errors: Mapping of ``level:tool`` to the error of each failed step
    """

    success: bool
    result: Any = None
    level_used: FallbackLevel | None = None
    tool_used: str | None = None
    action_used: str | None = None
    steps: list[StepAttempt] = field(default_factory=list)
    errors: dict[str, BaseException] = field(default_factory=dict)

    @property
    def used_fallback(self) -> bool:
        return self.level_used not in (None, FallbackLevel.PRIMARY)


class FallbackChain:
    """Tool capability catalog with chained fallback execution.

    Example:
        >>> chain = FallbackChain()
        >>> chain.register_tool(ToolCapability("jenkins", ["trigger_job"], reliability=0.7))
        >>> chain.register_tool(ToolCapability("github_actions", ["trigger_workflow"]))
        >>> result = await chain.execute("jenkins", "trigger_job", run_tool)
        >>> result.level_used
        <FallbackLevel.SECONDARY: 'secondary'>
    """

    def __init__(
        self,
        config: FallbackChainConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._config = config or FallbackChainConfig()
        self._clock = clock or default_clock()
        self._tools: dict[str, ToolCapability] = {}
        self._history: deque[FallbackChainResult] = deque(maxlen=self._config.history_size)

    @property
    def config(self) -> FallbackChainConfig:
        return self._config

    def register_tool(self, capability: ToolCapability) -> FallbackChain:
        """Add or replace a tool in the catalog.

        Returns:
            Self for chaining
        """
        self._tools[capability.name] = capability
        return self

    def unregister_tool(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get_tool(self, name: str) -> ToolCapability | None:
        return self._tools.get(name)

    def get_registered_tools(self) -> list[ToolCapability]:
        return list(self._tools.values())

    def _ranked(self, tools: list[ToolCapability]) -> list[ToolCapability]:
        """Order tools by reliability band, then fallback_priority.

        A band opens at the most reliable remaining tool and holds every tool
        within ``reliability_margin`` of it, so the order does not depend on
        registration order.
        """
        keys: dict[str, tuple[int, int, float, str]] = {}
        band = 0
        leader: float | None = None
        for tool in sorted(tools, key=lambda t: (-t.reliability, t.fallback_priority, t.name)):
            if leader is None or leader - tool.reliability > self._config.reliability_margin:
                band += 1
                leader = tool.reliability
            keys[tool.name] = (band, tool.fallback_priority, -tool.reliability, tool.name)
        return sorted(tools, key=lambda t: keys[t.name])

    def find_compatible_tools(
        self, action: str, exclude: set[str] | None = None
    ) -> list[tuple[ToolCapability, str]]:
        """Find tools able to substitute for ``action``.

        Returns:
            (tool, action to call) pairs, best candidate first
        """
        excluded = exclude or set()
        candidates = [
            (tool, matched)
            for tool in self._tools.values()
            if tool.name not in excluded
            and BASIC_FALLBACK_CAPABILITY not in tool.capabilities
            and (matched := tool.best_action_for(action)) is not None
        ]
        position = {t.name: i for i, t in enumerate(self._ranked([c[0] for c in candidates]))}
        return sorted(candidates, key=lambda c: position[c[0].name])

    def _basic_tool(self, exclude: set[str]) -> ToolCapability | None:
        basics = [
            t
            for t in self._tools.values()
            if BASIC_FALLBACK_CAPABILITY in t.capabilities and t.name not in exclude
        ]
        if not basics:
            return None
        return self._ranked(basics)[0]

    @staticmethod
    def simplify_action(action: str) -> str:
        return _SIMPLIFIED_ACTIONS.get(action, _DEFAULT_SIMPLIFIED_ACTION)

    def build_chain(
        self, primary_tool: str, action: str, include_primary: bool = True
    ) -> list[FallbackStep]:
        """Build the ordered executable steps for a primary (tool, action)."""
        timeouts = self._config.step_timeouts
        steps: list[FallbackStep] = []
        if include_primary:
            steps.append(
                FallbackStep(FallbackLevel.PRIMARY, primary_tool, action, timeouts[FallbackLevel.PRIMARY])
            )

        used = {primary_tool}
        alternates = self.find_compatible_tools(action, exclude=used)
        for level, (tool, matched) in zip(
            (FallbackLevel.SECONDARY, FallbackLevel.TERTIARY), alternates
        ):
            steps.append(FallbackStep(level, tool.name, matched, timeouts[level]))
            used.add(tool.name)

        basic = self._basic_tool(used)
        if basic is not None:
            steps.append(
                FallbackStep(
                    FallbackLevel.BASIC,
                    basic.name,
                    self.simplify_action(action),
                    timeouts[FallbackLevel.BASIC],
                )
            )

        return steps[: self._config.max_chain_length]

    def get_recommended_chain(self, primary_tool: str, action: str) -> list[str]:
        return [f"{s.level.value}:{s.tool}.{s.action}" for s in self.build_chain(primary_tool, action)]

    def emergency_response(
        self, tool: str, action: str, context: ErrorContext | None = None
    ) -> dict[str, Any]:
        """Synthetic response acknowledging the request without performing it."""
        return {
            "status": "emergency_fallback",
            "message": (
                f"Unable to complete '{action}' with '{tool}' or any alternative right now. "
                "The request has been recorded."
            ),
            "original_tool": tool,
            "original_action": action,
            "user_intent": (
                context.user_intent.original_message if context and context.user_intent else None
            ),
            "correlation_id": context.correlation_id if context else None,
        }

    async def _run_step(
        self, step: FallbackStep, executor: ToolExecutor, params: dict[str, Any]
    ) -> Any:
        try:
            return await asyncio.wait_for(
                executor(step.tool, step.action, params), timeout=step.timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            raise OperationTimeoutError(
                f"{step.level.value} step '{step.tool}.{step.action}' timed out",
                timeout_seconds=step.timeout_seconds,
            ) from exc

    async def execute(
        self,
        primary_tool: str,
        action: str,
        executor: ToolExecutor,
        params: dict[str, Any] | None = None,
        context: ErrorContext | None = None,
        include_primary: bool = True,
        allow_emergency: bool | None = None,
    ) -> FallbackChainResult:
        """Run the chain until a step succeeds.

        Args:
            primary_tool: Tool originally requested
            action: Action originally requested
            executor: Runs ``(tool, action, params)``
            params: Parameters passed to every step
            context: Error context, used by the emergency response
            include_primary: Whether to start with the primary step
            allow_emergency: Override ``config.enable_emergency``

        Returns:
            FallbackChainResult with outcome
        """
        params = params or {}
        outcome = FallbackChainResult(success=False)

        for step in self.build_chain(primary_tool, action, include_primary):
            started = self._clock.now()
            try:
                value = await self._run_step(step, executor, params)
            except Exception as exc:
                duration = (self._clock.now() - started) * 1000
                outcome.steps.append(
                    StepAttempt(step.level, step.tool, step.action, False, duration, str(exc))
                )
                outcome.errors[f"{step.level.value}:{step.tool}"] = exc
                self._adjust_reliability(step.tool, success=False)
                logger.warning(
                    "Fallback step failed",
                    level=step.level.value,
                    tool=step.tool,
                    action=step.action,
                    error=str(exc),
                )
                continue

            duration = (self._clock.now() - started) * 1000
            outcome.steps.append(StepAttempt(step.level, step.tool, step.action, True, duration))
            self._adjust_reliability(step.tool, success=True)
            outcome.success = True
            outcome.result = value
            outcome.level_used = step.level
            outcome.tool_used = step.tool
            outcome.action_used = step.action
            self._history.append(outcome)
            return outcome

        emergency = self._config.enable_emergency if allow_emergency is None else allow_emergency
        if emergency:
            outcome.success = True
            outcome.result = self.emergency_response(primary_tool, action, context)
            outcome.level_used = FallbackLevel.EMERGENCY
            logger.error(
                "Fallback chain exhausted, returning emergency response",
                tool=primary_tool,
                action=action,
                steps=len(outcome.steps),
            )

        self._history.append(outcome)
        return outcome

    def _adjust_reliability(self, tool_name: str, success: bool) -> None:
        tool = self._tools.get(tool_name)
        if tool is None:
            return
        if success:
            tool.reliability = min(1.0, tool.reliability + 0.01)
        else:
            tool.reliability = max(0.0, tool.reliability - 0.05)
            tool.last_failure_time = self._clock.now()

    def update_tool_performance(
        self, tool_name: str, success: bool, response_time_ms: float
    ) -> None:
        """Fold an observation from outside the chain into a tool's profile."""
        tool = self._tools.get(tool_name)
        if tool is None:
            return
        tool.average_response_time_ms = tool.average_response_time_ms * 0.9 + response_time_ms * 0.1
        if success:
            tool.reliability = min(1.0, tool.reliability + 0.005)
        else:
            tool.reliability = max(0.0, tool.reliability - 0.02)
            tool.last_failure_time = self._clock.now()

    def get_fallback_stats(self) -> dict[str, Any]:
        total = len(self._history)
        level_usage = {level.value: 0 for level in FallbackLevel}
        successes = 0
        for item in self._history:
            if item.success:
                successes += 1
            if item.level_used is not None:
                level_usage[item.level_used.value] += 1
        return {
            "total_executions": total,
            "success_rate": successes / total if total else 0.0,
            "level_usage": level_usage,
            "average_chain_length": (
                sum(len(i.steps) for i in self._history) / total if total else 0.0
            ),
            "tool_reliability": {t.name: t.reliability for t in self._tools.values()},
        }

    def clear_history(self) -> None:
        self._history.clear()
