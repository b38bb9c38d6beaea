"""Root pytest fixtures for ai-resilience tests."""

from __future__ import annotations

import pytest

from ai_resilience.context import ErrorContext, OperationPhase, ProcessingStage
from ai_resilience.telemetry import InMemoryRecorder
from ai_resilience.utils import ManualClock


@pytest.fixture
def clock() -> ManualClock:
    """Virtual clock whose sleeps advance time immediately."""
    return ManualClock(start=1_000_000.0)


@pytest.fixture
def recorder() -> InMemoryRecorder:
    return InMemoryRecorder()


@pytest.fixture
def plain_context() -> ErrorContext:
    """Context no recovery strategy applies to."""
    return ErrorContext.builder("plain_call").build()


@pytest.fixture
def tool_context() -> ErrorContext:
    """Context of a failing tool invocation."""
    return (
        ErrorContext.builder("trigger_build")
        .phase(OperationPhase.TOOL_INVOCATION)
        .stage(ProcessingStage.TOOL_EXECUTION)
        .tool("trigger_job", server_id="jenkins", parameters={"job": "deploy"})
        .user_intent("deploy the app", parsed_intent="deploy")
        .system(user_id="U123", conversation_id="C1", channel_id="D42")
        .completed_steps("init", "validate", "discover")
        .failed_step("tool_execution")
        .build()
    )


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: scenario tests spanning several components",
    )
