"""
Error context describing a failing operation.

The context is supplied by the caller and read by boundaries, recovery
strategies and the context preserver. The engine only branches on its
phase, stage, severity, tool and resource-key values.
"""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ai_resilience.errors.codes import ErrorCategory, ErrorSeverity
from ai_resilience.errors.classification import is_retryable


class OperationPhase(str, Enum):
    """Phase of the operation that failed."""

    INITIALIZATION = "initialization"
    VALIDATION = "validation"
    TOOL_DISCOVERY = "tool_discovery"
    TOOL_SELECTION = "tool_selection"
    TOOL_INVOCATION = "tool_invocation"
    RESULT_PROCESSING = "result_processing"
    RESPONSE_FORMATTING = "response_formatting"
    CLEANUP = "cleanup"


class ProcessingStage(str, Enum):
    """Stage of request processing when the failure happened."""

    REQUEST_RECEIVED = "request_received"
    CONTEXT_GATHERING = "context_gathering"
    AI_PROCESSING = "ai_processing"
    TOOL_EXECUTION = "tool_execution"
    RESULT_VALIDATION = "result_validation"
    RESPONSE_GENERATION = "response_generation"
    DELIVERY = "delivery"
    COMPLETED = "completed"
    FAILED = "failed"


def new_correlation_id() -> str:
    """Generate a correlation id of the form ``err_<millis>_<random>``."""
    return f"err_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class OperationInfo(BaseModel):
    """The operation being performed."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Operation name")
    phase: OperationPhase = Field(default=OperationPhase.INITIALIZATION)
    step: int | None = Field(default=None, description="Current step number")
    total_steps: int | None = Field(default=None)
    start_time: float = Field(default_factory=time.time)
    duration_ms: float | None = Field(default=None)


class ToolInfo(BaseModel):
    """The tool invoked by the operation, if any."""

    model_config = ConfigDict(frozen=True)

    tool_name: str | None = Field(default=None)
    server_id: str | None = Field(default=None)
    endpoint: str | None = Field(default=None)
    parameters: dict[str, Any] = Field(default_factory=dict)
    attempt_number: int = Field(default=1)

    @property
    def resource_key(self) -> str | None:
        """Key identifying the tool resource, ``server:tool``."""
        if not self.tool_name:
            return None
        return f"{self.server_id or 'default'}:{self.tool_name}"


class UserIntent(BaseModel):
    """What the user asked for."""

    model_config = ConfigDict(frozen=True)

    original_message: str = Field(default="")
    parsed_intent: str | None = Field(default=None)
    confidence: float | None = Field(default=None)
    fallback_options: list[str] = Field(default_factory=list)


class ExecutionState(BaseModel):
    """Progress of the operation when it failed."""

    model_config = ConfigDict(frozen=True)

    stage: ProcessingStage = Field(default=ProcessingStage.REQUEST_RECEIVED)
    completed_steps: list[str] = Field(default_factory=list)
    failed_step: str | None = Field(default=None)
    partial_results: dict[str, Any] = Field(default_factory=dict)
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)


class SystemContext(BaseModel):
    """Identifiers of the request and its environment."""

    model_config = ConfigDict(frozen=True)

    user_id: str | None = Field(default=None)
    conversation_id: str | None = Field(default=None)
    thread_id: str | None = Field(default=None)
    channel_id: str | None = Field(default=None)
    request_id: str | None = Field(default=None)
    session_id: str | None = Field(default=None)
    environment: str = Field(default="production")


class ErrorContext(BaseModel):
    """Read-only description of a failing operation.

    Helpers such as :meth:`with_completed_step` return modified copies.

    Example:
        >>> ctx = (
        ...     ErrorContext.builder("trigger_build")
        ...     .phase(OperationPhase.TOOL_INVOCATION)
        ...     .tool("trigger_job", server_id="jenkins")
        ...     .stage(ProcessingStage.TOOL_EXECUTION)
        ...     .build()
        ... )
        >>> ctx.resource_key
        'jenkins:trigger_job'
    """

    model_config = ConfigDict(frozen=True)

    operation: OperationInfo
    timestamp: float = Field(default_factory=time.time)
    correlation_id: str = Field(default_factory=new_correlation_id)
    parent_correlation_id: str | None = Field(default=None)
    severity: ErrorSeverity = Field(default=ErrorSeverity.MEDIUM)
    category: ErrorCategory = Field(default=ErrorCategory.UNKNOWN)
    tool: ToolInfo | None = Field(default=None)
    user_intent: UserIntent | None = Field(default=None)
    execution_state: ExecutionState = Field(default_factory=ExecutionState)
    system: SystemContext = Field(default_factory=SystemContext)
    additional: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def builder(cls, operation_name: str) -> ErrorContextBuilder:
        """Start building a context for ``operation_name``."""
        return ErrorContextBuilder(operation_name)

    @property
    def operation_name(self) -> str:
        return self.operation.name

    @property
    def phase(self) -> OperationPhase:
        return self.operation.phase

    @property
    def stage(self) -> ProcessingStage:
        return self.execution_state.stage

    @property
    def tool_name(self) -> str | None:
        return self.tool.tool_name if self.tool else None

    @property
    def server_id(self) -> str | None:
        return self.tool.server_id if self.tool else None

    @property
    def resource_key(self) -> str | None:
        return self.tool.resource_key if self.tool else None

    def is_retryable(self) -> bool:
        """Check whether the described failure may be retried."""
        if self.severity == ErrorSeverity.CRITICAL:
            return False
        if not is_retryable(self.category):
            return False
        return self.execution_state.retry_count < self.execution_state.max_retries

    def create_child(
        self, operation_name: str, phase: OperationPhase | None = None
    ) -> ErrorContext:
        """Create a context for a sub-operation, linked by correlation id."""
        return self.model_copy(
            update={
                "operation": OperationInfo(
                    name=operation_name, phase=phase or self.operation.phase
                ),
                "correlation_id": new_correlation_id(),
                "parent_correlation_id": self.correlation_id,
                "timestamp": time.time(),
            }
        )

    def with_stage(self, stage: ProcessingStage) -> ErrorContext:
        return self._with_execution(stage=stage)

    def with_completed_step(self, step: str) -> ErrorContext:
        """Return a copy with ``step`` appended to the completed steps."""
        steps = [*self.execution_state.completed_steps, step]
        return self._with_execution(completed_steps=steps)

    def with_failed_step(self, step: str) -> ErrorContext:
        """Return a copy marking ``step`` as failed and the stage as FAILED."""
        return self._with_execution(failed_step=step, stage=ProcessingStage.FAILED)

    def with_retry(self) -> ErrorContext:
        return self._with_execution(retry_count=self.execution_state.retry_count + 1)

    def with_timing(self, duration_ms: float) -> ErrorContext:
        return self.model_copy(
            update={"operation": self.operation.model_copy(update={"duration_ms": duration_ms})}
        )

    def _with_execution(self, **changes: Any) -> ErrorContext:
        return self.model_copy(
            update={"execution_state": self.execution_state.model_copy(update=changes)}
        )

    def log_fields(self) -> dict[str, Any]:
        """Fields suitable for structured log records."""
        fields: dict[str, Any] = {
            "correlation_id": self.correlation_id,
            "operation": self.operation.name,
            "phase": self.operation.phase.value,
            "stage": self.execution_state.stage.value,
            "severity": self.severity.value,
        }
        if self.resource_key:
            fields["resource"] = self.resource_key
        return fields


class ErrorContextBuilder:
    """Fluent builder for :class:`ErrorContext`."""

    def __init__(self, operation_name: str) -> None:
        self._operation: dict[str, Any] = {"name": operation_name}
        self._fields: dict[str, Any] = {}
        self._tool: dict[str, Any] | None = None
        self._intent: dict[str, Any] | None = None
        self._execution: dict[str, Any] = {}
        self._system: dict[str, Any] = {}

    def phase(self, phase: OperationPhase) -> ErrorContextBuilder:
        self._operation["phase"] = phase
        return self

    def step(self, step: int, total_steps: int | None = None) -> ErrorContextBuilder:
        self._operation["step"] = step
        self._operation["total_steps"] = total_steps
        return self

    def severity(self, severity: ErrorSeverity) -> ErrorContextBuilder:
        self._fields["severity"] = severity
        return self

    def category(self, category: ErrorCategory) -> ErrorContextBuilder:
        self._fields["category"] = category
        return self

    def tool(
        self,
        tool_name: str,
        *,
        server_id: str | None = None,
        parameters: dict[str, Any] | None = None,
        attempt_number: int = 1,
    ) -> ErrorContextBuilder:
        self._tool = {
            "tool_name": tool_name,
            "server_id": server_id,
            "parameters": parameters or {},
            "attempt_number": attempt_number,
        }
        return self

    def user_intent(
        self,
        original_message: str,
        *,
        parsed_intent: str | None = None,
        confidence: float | None = None,
        fallback_options: list[str] | None = None,
    ) -> ErrorContextBuilder:
        self._intent = {
            "original_message": original_message,
            "parsed_intent": parsed_intent,
            "confidence": confidence,
            "fallback_options": fallback_options or [],
        }
        return self

    def stage(self, stage: ProcessingStage) -> ErrorContextBuilder:
        self._execution["stage"] = stage
        return self

    def completed_steps(self, *steps: str) -> ErrorContextBuilder:
        self._execution["completed_steps"] = list(steps)
        return self

    def failed_step(self, step: str) -> ErrorContextBuilder:
        self._execution["failed_step"] = step
        return self

    def partial_results(self, results: dict[str, Any]) -> ErrorContextBuilder:
        self._execution["partial_results"] = dict(results)
        return self

    def retries(self, retry_count: int, max_retries: int = 3) -> ErrorContextBuilder:
        self._execution["retry_count"] = retry_count
        self._execution["max_retries"] = max_retries
        return self

    def system(self, **identifiers: Any) -> ErrorContextBuilder:
        """Set system identifiers (user_id, conversation_id, thread_id, ...)."""
        self._system.update(identifiers)
        return self

    def correlation_id(self, correlation_id: str) -> ErrorContextBuilder:
        self._fields["correlation_id"] = correlation_id
        return self

    def additional(self, **values: Any) -> ErrorContextBuilder:
        self._fields.setdefault("additional", {}).update(values)
        return self

    def build(self) -> ErrorContext:
        return ErrorContext(
            operation=OperationInfo(**self._operation),
            tool=ToolInfo(**self._tool) if self._tool else None,
            user_intent=UserIntent(**self._intent) if self._intent else None,
            execution_state=ExecutionState(**self._execution),
            system=SystemContext(**self._system),
            **self._fields,
        )
