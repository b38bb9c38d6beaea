"""
Error context and context preservation.
"""

from ai_resilience.context.error_context import (
    ErrorContext,
    ErrorContextBuilder,
    ExecutionState,
    OperationInfo,
    OperationPhase,
    ProcessingStage,
    SystemContext,
    ToolInfo,
    UserIntent,
    new_correlation_id,
)
from ai_resilience.context.preserver import (
    ContextPreserver,
    ContinuationPlan,
    OperationState,
    PreservationPriority,
    PreservationReason,
    PreservedState,
    PreserverConfig,
    StateMetadata,
    SystemState,
    UserState,
    operation_state_from_context,
    user_state_from_context,
)

__all__ = [
    "ContextPreserver",
    "ContinuationPlan",
    "ErrorContext",
    "ErrorContextBuilder",
    "ExecutionState",
    "OperationInfo",
    "OperationPhase",
    "OperationState",
    "PreservationPriority",
    "PreservationReason",
    "PreservedState",
    "PreserverConfig",
    "ProcessingStage",
    "StateMetadata",
    "SystemContext",
    "SystemState",
    "ToolInfo",
    "UserIntent",
    "UserState",
    "new_correlation_id",
    "operation_state_from_context",
    "user_state_from_context",
]
