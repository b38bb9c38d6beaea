"""面向异步服务的故障隔离与弹性恢复引擎。

ai-resilience: failure isolation and recovery for async services.

Wraps calls to unreliable dependencies in boundaries that degrade, isolate
and self-heal, recovers through ranked strategies, preserves in-flight
context for continuation, and composes backoff, circuit breaking, fallback
chains, graceful degradation and timeouts behind one orchestrator.
"""
from __future__ import annotations

from ai_resilience.boundaries import (
    Boundary,
    BoundaryConfig,
    BoundaryKind,
    BoundaryManager,
    BoundaryProfile,
    BoundaryResult,
    BoundaryState,
    IntegrationStrategy,
    ResilienceBoundary,
)
from ai_resilience.config import ResilienceSettings, SettingsLoader
from ai_resilience.context import ContextPreserver, ErrorContext
from ai_resilience.errors import (
    BoundaryIsolatedError,
    CircuitOpenError,
    ConfigurationError,
    ErrorCategory,
    ErrorSeverity,
    OperationTimeoutError,
    ResilienceError,
    TaggedError,
)
from ai_resilience.recovery import RecoveryResult, RecoveryStrategyManager
from ai_resilience.resilience import (
    OperationDefinition,
    OrchestrationResult,
    ResilienceOrchestrator,
)
from ai_resilience.utils import ManualClock, SystemClock

__version__ = "0.1.0"

__all__ = [
    # Boundaries
    "Boundary",
    "BoundaryConfig",
    "BoundaryKind",
    "BoundaryManager",
    "BoundaryProfile",
    "BoundaryResult",
    "BoundaryState",
    "IntegrationStrategy",
    "ResilienceBoundary",
    # Clock
    "ManualClock",
    "SystemClock",
    # Config
    "ResilienceSettings",
    "SettingsLoader",
    # Context
    "ContextPreserver",
    "ErrorContext",
    # Errors
    "BoundaryIsolatedError",
    "CircuitOpenError",
    "ConfigurationError",
    "ErrorCategory",
    "ErrorSeverity",
    "OperationTimeoutError",
    "ResilienceError",
    "TaggedError",
    # Orchestration
    "OperationDefinition",
    "OrchestrationResult",
    "ResilienceOrchestrator",
    # Recovery
    "RecoveryResult",
    "RecoveryStrategyManager",
    # Version
    "__version__",
]
