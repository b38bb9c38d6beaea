"""
Resilience patterns and their orchestration.

Provides:
- Backoff: Delay strategies with jitter and adaptation
- CircuitBreaker: Fail fast on a known-bad dependency
- FallbackChain: Ordered substitutes ending in an emergency response
- DegradationManager: Global feature-scope reduction
- TimeoutManager: Deadlines with resource cleanup
- ResilienceOrchestrator: All of the above on one call path
"""

from ai_resilience.resilience.backoff import (
    BackoffConfig,
    BackoffPolicy,
    BackoffResult,
    BackoffStrategy,
    JitterStrategy,
    OperationMetrics,
)
from ai_resilience.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerManager,
    CircuitState,
    CircuitStats,
    CircuitStatus,
)
from ai_resilience.resilience.degradation import (
    DegradationLevel,
    DegradationManager,
    DegradationResult,
    DegradationThresholds,
    DegradationTrigger,
    DegradedBehavior,
    FeatureConfig,
    LevelPolicy,
    default_policies,
)
from ai_resilience.resilience.fallback import (
    FallbackChain,
    FallbackChainConfig,
    FallbackChainResult,
    FallbackLevel,
    FallbackStep,
    ToolCapability,
)
from ai_resilience.resilience.orchestrator import (
    ExecutionPlan,
    ExecutionStep,
    OperationDefinition,
    OrchestrationResult,
    OrchestratorConfig,
    ResilienceOrchestrator,
    ResiliencePattern,
)
from ai_resilience.resilience.timeout import (
    ResourceType,
    TimeoutConfig,
    TimeoutManager,
    TimeoutResult,
    current_operation_id,
)

__all__ = [
    # Backoff
    "BackoffConfig",
    "BackoffPolicy",
    "BackoffResult",
    "BackoffStrategy",
    "JitterStrategy",
    "OperationMetrics",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerManager",
    "CircuitState",
    "CircuitStats",
    "CircuitStatus",
    # Degradation
    "DegradationLevel",
    "DegradationManager",
    "DegradationResult",
    "DegradationThresholds",
    "DegradationTrigger",
    "DegradedBehavior",
    "FeatureConfig",
    "LevelPolicy",
    "default_policies",
    # Fallback
    "FallbackChain",
    "FallbackChainConfig",
    "FallbackChainResult",
    "FallbackLevel",
    "FallbackStep",
    "ToolCapability",
    # Orchestrator
    "ExecutionPlan",
    "ExecutionStep",
    "OperationDefinition",
    "OrchestrationResult",
    "OrchestratorConfig",
    "ResilienceOrchestrator",
    "ResiliencePattern",
    # Timeout
    "ResourceType",
    "TimeoutConfig",
    "TimeoutManager",
    "TimeoutResult",
    "current_operation_id",
]
