"""
Recovery strategies and the manager that ranks and runs them.
"""

from ai_resilience.recovery.manager import RecoveryStrategyManager
from ai_resilience.recovery.strategies import (
    DEFAULT_FALLBACK_MAP,
    CircuitBreakerStrategy,
    CircuitRecord,
    CircuitStrategyConfig,
    FallbackStrategy,
    RecoveryStrategy,
    RetryStrategy,
    RetryStrategyConfig,
)
from ai_resilience.recovery.types import (
    RecoveryAttempt,
    RecoveryContext,
    RecoveryOutcome,
    RecoveryResult,
    RecoveryStrategyType,
    StrategyOutcome,
)

__all__ = [
    "DEFAULT_FALLBACK_MAP",
    "CircuitBreakerStrategy",
    "CircuitRecord",
    "CircuitStrategyConfig",
    "FallbackStrategy",
    "RecoveryAttempt",
    "RecoveryContext",
    "RecoveryOutcome",
    "RecoveryResult",
    "RecoveryStrategy",
    "RecoveryStrategyManager",
    "RecoveryStrategyType",
    "RetryStrategy",
    "RetryStrategyConfig",
    "StrategyOutcome",
]
