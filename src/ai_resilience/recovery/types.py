"""
Recovery episode types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ai_resilience.context.error_context import ErrorContext


class RecoveryStrategyType(str, Enum):
    """Kinds of recovery strategy."""

    RETRY = "retry"
    FALLBACK = "fallback"
    CIRCUIT_BREAKER = "circuit_breaker"


class RecoveryResult(str, Enum):
    """Outcome of a recovery strategy or a whole recovery episode."""

    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"
    NEEDS_ESCALATION = "needs_escalation"
    REQUIRES_USER_INPUT = "requires_user_input"


@dataclass(frozen=True)
class RecoveryAttempt:
    """One strategy execution within a recovery episode."""

    strategy_type: RecoveryStrategyType
    timestamp: float
    result: RecoveryResult
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class RecoveryContext:
    """State of one recovery episode.

    Attributes:
        original_error: The failure being recovered from
        error_context: Description of the failing operation
        attempts: Strategy attempts made so far in this episode
        max_attempts: Upper bound on attempts for the episode
        timeout_seconds: Deadline for re-entry calls
        retry_operation: Re-runs the failed operation; supplied by the boundary
    """

    original_error: BaseException
    error_context: ErrorContext
    attempts: list[RecoveryAttempt] = field(default_factory=list)
    max_attempts: int = 3
    timeout_seconds: float = 30.0
    retry_operation: Callable[[], Awaitable[Any]] | None = None

    def attempts_for(self, strategy_type: RecoveryStrategyType) -> int:
        """Count attempts already made by one kind of strategy."""
        return sum(1 for a in self.attempts if a.strategy_type == strategy_type)

    def failed_attempts(self) -> int:
        return sum(1 for a in self.attempts if a.result == RecoveryResult.FAILED)


@dataclass
class StrategyOutcome:
    """What a single strategy execution produced."""

    result: RecoveryResult
    data: Any = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class RecoveryOutcome:
    """Overall outcome of a recovery episode.

    Attributes:
        result: Final result
        recovered_data: Data produced by the strategy that succeeded
        strategy: Strategy that decided the outcome, if any
        attempts: Every attempt made during the episode
    """

    result: RecoveryResult
    recovered_data: Any = None
    strategy: RecoveryStrategyType | None = None
    attempts: list[RecoveryAttempt] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.result == RecoveryResult.SUCCESS
