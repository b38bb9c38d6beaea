"""
Recovery strategy manager.

Runs the applicable strategies for a failure in descending priority order
until one succeeds or asks for escalation.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from ai_resilience.recovery.strategies import (
    CircuitBreakerStrategy,
    FallbackStrategy,
    RecoveryStrategy,
    RetryStrategy,
)
from ai_resilience.recovery.types import (
    RecoveryAttempt,
    RecoveryContext,
    RecoveryOutcome,
    RecoveryResult,
    RecoveryStrategyType,
    StrategyOutcome,
)
from ai_resilience.telemetry.logger import get_logger
from ai_resilience.telemetry.metrics import NullRecorder, safe_record
from ai_resilience.utils.clock import default_clock

if TYPE_CHECKING:
    from ai_resilience.telemetry.metrics import MetricsRecorder
    from ai_resilience.utils.clock import Clock

logger = get_logger(__name__)

_TERMINAL_RESULTS = frozenset({RecoveryResult.SUCCESS, RecoveryResult.NEEDS_ESCALATION})


class RecoveryStrategyManager:
    """Ranks and runs recovery strategies.

    A strategy that raises is logged and treated as a failed attempt; it
    never aborts the pipeline.

    Example:
        >>> manager = RecoveryStrategyManager()
        >>> outcome = await manager.execute_recovery(
        ...     RecoveryContext(original_error=exc, error_context=ctx)
        ... )
        >>> outcome.result
        <RecoveryResult.NEEDS_ESCALATION: 'needs_escalation'>
    """

    def __init__(
        self,
        strategies: list[RecoveryStrategy] | None = None,
        metrics: MetricsRecorder | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._clock = clock or default_clock()
        self._metrics = metrics or NullRecorder()
        if strategies is None:
            strategies = [
                RetryStrategy(clock=self._clock),
                FallbackStrategy(),
                CircuitBreakerStrategy(clock=self._clock),
            ]
        self._strategies: list[RecoveryStrategy] = list(strategies)

    @property
    def strategies(self) -> list[RecoveryStrategy]:
        return list(self._strategies)

    def add_strategy(self, strategy: RecoveryStrategy) -> None:
        self._strategies.append(strategy)

    def remove_strategy(self, strategy_type: RecoveryStrategyType) -> bool:
        """Remove every strategy of a type.

        Returns:
            True if any was removed
        """
        before = len(self._strategies)
        self._strategies = [s for s in self._strategies if s.strategy_type != strategy_type]
        return len(self._strategies) != before

    def get_strategy(self, strategy_type: RecoveryStrategyType) -> RecoveryStrategy | None:
        for strategy in self._strategies:
            if strategy.strategy_type == strategy_type:
                return strategy
        return None

    def get_applicable_strategies(self, context: RecoveryContext) -> list[RecoveryStrategy]:
        """Strategies able and allowed to run, highest priority first."""
        applicable = [s for s in self._strategies if s.can_handle(context) and s.should_attempt(context)]
        return sorted(applicable, key=lambda s: s.get_priority(context), reverse=True)

    def estimate_total_recovery_time(self, context: RecoveryContext) -> float:
        """Sum of the estimated attempt times of applicable strategies, in seconds."""
        return sum(s.estimate_recovery_time(context) for s in self.get_applicable_strategies(context))

    async def execute_recovery(self, context: RecoveryContext) -> RecoveryOutcome:
        """Run one recovery episode.

        Args:
            context: Recovery context; attempts are appended to it

        Returns:
            RecoveryOutcome; NEEDS_ESCALATION when nothing applies, FAILED
            when the applicable strategies, up to the episode's
            ``max_attempts``, ran without a terminal result
        """
        applicable = self.get_applicable_strategies(context)
        log_fields = context.error_context.log_fields()
        if not applicable:
            logger.info("No applicable recovery strategy", **log_fields)
            return RecoveryOutcome(RecoveryResult.NEEDS_ESCALATION, attempts=list(context.attempts))

        for strategy in applicable:
            if len(context.attempts) >= context.max_attempts:
                logger.info(
                    "Recovery attempt budget spent",
                    max_attempts=context.max_attempts,
                    **log_fields,
                )
                break
            started = self._clock.now()
            try:
                outcome = await strategy.execute(context)
            except Exception as exc:
                logger.exception(
                    "Recovery strategy raised",
                    strategy=strategy.strategy_type.value,
                    **log_fields,
                )
                outcome = StrategyOutcome(RecoveryResult.FAILED, details={"error": str(exc)})

            context.attempts.append(
                RecoveryAttempt(
                    strategy_type=strategy.strategy_type,
                    timestamp=started,
                    result=outcome.result,
                    details=dict(outcome.details),
                )
            )
            safe_record(
                self._metrics.record_recovery,
                strategy.strategy_type.value,
                outcome.result.value,
                (self._clock.now() - started) * 1000,
                log_fields,
            )
            logger.debug(
                "Recovery attempt finished",
                strategy=strategy.strategy_type.value,
                result=outcome.result.value,
                **log_fields,
            )

            if outcome.result in _TERMINAL_RESULTS:
                return RecoveryOutcome(
                    outcome.result,
                    recovered_data=outcome.data,
                    strategy=strategy.strategy_type,
                    attempts=list(context.attempts),
                )

        return RecoveryOutcome(RecoveryResult.FAILED, attempts=list(context.attempts))
