"""Tests for recovery strategies and the strategy manager."""

import asyncio

import pytest

from ai_resilience.context import ErrorContext
from ai_resilience.errors import ConfigurationError, ErrorSeverity
from ai_resilience.recovery import (
    CircuitBreakerStrategy,
    CircuitStrategyConfig,
    FallbackStrategy,
    RecoveryContext,
    RecoveryResult,
    RecoveryStrategy,
    RecoveryStrategyManager,
    RecoveryStrategyType,
    RetryStrategy,
    RetryStrategyConfig,
    StrategyOutcome,
)
from ai_resilience.resilience import CircuitState
from ai_resilience.telemetry import InMemoryRecorder
from ai_resilience.utils import ManualClock


async def _fail() -> None:
    raise RuntimeError("still broken")


async def _ok() -> str:
    return "recovered"


def _no_jitter(clock: ManualClock) -> RetryStrategy:
    return RetryStrategy(RetryStrategyConfig(base_delay_ms=100), clock=clock, rng=lambda: 0.0)


class _Exploding(RecoveryStrategy):
    strategy_type = RecoveryStrategyType.FALLBACK

    def can_handle(self, context: RecoveryContext) -> bool:
        return True

    def get_priority(self, context: RecoveryContext) -> int:
        return 99

    async def execute(self, context: RecoveryContext) -> StrategyOutcome:
        raise RuntimeError("strategy bug")


class TestRetryStrategy:
    """Tests for RetryStrategy."""

    def test_delay_doubles_and_caps(self, clock: ManualClock) -> None:
        """Test exponential delay with cap."""
        strategy = RetryStrategy(
            RetryStrategyConfig(base_delay_ms=100, max_delay_ms=350), clock=clock, rng=lambda: 0.0
        )
        assert [strategy.calculate_delay(n) for n in range(4)] == [100, 200, 350, 350]

    def test_jitter_is_proportional(self, clock: ManualClock) -> None:
        """Test jitter adds up to jitter_factor of the delay."""
        strategy = RetryStrategy(
            RetryStrategyConfig(base_delay_ms=1000, jitter_factor=0.1), clock=clock, rng=lambda: 1.0
        )
        assert strategy.calculate_delay(0) == pytest.approx(1100)

    def test_applies_to_tool_failures_only(self, clock: ManualClock, tool_context: ErrorContext, plain_context: ErrorContext) -> None:
        """Test phase and stage gate retry."""
        strategy = _no_jitter(clock)
        assert strategy.can_handle(RecoveryContext(RuntimeError("x"), tool_context))
        assert not strategy.can_handle(RecoveryContext(RuntimeError("x"), plain_context))

    def test_security_failures_are_never_retried(self, clock: ManualClock, tool_context: ErrorContext) -> None:
        """Test permission errors are excluded."""
        strategy = _no_jitter(clock)
        assert not strategy.can_handle(RecoveryContext(PermissionError("denied"), tool_context))

    def test_configuration_failures_are_not_retried(self, clock: ManualClock, tool_context: ErrorContext) -> None:
        """Test configuration errors are left to rollback instead of retry."""
        strategy = _no_jitter(clock)
        error = ConfigurationError("missing jenkins url", path="tools.jenkins")
        assert not strategy.can_handle(RecoveryContext(error, tool_context))

    def test_max_attempts_by_severity(self, clock: ManualClock) -> None:
        """Test higher severity allows fewer retries."""
        strategy = _no_jitter(clock)
        low = ErrorContext.builder("x").severity(ErrorSeverity.LOW).build()
        critical = ErrorContext.builder("x").severity(ErrorSeverity.CRITICAL).build()
        assert strategy.get_max_attempts(RecoveryContext(RuntimeError(), low)) == 5
        assert strategy.get_max_attempts(RecoveryContext(RuntimeError(), critical)) == 1

    @pytest.mark.asyncio
    async def test_execute_sleeps_then_reenters(self, clock: ManualClock, tool_context: ErrorContext) -> None:
        """Test a successful re-entry returns its data."""
        strategy = _no_jitter(clock)
        outcome = await strategy.execute(RecoveryContext(RuntimeError("x"), tool_context, retry_operation=_ok))
        assert outcome.result == RecoveryResult.SUCCESS
        assert outcome.data == "recovered"
        assert clock.sleeps == [0.1]

    @pytest.mark.asyncio
    async def test_execute_without_reentry_fails(self, clock: ManualClock, tool_context: ErrorContext) -> None:
        """Test a missing re-entry callable is a failed attempt."""
        outcome = await _no_jitter(clock).execute(RecoveryContext(RuntimeError("x"), tool_context))
        assert outcome.result == RecoveryResult.FAILED
        assert clock.sleeps == []


class TestFallbackStrategy:
    """Tests for FallbackStrategy."""

    def test_default_map_keys(self) -> None:
        """Test the built-in alternates are registered by key."""
        ctx = ErrorContext.builder("x").tool("jenkins_trigger_job").build()
        strategy = FallbackStrategy()
        assert strategy.candidates(RecoveryContext(RuntimeError(), ctx)) == [
            "jenkins_manual_build",
            "notification_only",
        ]

    def test_intent_options_win(self) -> None:
        """Test user intent fallback options come first."""
        ctx = (
            ErrorContext.builder("x")
            .tool("jenkins_trigger_job")
            .user_intent("deploy", fallback_options=["ask_a_human"])
            .build()
        )
        assert FallbackStrategy().candidates(RecoveryContext(RuntimeError(), ctx)) == ["ask_a_human"]

    def test_server_id_lookup(self, tool_context: ErrorContext) -> None:
        """Test alternates registered for the server are used."""
        strategy = FallbackStrategy({})
        assert not strategy.can_handle(RecoveryContext(RuntimeError(), tool_context))
        strategy.register_fallback("jenkins", ["jenkins_manual_build"])
        assert strategy.candidates(RecoveryContext(RuntimeError(), tool_context)) == ["jenkins_manual_build"]

    @pytest.mark.asyncio
    async def test_without_executor_is_partial(self, tool_context: ErrorContext) -> None:
        """Test an unexecuted option is reported as partial success."""
        strategy = FallbackStrategy({"jenkins": ["notification_only", "manual"]})
        outcome = await strategy.execute(RecoveryContext(RuntimeError(), tool_context))
        assert outcome.result == RecoveryResult.PARTIAL_SUCCESS
        assert outcome.details == {"fallback_option": "notification_only", "alternatives": ["manual"]}

    @pytest.mark.asyncio
    async def test_executor_runs_first_option(self, tool_context: ErrorContext) -> None:
        """Test the executor receives the option and context."""
        seen: list[str] = []

        async def executor(option: str, ctx: ErrorContext) -> str:
            seen.append(option)
            return f"ran {option}"

        strategy = FallbackStrategy({"jenkins": ["notification_only"]}, executor=executor)
        outcome = await strategy.execute(RecoveryContext(RuntimeError(), tool_context))
        assert outcome.result == RecoveryResult.SUCCESS
        assert outcome.data == "ran notification_only"
        assert seen == ["notification_only"]


class TestCircuitBreakerStrategy:
    """Tests for CircuitBreakerStrategy."""

    @pytest.mark.asyncio
    async def test_full_cycle(self, clock: ManualClock, tool_context: ErrorContext) -> None:
        """Test closed, open, half-open and closed again."""
        strategy = CircuitBreakerStrategy(
            CircuitStrategyConfig(failure_threshold=2, recovery_time_seconds=60), clock=clock
        )
        key = "jenkins:trigger_job"
        ctx = RecoveryContext(RuntimeError("x"), tool_context)

        assert (await strategy.execute(ctx)).result == RecoveryResult.PARTIAL_SUCCESS
        assert (await strategy.execute(ctx)).result == RecoveryResult.NEEDS_ESCALATION
        assert strategy.get_state(key) == CircuitState.OPEN

        clock.advance(30)
        blocked = await strategy.execute(ctx)
        assert blocked.result == RecoveryResult.FAILED
        assert blocked.details["time_until_retry"] == pytest.approx(30)

        clock.advance(30)
        assert (await strategy.execute(ctx)).result == RecoveryResult.REQUIRES_USER_INPUT
        assert strategy.get_state(key) == CircuitState.HALF_OPEN

        trial = await strategy.execute(RecoveryContext(RuntimeError("x"), tool_context, retry_operation=_ok))
        assert trial.result == RecoveryResult.SUCCESS
        assert trial.data == "recovered"
        assert strategy.get_state(key) == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_failed_trial_reopens(self, clock: ManualClock, tool_context: ErrorContext) -> None:
        """Test a failing half-open trial reopens the circuit."""
        strategy = CircuitBreakerStrategy(
            CircuitStrategyConfig(failure_threshold=1, recovery_time_seconds=10), clock=clock
        )
        ctx = RecoveryContext(RuntimeError("x"), tool_context, retry_operation=_fail)
        await strategy.execute(ctx)
        clock.advance(10)
        await strategy.execute(ctx)

        outcome = await strategy.execute(ctx)
        assert outcome.result == RecoveryResult.FAILED
        assert strategy.get_state("jenkins:trigger_job") == CircuitState.OPEN
        assert strategy.estimate_recovery_time(ctx) == pytest.approx(10)

    @pytest.mark.asyncio
    async def test_success_outside_recovery_clears_failures(self, clock: ManualClock, tool_context: ErrorContext) -> None:
        """Test record_success forgets failures of a closed circuit."""
        strategy = CircuitBreakerStrategy(clock=clock)
        await strategy.execute(RecoveryContext(RuntimeError("x"), tool_context))
        await strategy.record_success("jenkins:trigger_job")
        record = strategy.get_record("jenkins:trigger_job")
        assert record is not None
        assert record.failures == 0

    @pytest.mark.asyncio
    async def test_half_open_trial_admitted_once(self, clock: ManualClock, tool_context: ErrorContext) -> None:
        """Test concurrent recoveries on a half-open resource run a single trial."""
        strategy = CircuitBreakerStrategy(
            CircuitStrategyConfig(failure_threshold=3, recovery_time_seconds=10), clock=clock
        )
        ctx = RecoveryContext(RuntimeError("x"), tool_context)
        for _ in range(3):
            await strategy.execute(ctx)
        clock.advance(10)
        await strategy.execute(ctx)
        assert strategy.get_state("jenkins:trigger_job") == CircuitState.HALF_OPEN
        trials = 0

        async def trial() -> str:
            nonlocal trials
            trials += 1
            await asyncio.sleep(0)
            return "recovered"

        outcomes = await asyncio.gather(
            *(
                strategy.execute(RecoveryContext(RuntimeError("x"), tool_context, retry_operation=trial))
                for _ in range(3)
            )
        )

        assert trials == 1
        assert [o.result for o in outcomes] == [
            RecoveryResult.SUCCESS,
            RecoveryResult.PARTIAL_SUCCESS,
            RecoveryResult.PARTIAL_SUCCESS,
        ]
        assert strategy.get_state("jenkins:trigger_job") == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_independent_resources_do_not_wait(self, clock: ManualClock, tool_context: ErrorContext) -> None:
        """Test a slow trial on one resource does not block another resource."""
        strategy = CircuitBreakerStrategy(
            CircuitStrategyConfig(failure_threshold=1, recovery_time_seconds=10), clock=clock
        )
        await strategy.execute(RecoveryContext(RuntimeError("x"), tool_context))
        clock.advance(10)
        await strategy.execute(RecoveryContext(RuntimeError("x"), tool_context))
        release = asyncio.Event()

        async def slow_trial() -> str:
            await release.wait()
            return "recovered"

        trial = asyncio.create_task(
            strategy.execute(RecoveryContext(RuntimeError("x"), tool_context, retry_operation=slow_trial))
        )
        await asyncio.sleep(0)
        github = ErrorContext.builder("open_issue").tool("create_issue", server_id="github").build()

        other = await asyncio.wait_for(strategy.execute(RecoveryContext(RuntimeError("y"), github)), timeout=1)

        assert other.result == RecoveryResult.NEEDS_ESCALATION
        assert strategy.get_state("github:create_issue") == CircuitState.OPEN
        assert not trial.done()
        release.set()
        assert (await trial).result == RecoveryResult.SUCCESS

    def test_requires_resource(self, plain_context: ErrorContext) -> None:
        """Test contexts without a tool are not handled."""
        assert not CircuitBreakerStrategy().can_handle(RecoveryContext(RuntimeError(), plain_context))


class TestRecoveryStrategyManager:
    """Tests for RecoveryStrategyManager."""

    @pytest.mark.asyncio
    async def test_nothing_applicable_escalates(self, plain_context: ErrorContext) -> None:
        """Test a failure no strategy handles needs escalation."""
        outcome = await RecoveryStrategyManager().execute_recovery(RecoveryContext(RuntimeError(), plain_context))
        assert outcome.result == RecoveryResult.NEEDS_ESCALATION
        assert outcome.attempts == []

    def test_priority_order(self, clock: ManualClock, tool_context: ErrorContext) -> None:
        """Test strategies are ranked retry, circuit breaker, fallback."""
        manager = RecoveryStrategyManager(
            [FallbackStrategy({"jenkins": ["manual"]}), CircuitBreakerStrategy(clock=clock), _no_jitter(clock)],
            clock=clock,
        )
        ranked = manager.get_applicable_strategies(RecoveryContext(RuntimeError(), tool_context))
        assert [s.strategy_type for s in ranked] == [
            RecoveryStrategyType.RETRY,
            RecoveryStrategyType.CIRCUIT_BREAKER,
            RecoveryStrategyType.FALLBACK,
        ]

    @pytest.mark.asyncio
    async def test_runs_until_success(self, clock: ManualClock, recorder: InMemoryRecorder, tool_context: ErrorContext) -> None:
        """Test the first successful strategy ends the episode."""
        manager = RecoveryStrategyManager(
            [_no_jitter(clock), CircuitBreakerStrategy(clock=clock)], metrics=recorder, clock=clock
        )
        outcome = await manager.execute_recovery(RecoveryContext(RuntimeError(), tool_context, retry_operation=_ok))

        assert outcome.success
        assert outcome.strategy == RecoveryStrategyType.RETRY
        assert len(outcome.attempts) == 1
        assert recorder.snapshot().recoveries == {"retry:success": 1}

    @pytest.mark.asyncio
    async def test_all_non_terminal_is_failed(self, clock: ManualClock, tool_context: ErrorContext) -> None:
        """Test an episode without a terminal result fails."""
        manager = RecoveryStrategyManager(
            [_no_jitter(clock), CircuitBreakerStrategy(clock=clock), FallbackStrategy({"jenkins": ["manual"]})],
            clock=clock,
        )
        outcome = await manager.execute_recovery(RecoveryContext(RuntimeError(), tool_context, retry_operation=_fail))

        assert outcome.result == RecoveryResult.FAILED
        assert [a.result for a in outcome.attempts] == [
            RecoveryResult.FAILED,
            RecoveryResult.PARTIAL_SUCCESS,
            RecoveryResult.PARTIAL_SUCCESS,
        ]

    @pytest.mark.asyncio
    async def test_episode_attempt_budget(self, clock: ManualClock, tool_context: ErrorContext) -> None:
        """Test an episode stops once max_attempts strategies have run."""
        manager = RecoveryStrategyManager(
            [_no_jitter(clock), CircuitBreakerStrategy(clock=clock), FallbackStrategy({"jenkins": ["manual"]})],
            clock=clock,
        )
        context = RecoveryContext(RuntimeError(), tool_context, max_attempts=1, retry_operation=_fail)

        outcome = await manager.execute_recovery(context)

        assert outcome.result == RecoveryResult.FAILED
        assert [a.strategy_type for a in outcome.attempts] == [RecoveryStrategyType.RETRY]

    @pytest.mark.asyncio
    async def test_raising_strategy_is_contained(self, clock: ManualClock, tool_context: ErrorContext) -> None:
        """Test an exception from a strategy becomes a failed attempt."""
        manager = RecoveryStrategyManager([_Exploding(), _no_jitter(clock)], clock=clock)
        outcome = await manager.execute_recovery(RecoveryContext(RuntimeError(), tool_context, retry_operation=_ok))

        assert outcome.success
        assert outcome.attempts[0].result == RecoveryResult.FAILED
        assert outcome.attempts[0].details == {"error": "strategy bug"}

    @pytest.mark.asyncio
    async def test_exhausted_strategy_is_skipped(self, clock: ManualClock, tool_context: ErrorContext) -> None:
        """Test a strategy at its attempt limit no longer applies."""
        manager = RecoveryStrategyManager([_no_jitter(clock)], clock=clock)
        context = RecoveryContext(RuntimeError(), tool_context, retry_operation=_fail)
        for _ in range(3):
            await manager.execute_recovery(context)

        outcome = await manager.execute_recovery(context)
        assert outcome.result == RecoveryResult.NEEDS_ESCALATION
        assert context.attempts_for(RecoveryStrategyType.RETRY) == 3

    def test_add_remove_strategy(self) -> None:
        """Test strategy registry management."""
        manager = RecoveryStrategyManager([])
        manager.add_strategy(FallbackStrategy())
        assert manager.get_strategy(RecoveryStrategyType.FALLBACK) is not None
        assert manager.remove_strategy(RecoveryStrategyType.FALLBACK)
        assert not manager.remove_strategy(RecoveryStrategyType.FALLBACK)
