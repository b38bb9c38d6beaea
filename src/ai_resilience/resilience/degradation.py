"""
Graceful degradation across feature-availability levels.

A single ladder FULL -> REDUCED -> MINIMAL -> EMERGENCY governs which
features run normally. Each level lists the features it affects and how
they behave when degraded (disabled, simplified, served from cache or
replaced by a fallback value). Levels change automatically from health
metrics or manually by an operator.
"""

from __future__ import annotations

import asyncio
import os
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

from ai_resilience.telemetry.logger import get_logger
from ai_resilience.utils.clock import default_clock

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ai_resilience.utils.clock import Clock

logger = get_logger(__name__)

_ERROR_RATE_STEP_UP = 0.05
_ERROR_RATE_STEP_DOWN = 0.01
_ERROR_RATE_DECAY = 0.95
_RESPONSE_TIME_ALPHA = 0.1


class DegradationLevel(str, Enum):
    """Feature-availability levels, best first."""

    FULL = "full"
    REDUCED = "reduced"
    MINIMAL = "minimal"
    EMERGENCY = "emergency"

    @property
    def rank(self) -> int:
        return list(DegradationLevel).index(self)


class DegradedBehavior(str, Enum):
    """How a feature behaves while its level is degraded."""

    DISABLE = "disable"
    SIMPLIFY = "simplify"
    CACHE = "cache"
    FALLBACK = "fallback"


@dataclass
class FeatureConfig:
    """A feature subject to degradation.

    Attributes:
        name: Feature name
        essential: Essential features survive EMERGENCY and get failure alternatives
        degraded_behavior: Behavior while degraded
        fallback_value: Value returned by the FALLBACK behavior
        simplified_implementation: Cheaper operation used by SIMPLIFY
    """

    name: str
    essential: bool = True
    degraded_behavior: DegradedBehavior = DegradedBehavior.FALLBACK
    fallback_value: Any = None
    simplified_implementation: Callable[[], Awaitable[Any]] | None = None


@dataclass
class DegradationTrigger:
    """Conditions that put the system at (or keep it out of) a level.

    Any single crossed threshold triggers.
    """

    error_rate: float | None = None
    response_time_ms: float | None = None
    resource_usage: float | None = None
    custom_condition: Callable[[], bool] | None = None


@dataclass
class LevelPolicy:
    """Behavior of one degradation level.

    Attributes:
        level: The level described
        trigger: When the system degrades to this level
        features: Features affected at this level
        user_message: Message for callers whose feature is degraded
        allow_retry: Whether callers should retry degraded calls later
        recovery_after_seconds: Time at this level before recovery is attempted
        recovery_health_threshold: Health (1 - error rate) allowing recovery
    """

    level: DegradationLevel
    trigger: DegradationTrigger
    features: list[FeatureConfig] = field(default_factory=list)
    user_message: str | None = None
    allow_retry: bool = True
    recovery_after_seconds: float | None = None
    recovery_health_threshold: float | None = None


def default_policies() -> dict[DegradationLevel, LevelPolicy]:
    """Default ladder."""
    return {
        DegradationLevel.FULL: LevelPolicy(
            level=DegradationLevel.FULL,
            trigger=DegradationTrigger(error_rate=0.05, response_time_ms=5000),
        ),
        DegradationLevel.REDUCED: LevelPolicy(
            level=DegradationLevel.REDUCED,
            trigger=DegradationTrigger(error_rate=0.15, response_time_ms=10000),
            features=[
                FeatureConfig("ai_processing", True, DegradedBehavior.SIMPLIFY),
                FeatureConfig("advanced_formatting", False, DegradedBehavior.DISABLE),
                FeatureConfig("file_operations", False, DegradedBehavior.CACHE),
            ],
            user_message="Running with reduced functionality due to high system load",
            recovery_after_seconds=300.0,
            recovery_health_threshold=0.9,
        ),
        DegradationLevel.MINIMAL: LevelPolicy(
            level=DegradationLevel.MINIMAL,
            trigger=DegradationTrigger(error_rate=0.3, response_time_ms=20000),
            features=[
                FeatureConfig(
                    "ai_processing",
                    True,
                    DegradedBehavior.FALLBACK,
                    fallback_value="Simple acknowledgment",
                ),
                FeatureConfig("tool_execution", False, DegradedBehavior.DISABLE),
                FeatureConfig("complex_operations", False, DegradedBehavior.DISABLE),
            ],
            user_message="Operating in minimal mode. Only basic responses available.",
            recovery_after_seconds=600.0,
            recovery_health_threshold=0.8,
        ),
        DegradationLevel.EMERGENCY: LevelPolicy(
            level=DegradationLevel.EMERGENCY,
            trigger=DegradationTrigger(error_rate=0.5, response_time_ms=30000),
            features=[
                FeatureConfig(
                    "emergency_response",
                    True,
                    DegradedBehavior.FALLBACK,
                    fallback_value="System experiencing issues. Please try again later.",
                ),
            ],
            user_message="System in emergency mode. Minimal functionality available.",
            allow_retry=False,
            recovery_after_seconds=1200.0,
        ),
    }


@dataclass
class DegradationThresholds:
    """Error rate and response time thresholds per level, for settings files."""

    reduced_error_rate: float = 0.15
    reduced_response_time_ms: float = 10000.0
    minimal_error_rate: float = 0.3
    minimal_response_time_ms: float = 20000.0
    emergency_error_rate: float = 0.5
    emergency_response_time_ms: float = 30000.0

    @classmethod
    def default(cls) -> DegradationThresholds:
        return cls()

    @classmethod
    def from_env(cls) -> DegradationThresholds:
        return cls(
            reduced_error_rate=float(os.getenv("AI_RESILIENCE_DEGRADE_REDUCED_RATE", "0.15")),
            minimal_error_rate=float(os.getenv("AI_RESILIENCE_DEGRADE_MINIMAL_RATE", "0.3")),
            emergency_error_rate=float(os.getenv("AI_RESILIENCE_DEGRADE_EMERGENCY_RATE", "0.5")),
        )

    def to_policies(self) -> dict[DegradationLevel, LevelPolicy]:
        policies = default_policies()
        for level, rate, response in (
            (DegradationLevel.REDUCED, self.reduced_error_rate, self.reduced_response_time_ms),
            (DegradationLevel.MINIMAL, self.minimal_error_rate, self.minimal_response_time_ms),
            (DegradationLevel.EMERGENCY, self.emergency_error_rate, self.emergency_response_time_ms),
        ):
            policies[level].trigger = DegradationTrigger(error_rate=rate, response_time_ms=response)
        return policies


@dataclass
class DegradationResult:
    """Result of an execution under degradation.

    Attributes:
        success: Whether a usable result was produced
        result: Result value (if success)
        level: Degradation level at the time of the call
        behavior: Degraded behavior applied, if any
        features_disabled: Features disabled at this level
        user_message: Message to surface to the user, if any
        can_retry: Whether the caller should retry later
        estimated_recovery_seconds: Estimated time until recovery
        error: The failure, if any
    """

    success: bool
    result: Any = None
    level: DegradationLevel = DegradationLevel.FULL
    behavior: DegradedBehavior | None = None
    features_disabled: list[str] = field(default_factory=list)
    user_message: str | None = None
    can_retry: bool = True
    estimated_recovery_seconds: float = 0.0
    error: BaseException | None = None


@dataclass
class LevelChange:
    timestamp: float
    from_level: DegradationLevel
    to_level: DegradationLevel
    reason: str


class DegradationManager:
    """Owner of the global degradation level.

    Example:
        >>> manager = DegradationManager()
        >>> result = await manager.execute_with_degradation("ai_processing", call_model)
        >>> manager.manual_degrade(DegradationLevel.MINIMAL, reason="incident")
        >>> manager.is_feature_disabled("tool_execution")
        True
    """

    def __init__(
        self,
        policies: dict[DegradationLevel, LevelPolicy] | None = None,
        clock: Clock | None = None,
        decay_interval_seconds: float = 10.0,
        history_size: int = 100,
    ) -> None:
        self._policies = policies or default_policies()
        self._clock = clock or default_clock()
        self._decay_interval = decay_interval_seconds
        self._level = DegradationLevel.FULL
        self._level_since = self._clock.now()
        self._disabled: set[str] = set()
        self._history: deque[LevelChange] = deque(maxlen=history_size)
        self._cache: dict[str, Any] = {}
        self._error_rate = 0.0
        self._response_time_ms = 0.0
        self._resource_usage = 0.0
        self._monitor: asyncio.Task[None] | None = None

    @property
    def current_level(self) -> DegradationLevel:
        return self._level

    @property
    def error_rate(self) -> float:
        return self._error_rate

    @property
    def history(self) -> list[LevelChange]:
        return list(self._history)

    def is_feature_disabled(self, feature_name: str) -> bool:
        return feature_name in self._disabled

    def get_feature_config(self, feature_name: str) -> FeatureConfig | None:
        """Configuration of a feature at the current level, if the level lists it."""
        policy = self._policies.get(self._level)
        if policy is None:
            return None
        for feature in policy.features:
            if feature.name == feature_name:
                return feature
        return None

    # Health metrics

    def record_success(self, response_time_ms: float | None = None) -> None:
        self._error_rate = max(0.0, self._error_rate - _ERROR_RATE_STEP_DOWN)
        if response_time_ms is not None:
            self.record_response_time(response_time_ms)

    def record_failure(self) -> None:
        self._error_rate = min(1.0, self._error_rate + _ERROR_RATE_STEP_UP)

    def record_response_time(self, response_time_ms: float) -> None:
        if self._response_time_ms == 0.0:
            self._response_time_ms = response_time_ms
        else:
            self._response_time_ms = (
                (1 - _RESPONSE_TIME_ALPHA) * self._response_time_ms
                + _RESPONSE_TIME_ALPHA * response_time_ms
            )

    def set_resource_usage(self, usage: float) -> None:
        self._resource_usage = usage

    def decay_health(self) -> None:
        """Let the error rate fade when no new failures arrive."""
        self._error_rate *= _ERROR_RATE_DECAY

    def _triggered(self, trigger: DegradationTrigger) -> bool:
        if trigger.error_rate is not None and self._error_rate >= trigger.error_rate:
            return True
        if trigger.response_time_ms is not None and self._response_time_ms >= trigger.response_time_ms:
            return True
        if trigger.resource_usage is not None and self._resource_usage >= trigger.resource_usage:
            return True
        if trigger.custom_condition is not None:
            return bool(trigger.custom_condition())
        return False

    # Level transitions

    def _set_level(self, level: DegradationLevel, reason: str) -> None:
        if level == self._level:
            return
        previous = self._level
        self._level = level
        self._level_since = self._clock.now()
        self._history.append(LevelChange(self._level_since, previous, level, reason))
        self._update_disabled_features()

        if level.rank > previous.rank:
            logger.warning(
                "Graceful degradation", from_level=previous.value, to_level=level.value, reason=reason
            )
        else:
            logger.info(
                "Graceful recovery", from_level=previous.value, to_level=level.value, reason=reason
            )

    def _update_disabled_features(self) -> None:
        self._disabled.clear()
        policy = self._policies.get(self._level)
        if policy is None:
            return
        for feature in policy.features:
            if feature.degraded_behavior == DegradedBehavior.DISABLE or (
                self._level == DegradationLevel.EMERGENCY and not feature.essential
            ):
                self._disabled.add(feature.name)

    def evaluate_triggers(self) -> DegradationLevel:
        """Degrade to the most severe level whose trigger is met.

        Returns:
            The level after evaluation
        """
        for level in reversed(list(DegradationLevel)):
            if level.rank <= self._level.rank:
                break
            policy = self._policies.get(level)
            if policy is not None and self._triggered(policy.trigger):
                self._set_level(level, "automatic_trigger")
                break
        return self._level

    def _can_recover_to(self, level: DegradationLevel) -> bool:
        policy = self._policies.get(level)
        return policy is not None and not self._triggered(policy.trigger)

    def check_recovery(self) -> DegradationLevel:
        """Attempt time- or health-based recovery to the best admissible level."""
        if self._level == DegradationLevel.FULL:
            return self._level

        policy = self._policies.get(self._level)
        if policy is None:
            return self._level

        elapsed = self._clock.now() - self._level_since
        time_due = (
            policy.recovery_after_seconds is not None and elapsed >= policy.recovery_after_seconds
        )
        health_due = (
            policy.recovery_health_threshold is not None
            and 1 - self._error_rate >= policy.recovery_health_threshold
        )
        if time_due or health_due:
            self._attempt_recovery("time_based" if time_due else "health_based")
        return self._level

    def _attempt_recovery(self, reason: str) -> bool:
        for level in DegradationLevel:
            if level.rank >= self._level.rank:
                break
            if self._can_recover_to(level):
                self._set_level(level, f"recovery_{reason}")
                return True
        return False

    def manual_degrade(self, level: DegradationLevel, reason: str = "manual") -> None:
        self._set_level(level, reason)

    def manual_recover(self, reason: str = "manual") -> bool:
        """Recover to the best level whose trigger is no longer met."""
        return self._attempt_recovery(reason)

    def force_full_recovery(self) -> None:
        """Return to FULL and clear health metrics."""
        self._error_rate = 0.0
        self._response_time_ms = 0.0
        self._resource_usage = 0.0
        self._set_level(DegradationLevel.FULL, "forced")

    def estimate_recovery_seconds(self) -> float:
        policy = self._policies.get(self._level)
        if policy is None or policy.recovery_after_seconds is None:
            return 0.0
        elapsed = self._clock.now() - self._level_since
        return max(0.0, policy.recovery_after_seconds - elapsed)

    # Execution

    def _result(self, success: bool, **kwargs: Any) -> DegradationResult:
        policy = self._policies.get(self._level)
        kwargs.setdefault("can_retry", policy.allow_retry if policy else True)
        return DegradationResult(
            success=success,
            level=self._level,
            features_disabled=sorted(self._disabled),
            estimated_recovery_seconds=self.estimate_recovery_seconds(),
            **kwargs,
        )

    def _failure(self, feature: FeatureConfig, error: BaseException) -> DegradationResult:
        policy = self._policies.get(self._level)
        message = (policy.user_message if policy else None) or (
            f"Service temporarily unavailable. We're working to restore {feature.name}."
        )
        return self._result(False, user_message=message, error=error)

    async def _degraded_alternative(self, feature: FeatureConfig) -> DegradationResult | None:
        behavior = feature.degraded_behavior
        message = f"{feature.name} is running in simplified mode due to system issues"

        if behavior == DegradedBehavior.SIMPLIFY and feature.simplified_implementation:
            try:
                value = await feature.simplified_implementation()
            except Exception as exc:
                return self._failure(feature, exc)
            return self._result(True, result=value, behavior=behavior, user_message=message)

        if behavior == DegradedBehavior.FALLBACK and feature.fallback_value is not None:
            return self._result(
                True, result=feature.fallback_value, behavior=behavior, user_message=message
            )

        if behavior == DegradedBehavior.CACHE and feature.name in self._cache:
            return self._result(
                True,
                result=self._cache[feature.name],
                behavior=behavior,
                user_message="Showing cached data due to service issues",
                can_retry=True,
            )
        return None

    async def _run_disabled(self, feature: FeatureConfig) -> DegradationResult:
        alternative = await self._degraded_alternative(feature)
        if alternative is not None:
            return alternative

        behavior = feature.degraded_behavior
        if behavior == DegradedBehavior.DISABLE or feature.name in self._disabled:
            error = RuntimeError(f"Feature {feature.name} is temporarily disabled")
        else:
            error = RuntimeError(f"Feature {feature.name} is unavailable")
        result = self._failure(feature, error)
        result.behavior = behavior
        return result

    async def execute_with_degradation(
        self,
        feature_name: str,
        operation: Callable[[], Awaitable[Any]],
        feature: FeatureConfig | None = None,
    ) -> DegradationResult:
        """Run an operation subject to the current degradation level.

        Disabled features never reach the operation and are served by their
        degraded behavior. Every other feature runs the operation; when it
        fails, a feature listed by the current level falls back to its
        degraded behavior and essential features to their simplified
        implementation or fallback value.

        Args:
            feature_name: Feature the operation belongs to
            operation: Async operation to run
            feature: Caller's feature configuration

        Returns:
            DegradationResult with outcome
        """
        base = feature or FeatureConfig(name=feature_name)
        listed = self.get_feature_config(feature_name)
        if listed is not None:
            base = replace(
                listed,
                fallback_value=base.fallback_value
                if base.fallback_value is not None
                else listed.fallback_value,
                simplified_implementation=base.simplified_implementation
                or listed.simplified_implementation,
            )

        if feature_name in self._disabled:
            return await self._run_disabled(base)

        if self._level == DegradationLevel.EMERGENCY and not base.essential:
            self._disabled.add(feature_name)
            return self._failure(
                base, RuntimeError(f"Feature {feature_name} is disabled in emergency mode")
            )

        started = self._clock.now()
        try:
            value = await operation()
        except Exception as exc:
            self.record_failure()
            self.evaluate_triggers()
            if listed is not None:
                alternative = await self._degraded_alternative(base)
                if alternative is not None:
                    return alternative
            if base.essential:
                if base.simplified_implementation is not None:
                    try:
                        value = await base.simplified_implementation()
                    except Exception as simplified_exc:
                        return self._failure(base, simplified_exc)
                    return self._result(
                        True,
                        result=value,
                        behavior=DegradedBehavior.SIMPLIFY,
                        user_message="Using simplified version due to service issues",
                        can_retry=True,
                    )
                if base.fallback_value is not None:
                    return self._result(
                        True,
                        result=base.fallback_value,
                        behavior=DegradedBehavior.FALLBACK,
                        user_message="Using fallback response",
                        can_retry=True,
                    )
            return self._failure(base, exc)

        self.record_success((self._clock.now() - started) * 1000)
        self._cache[feature_name] = value
        return self._result(True, result=value, can_retry=False)

    # Monitoring

    async def _monitor_loop(self) -> None:
        while True:
            await self._clock.sleep(self._decay_interval)
            self.decay_health()
            self.check_recovery()

    def start_monitoring(self) -> asyncio.Task[None]:
        """Start periodic health decay and recovery checks.

        Returns:
            The monitoring task, which doubles as its cancellation handle
        """
        if self._monitor is None or self._monitor.done():
            self._monitor = asyncio.get_running_loop().create_task(self._monitor_loop())
        return self._monitor

    async def stop_monitoring(self) -> None:
        if self._monitor is None:
            return
        self._monitor.cancel()
        try:
            await self._monitor
        except asyncio.CancelledError:
            pass
        self._monitor = None

    def get_degradation_stats(self) -> dict[str, Any]:
        return {
            "current_level": self._level.value,
            "features_disabled": sorted(self._disabled),
            "history": [
                {
                    "timestamp": c.timestamp,
                    "from": c.from_level.value,
                    "to": c.to_level.value,
                    "reason": c.reason,
                }
                for c in self._history
            ],
            "health": {
                "error_rate": self._error_rate,
                "avg_response_time_ms": self._response_time_ms,
                "resource_usage": self._resource_usage,
            },
            "can_recover": self._can_recover_to(DegradationLevel.FULL),
        }
