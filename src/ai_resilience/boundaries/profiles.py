"""
The five configured boundary profiles.

Each factory returns a :class:`BoundaryProfile` with the defaults of one
dependency category. Fallback behaviour is injected: a profile only knows
how to pick an alternative, the caller supplies the code that uses it.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from ai_resilience.boundaries.boundary import BoundaryConfig, BoundaryProfile, default_snapshot
from ai_resilience.context.error_context import OperationPhase, ProcessingStage
from ai_resilience.context.preserver import PreservationPriority, SystemState
from ai_resilience.telemetry.logger import get_logger
from ai_resilience.utils.clock import default_clock

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ai_resilience.boundaries.boundary import Operation
    from ai_resilience.context.error_context import ErrorContext
    from ai_resilience.context.preserver import OperationState, UserState
    from ai_resilience.utils.clock import Clock

logger = get_logger(__name__)


class BoundaryKind(str, Enum):
    """Dependency categories with a configured boundary."""

    TOOL_EXECUTION = "tool_execution"
    REGISTRY = "registry"
    AI_PROCESSING = "ai_processing"
    CONFIGURATION = "configuration"
    RESPONSE_DELIVERY = "response_delivery"


DEFAULT_DELIVERY_CHANNELS = ("threaded", "direct_message", "simple_text", "emoji")


def _name_contains(context: ErrorContext, *words: str) -> bool:
    name = context.operation_name.lower()
    return any(word in name for word in words)


# Tool execution


@dataclass
class ToolBlacklist:
    """Temporarily excludes tools that keep failing.

    A tool is blacklisted for ``duration_seconds`` once it has failed
    ``failure_threshold`` times since its last success.
    """

    failure_threshold: int = 3
    duration_seconds: float = 300.0
    clock: Clock = field(default_factory=default_clock)
    _failures: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _until: dict[str, float] = field(default_factory=dict, init=False, repr=False)

    def record_failure(self, tool: str) -> None:
        count = self._failures.get(tool, 0) + 1
        self._failures[tool] = count
        if count >= self.failure_threshold:
            self._until[tool] = self.clock.now() + self.duration_seconds
            logger.warning("Tool blacklisted", tool=tool, failures=count)

    def record_success(self, tool: str) -> None:
        self._failures.pop(tool, None)
        self._until.pop(tool, None)

    def is_blacklisted(self, tool: str) -> bool:
        until = self._until.get(tool)
        if until is None:
            return False
        if self.clock.now() >= until:
            del self._until[tool]
            self._failures.pop(tool, None)
            return False
        return True


def tool_execution_profile(
    alternates: dict[str, list[str]] | None = None,
    run_alternate: Callable[[str, ErrorContext], Awaitable[Any]] | None = None,
    blacklist: ToolBlacklist | None = None,
) -> BoundaryProfile:
    """Boundary around tool invocations.

    Args:
        alternates: Tool name to alternative tool names, in preference order
        run_alternate: Runs an alternative tool for the failed context
        blacklist: Failure tracker; alternatives on it are skipped
    """
    alternates = alternates or {}
    blacklist = blacklist or ToolBlacklist()

    def should_preserve(context: ErrorContext) -> bool:
        return context.stage == ProcessingStage.TOOL_EXECUTION or context.tool is not None

    def snapshot(
        context: ErrorContext, error: BaseException
    ) -> tuple[UserState, OperationState, SystemState]:
        user, operation, system = default_snapshot(context, error)
        if context.tool is not None:
            system.temporary_data["tool_parameters"] = copy.deepcopy(context.tool.parameters)
            system.temporary_data["attempt_number"] = context.tool.attempt_number
            if context.tool.server_id:
                system.active_connections.append(context.tool.server_id)
        return user, operation, system

    def fallback_for(context: ErrorContext, error: BaseException) -> Operation | None:
        if run_alternate is None or context.tool_name is None:
            return None
        for candidate in alternates.get(context.tool_name, []):
            if not blacklist.is_blacklisted(candidate):
                return lambda: run_alternate(candidate, context)
        return None

    def on_failure(context: ErrorContext, error: BaseException) -> None:
        if context.tool_name:
            blacklist.record_failure(context.tool_name)

    def on_success(context: ErrorContext) -> None:
        if context.tool_name:
            blacklist.record_success(context.tool_name)

    return BoundaryProfile(
        name=BoundaryKind.TOOL_EXECUTION.value,
        config=BoundaryConfig(
            degradation_threshold=2,
            isolation_threshold=4,
            escalation_threshold=6,
            timeout_seconds=15.0,
            isolation_duration_seconds=180.0,
        ),
        should_preserve_context=should_preserve,
        preserve_execution_context=snapshot,
        fallback_for=fallback_for,
        preservation_priority=PreservationPriority.HIGH,
        on_failure=on_failure,
        on_success=on_success,
    )


# Registry


def registry_profile(
    cached_catalog: Callable[[], Awaitable[Any]] | None = None,
    offline_tools: list[dict[str, Any]] | None = None,
) -> BoundaryProfile:
    """Boundary around tool-registry calls.

    Only discovery operations are preserved. The fallback serves the cached
    catalog, or the offline tool list when no cache is available.
    """

    def should_preserve(context: ErrorContext) -> bool:
        return context.phase == OperationPhase.TOOL_DISCOVERY or _name_contains(
            context, "discover", "registry"
        )

    def snapshot(
        context: ErrorContext, error: BaseException
    ) -> tuple[UserState, OperationState, SystemState]:
        user, operation, system = default_snapshot(context, error)
        system.caching_info["catalog_cached"] = cached_catalog is not None
        system.caching_info["offline_tools"] = len(offline_tools or [])
        return user, operation, system

    def fallback_for(context: ErrorContext, error: BaseException) -> Operation | None:
        if cached_catalog is not None:
            return cached_catalog
        if offline_tools:
            tools = copy.deepcopy(offline_tools)

            async def offline() -> list[dict[str, Any]]:
                return tools

            return offline
        return None

    return BoundaryProfile(
        name=BoundaryKind.REGISTRY.value,
        config=BoundaryConfig(
            degradation_threshold=2,
            isolation_threshold=4,
            escalation_threshold=6,
            timeout_seconds=10.0,
            isolation_duration_seconds=300.0,
        ),
        should_preserve_context=should_preserve,
        preserve_execution_context=snapshot,
        fallback_for=fallback_for,
        preservation_priority=PreservationPriority.MEDIUM,
    )


# AI processing


def ai_processing_profile(
    simplified: Callable[[ErrorContext], Awaitable[Any]] | None = None,
) -> BoundaryProfile:
    """Boundary around model calls.

    Args:
        simplified: Runs the request again with a simplified prompt strategy
    """

    def should_preserve(context: ErrorContext) -> bool:
        return context.stage == ProcessingStage.AI_PROCESSING

    def snapshot(
        context: ErrorContext, error: BaseException
    ) -> tuple[UserState, OperationState, SystemState]:
        user, operation, system = default_snapshot(context, error)
        system.temporary_data["prompt_strategy"] = "simplified" if simplified else "none"
        return user, operation, system

    def fallback_for(context: ErrorContext, error: BaseException) -> Operation | None:
        if simplified is None:
            return None
        return lambda: simplified(context)

    return BoundaryProfile(
        name=BoundaryKind.AI_PROCESSING.value,
        config=BoundaryConfig(
            degradation_threshold=3,
            isolation_threshold=5,
            escalation_threshold=8,
            timeout_seconds=20.0,
            isolation_duration_seconds=600.0,
        ),
        should_preserve_context=should_preserve,
        preserve_execution_context=snapshot,
        fallback_for=fallback_for,
        preservation_priority=PreservationPriority.HIGH,
    )


# Configuration


def configuration_profile(
    safe_config: dict[str, Any] | None = None,
    apply_config: Callable[[dict[str, Any]], Awaitable[Any]] | None = None,
) -> BoundaryProfile:
    """Boundary around configuration changes.

    A failed change rolls back to the known-safe configuration: it is handed
    to ``apply_config`` when given, otherwise returned as the result.
    """

    def should_preserve(context: ErrorContext) -> bool:
        return _name_contains(context, "config")

    def snapshot(
        context: ErrorContext, error: BaseException
    ) -> tuple[UserState, OperationState, SystemState]:
        user, operation, system = default_snapshot(context, error)
        if safe_config is not None:
            system.temporary_data["safe_config"] = copy.deepcopy(safe_config)
        return user, operation, system

    def fallback_for(context: ErrorContext, error: BaseException) -> Operation | None:
        if safe_config is None:
            return None
        rollback = copy.deepcopy(safe_config)

        async def restore_safe_config() -> Any:
            logger.warning("Rolling back to safe configuration", **context.log_fields())
            if apply_config is not None:
                return await apply_config(rollback)
            return rollback

        return restore_safe_config

    return BoundaryProfile(
        name=BoundaryKind.CONFIGURATION.value,
        config=BoundaryConfig(
            degradation_threshold=2,
            isolation_threshold=3,
            escalation_threshold=5,
            timeout_seconds=10.0,
            isolation_duration_seconds=300.0,
        ),
        should_preserve_context=should_preserve,
        preserve_execution_context=snapshot,
        fallback_for=fallback_for,
        preservation_priority=PreservationPriority.CRITICAL,
    )


# Response delivery


def response_delivery_profile(
    send_via: Callable[[str, ErrorContext], Awaitable[Any]] | None = None,
    channels: tuple[str, ...] = DEFAULT_DELIVERY_CHANNELS,
) -> BoundaryProfile:
    """Boundary around delivering responses to the user.

    Every failure is preserved so the response can be re-sent. The fallback
    walks the alternative channels in order until one accepts the message.
    """

    def should_preserve(context: ErrorContext) -> bool:
        return True

    def snapshot(
        context: ErrorContext, error: BaseException
    ) -> tuple[UserState, OperationState, SystemState]:
        user, operation, system = default_snapshot(context, error)
        system.temporary_data["channel_id"] = context.system.channel_id
        system.temporary_data["pending_channels"] = list(channels)
        return user, operation, system

    def fallback_for(context: ErrorContext, error: BaseException) -> Operation | None:
        if send_via is None or not channels:
            return None

        async def deliver_elsewhere() -> Any:
            last_error: Exception | None = None
            for channel in channels:
                try:
                    return await send_via(channel, context)
                except Exception as exc:
                    logger.warning("Delivery channel failed", channel=channel, error=str(exc))
                    last_error = exc
            assert last_error is not None
            raise last_error

        return deliver_elsewhere

    return BoundaryProfile(
        name=BoundaryKind.RESPONSE_DELIVERY.value,
        config=BoundaryConfig(
            degradation_threshold=2,
            isolation_threshold=4,
            escalation_threshold=6,
            timeout_seconds=10.0,
            isolation_duration_seconds=180.0,
        ),
        should_preserve_context=should_preserve,
        preserve_execution_context=snapshot,
        fallback_for=fallback_for,
        preservation_priority=PreservationPriority.CRITICAL,
    )


PROFILE_FACTORIES: dict[BoundaryKind, Callable[[], BoundaryProfile]] = {
    BoundaryKind.TOOL_EXECUTION: tool_execution_profile,
    BoundaryKind.REGISTRY: registry_profile,
    BoundaryKind.AI_PROCESSING: ai_processing_profile,
    BoundaryKind.CONFIGURATION: configuration_profile,
    BoundaryKind.RESPONSE_DELIVERY: response_delivery_profile,
}
