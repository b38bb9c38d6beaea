"""
Context preservation for checkpoint and continuation.

Snapshots of in-flight operation state are kept in memory with a TTL and a
priority. When the store is full the lowest-priority, oldest entries are
evicted first. A checkpoint can later be turned into a
:class:`ContinuationPlan` describing which completed steps can be reused.
"""

from __future__ import annotations

import asyncio
import copy
import math
import os
import uuid
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import TYPE_CHECKING, Any

from ai_resilience.context.error_context import (
    ErrorContext,
    OperationPhase,
    ProcessingStage,
)
from ai_resilience.recovery.types import RecoveryAttempt, RecoveryResult
from ai_resilience.telemetry.logger import get_logger
from ai_resilience.utils.clock import default_clock

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from ai_resilience.utils.clock import Clock

logger = get_logger(__name__)

# step -> steps whose failure invalidates it
_STEP_DEPENDENCIES: dict[str, tuple[str, ...]] = {
    "result_processing": ("tool_execution",),
    "response_formatting": ("result_processing",),
    "delivery": ("response_formatting",),
}

_STEP_ESTIMATES_MS: dict[str, float] = {
    "context_gathering": 2000,
    "ai_processing": 5000,
    "tool_discovery": 3000,
    "tool_selection": 1000,
    "validation": 1500,
}
_DEFAULT_STEP_ESTIMATE_MS = 1000.0

_STALE_AFTER_SECONDS = 600.0


class PreservationPriority(str, Enum):
    """Eviction priority, lowest evicted first."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(PreservationPriority).index(self)


class PreservationReason(str, Enum):
    """Why a state was preserved."""

    ERROR_RECOVERY = "error_recovery"
    RETRY_ATTEMPT = "retry_attempt"
    FALLBACK_PREPARATION = "fallback_preparation"
    USER_REQUEST = "user_request"
    SYSTEM_MAINTENANCE = "system_maintenance"


@dataclass
class UserState:
    """User-facing state of a conversation."""

    user_id: str | None = None
    conversation_id: str | None = None
    thread_id: str | None = None
    original_message: str = ""
    parsed_intent: str | None = None
    confidence: float | None = None
    fallback_options: list[str] = field(default_factory=list)
    preferences: dict[str, Any] = field(default_factory=dict)


@dataclass
class OperationState:
    """Progress of the operation being preserved."""

    operation_id: str
    stage: ProcessingStage = ProcessingStage.REQUEST_RECEIVED
    phase: OperationPhase = OperationPhase.INITIALIZATION
    completed_steps: list[str] = field(default_factory=list)
    failed_step: str | None = None
    partial_results: dict[str, Any] = field(default_factory=dict)
    tool_selections: list[str] = field(default_factory=list)
    retry_count: int = 0
    max_retries: int = 3


@dataclass
class SystemState:
    """Resources and scratch data held by the operation."""

    active_connections: list[str] = field(default_factory=list)
    resources_acquired: list[str] = field(default_factory=list)
    temporary_data: dict[str, Any] = field(default_factory=dict)
    caching_info: dict[str, Any] = field(default_factory=dict)
    processing_metrics: dict[str, float] = field(default_factory=dict)


@dataclass
class StateMetadata:
    version: int = 1
    reason: PreservationReason = PreservationReason.ERROR_RECOVERY
    priority: PreservationPriority = PreservationPriority.MEDIUM
    tags: list[str] = field(default_factory=list)


@dataclass
class PreservedState:
    """A snapshot held by the preserver."""

    id: str
    created_at: float
    expires_at: float
    error_context: ErrorContext
    user_state: UserState
    operation_state: OperationState
    system_state: SystemState
    metadata: StateMetadata = field(default_factory=StateMetadata)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class ContinuationPlan:
    """How to resume an operation from a checkpoint.

    Attributes:
        state_id: Checkpoint the plan was derived from
        can_continue: Whether any completed work can be reused
        continuable_steps: Completed steps that remain valid
        restart_from_step: Step to resume execution at
        partial_results: Results carried over from the checkpoint
        estimated_time_savings_ms: Estimated time saved by not redoing steps
        risks: Human-readable risk flags
    """

    state_id: str
    can_continue: bool
    continuable_steps: list[str]
    restart_from_step: str
    partial_results: dict[str, Any]
    estimated_time_savings_ms: float
    risks: list[str] = field(default_factory=list)


@dataclass
class PreserverConfig:
    """Configuration for the context preserver.

    Attributes:
        max_states: Capacity of the store
        ttl_seconds: Default time-to-live of a preserved state
        sweep_interval_seconds: Period of the background expiry sweep
        eviction_fraction: Share of the store evicted when full
    """

    max_states: int = 1000
    ttl_seconds: float = 1800.0
    sweep_interval_seconds: float = 300.0
    eviction_fraction: float = 0.1

    @classmethod
    def default(cls) -> PreserverConfig:
        """Create default configuration."""
        return cls()

    @classmethod
    def from_env(cls) -> PreserverConfig:
        """Create configuration from environment variables."""
        return cls(
            max_states=int(os.getenv("AI_RESILIENCE_PRESERVER_MAX_STATES", "1000")),
            ttl_seconds=float(os.getenv("AI_RESILIENCE_PRESERVER_TTL_SECS", "1800")),
            sweep_interval_seconds=float(
                os.getenv("AI_RESILIENCE_PRESERVER_SWEEP_SECS", "300")
            ),
        )


def user_state_from_context(context: ErrorContext) -> UserState:
    """Derive the user sub-state from an error context."""
    intent = context.user_intent
    return UserState(
        user_id=context.system.user_id,
        conversation_id=context.system.conversation_id,
        thread_id=context.system.thread_id,
        original_message=intent.original_message if intent else "",
        parsed_intent=intent.parsed_intent if intent else None,
        confidence=intent.confidence if intent else None,
        fallback_options=list(intent.fallback_options) if intent else [],
    )


def operation_state_from_context(context: ErrorContext) -> OperationState:
    """Derive the operation sub-state from an error context."""
    execution = context.execution_state
    return OperationState(
        operation_id=context.correlation_id,
        stage=execution.stage,
        phase=context.operation.phase,
        completed_steps=list(execution.completed_steps),
        failed_step=execution.failed_step,
        partial_results=copy.deepcopy(execution.partial_results),
        tool_selections=[context.tool_name] if context.tool_name else [],
        retry_count=execution.retry_count,
        max_retries=execution.max_retries,
    )


def _merge(target: Any, changes: dict[str, Any]) -> None:
    known = {f.name for f in fields(target)}
    for key, value in changes.items():
        if key in known:
            setattr(target, key, copy.deepcopy(value))


class ContextPreserver:
    """In-memory store of preserved operation state.

    All mutating methods are synchronous, so on a single event loop each
    one runs without interleaving and checks expiry against a single clock
    read.

    Example:
        >>> preserver = ContextPreserver()
        >>> state_id = preserver.preserve(ctx, user, operation, system)
        >>> restored = preserver.restore(state_id)
    """

    def __init__(
        self,
        config: PreserverConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._config = config or PreserverConfig()
        self._clock = clock or default_clock()
        self._states: dict[str, PreservedState] = {}
        self._cleanup_handlers: dict[str, Callable[[str], Any]] = {}
        self._sweeper: asyncio.Task[None] | None = None
        self._evicted = 0
        self._expired = 0

    @property
    def config(self) -> PreserverConfig:
        return self._config

    def __len__(self) -> int:
        return len(self._states)

    def preserve(
        self,
        context: ErrorContext,
        user_state: UserState,
        operation_state: OperationState,
        system_state: SystemState | None = None,
        *,
        reason: PreservationReason = PreservationReason.ERROR_RECOVERY,
        priority: PreservationPriority = PreservationPriority.MEDIUM,
        tags: Iterable[str] | None = None,
        ttl_seconds: float | None = None,
    ) -> str:
        """Store a snapshot and return its id.

        Sub-states are deep-copied, so later changes by the caller do not
        leak into the stored snapshot.
        """
        if len(self._states) >= self._config.max_states:
            self._evict()

        now = self._clock.now()
        state_id = f"state_{uuid.uuid4().hex}"
        self._states[state_id] = PreservedState(
            id=state_id,
            created_at=now,
            expires_at=now + (ttl_seconds if ttl_seconds is not None else self._config.ttl_seconds),
            error_context=context,
            user_state=copy.deepcopy(user_state),
            operation_state=copy.deepcopy(operation_state),
            system_state=copy.deepcopy(system_state or SystemState()),
            metadata=StateMetadata(reason=reason, priority=priority, tags=list(tags or [])),
        )
        logger.debug(
            "Context preserved",
            state_id=state_id,
            priority=priority.value,
            reason=reason.value,
            correlation_id=context.correlation_id,
        )
        return state_id

    def _lookup(self, state_id: str) -> PreservedState | None:
        state = self._states.get(state_id)
        if state is None:
            return None
        if state.is_expired(self._clock.now()):
            del self._states[state_id]
            self._expired += 1
            return None
        return state

    def restore(self, state_id: str) -> PreservedState | None:
        """Get a copy of a preserved state, or ``None`` if absent or expired."""
        state = self._lookup(state_id)
        if state is None:
            return None
        if "accessed" not in state.metadata.tags:
            state.metadata.tags.append("accessed")
        return copy.deepcopy(state)

    def update(
        self,
        state_id: str,
        *,
        user_state: dict[str, Any] | None = None,
        operation_state: dict[str, Any] | None = None,
        system_state: dict[str, Any] | None = None,
    ) -> bool:
        """Merge partial sub-state changes into a preserved state.

        Returns:
            False if the state is missing or expired
        """
        state = self._lookup(state_id)
        if state is None:
            return False
        if user_state:
            _merge(state.user_state, user_state)
        if operation_state:
            _merge(state.operation_state, operation_state)
        if system_state:
            _merge(state.system_state, system_state)
        state.metadata.version += 1
        return True

    def remove(self, state_id: str) -> bool:
        self._cleanup_handlers.pop(state_id, None)
        return self._states.pop(state_id, None) is not None

    def _evict(self) -> None:
        count = max(1, math.ceil(len(self._states) * self._config.eviction_fraction))
        victims = sorted(
            self._states.values(),
            key=lambda s: (s.metadata.priority.rank, s.created_at),
        )[:count]
        for victim in victims:
            del self._states[victim.id]
            self._cleanup_handlers.pop(victim.id, None)
        self._evicted += len(victims)
        logger.info(
            "Evicted preserved states",
            count=len(victims),
            capacity=self._config.max_states,
        )

    def sweep_expired(self) -> int:
        """Remove every expired state.

        Returns:
            Number of states removed
        """
        now = self._clock.now()
        expired = [sid for sid, s in self._states.items() if s.is_expired(now)]
        for sid in expired:
            del self._states[sid]
            self._cleanup_handlers.pop(sid, None)
        self._expired += len(expired)
        if expired:
            logger.debug("Swept expired states", count=len(expired))
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await self._clock.sleep(self._config.sweep_interval_seconds)
            self.sweep_expired()

    def start_sweeper(self) -> asyncio.Task[None]:
        """Start the periodic expiry sweep on the running loop.

        Returns:
            The sweep task, which doubles as its cancellation handle
        """
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())
        return self._sweeper

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    def create_checkpoint(
        self,
        context: ErrorContext,
        operation_state: OperationState | None = None,
        *,
        reason: str = "checkpoint",
        system_state: SystemState | None = None,
    ) -> str:
        """Preserve a HIGH priority checkpoint derived from an error context."""
        return self.preserve(
            context,
            user_state_from_context(context),
            operation_state or operation_state_from_context(context),
            system_state or SystemState(),
            reason=PreservationReason.ERROR_RECOVERY,
            priority=PreservationPriority.HIGH,
            tags=["checkpoint", reason],
        )

    def continue_from_checkpoint(
        self,
        state_id: str,
        recovery_attempts: list[RecoveryAttempt] | None = None,
    ) -> ContinuationPlan | None:
        """Build a continuation plan for a checkpoint.

        Args:
            state_id: Checkpoint id
            recovery_attempts: Recovery attempts made since the checkpoint

        Returns:
            The plan, or ``None`` if the checkpoint is absent or expired
        """
        state = self._lookup(state_id)
        if state is None:
            return None

        attempts = recovery_attempts or []
        operation = state.operation_state
        failed_step = operation.failed_step

        continuable = [
            step
            for step in operation.completed_steps
            if failed_step not in _STEP_DEPENDENCIES.get(step, ())
        ]

        failed_attempts = sum(1 for a in attempts if a.result == RecoveryResult.FAILED)
        if failed_attempts > 2:
            restart_from = "initialization"
        else:
            restart_from = failed_step or "tool_execution"

        savings = sum(
            _STEP_ESTIMATES_MS.get(step, _DEFAULT_STEP_ESTIMATE_MS) for step in continuable
        )

        risks: list[str] = []
        if self._clock.now() - state.created_at > _STALE_AFTER_SECONDS:
            risks.append("State may be stale")
        if failed_attempts > 1:
            risks.append("Multiple recovery attempts failed")
        if operation.partial_results:
            risks.append("Partial results may be inconsistent")

        for tag in ("continued", f"attempts_{len(attempts)}"):
            if tag not in state.metadata.tags:
                state.metadata.tags.append(tag)

        return ContinuationPlan(
            state_id=state_id,
            can_continue=bool(continuable),
            continuable_steps=continuable,
            restart_from_step=restart_from,
            partial_results=copy.deepcopy(operation.partial_results),
            estimated_time_savings_ms=savings,
            risks=risks,
        )

    def get_states_for_user(self, user_id: str) -> list[PreservedState]:
        """Get copies of every live state belonging to a user."""
        now = self._clock.now()
        return [
            copy.deepcopy(s)
            for s in self._states.values()
            if s.user_state.user_id == user_id and not s.is_expired(now)
        ]

    def register_cleanup(self, state_id: str, handler: Callable[[str], Any]) -> None:
        """Register a callable releasing one resource id of a state."""
        self._cleanup_handlers[state_id] = handler

    def cleanup_resources(self, state_id: str) -> list[str]:
        """Release the resources recorded in a state's system sub-state.

        Returns:
            Ids of the released resources and connections
        """
        state = self._lookup(state_id)
        if state is None:
            return []

        handler = self._cleanup_handlers.get(state_id)
        released: list[str] = []
        system = state.system_state
        for resource_id in [*system.resources_acquired, *system.active_connections]:
            if handler is not None:
                try:
                    handler(resource_id)
                except Exception:
                    logger.exception(
                        "Resource cleanup failed", state_id=state_id, resource_id=resource_id
                    )
                    continue
            released.append(resource_id)

        system.resources_acquired = [r for r in system.resources_acquired if r not in released]
        system.active_connections = [c for c in system.active_connections if c not in released]
        system.temporary_data.clear()
        state.metadata.version += 1
        return released

    def get_statistics(self) -> dict[str, Any]:
        """Summarize the store contents."""
        now = self._clock.now()
        by_priority = {p.value: 0 for p in PreservationPriority}
        by_reason = {r.value: 0 for r in PreservationReason}
        oldest: float | None = None
        for state in self._states.values():
            by_priority[state.metadata.priority.value] += 1
            by_reason[state.metadata.reason.value] += 1
            age = now - state.created_at
            oldest = age if oldest is None else max(oldest, age)
        return {
            "total_states": len(self._states),
            "capacity": self._config.max_states,
            "by_priority": by_priority,
            "by_reason": by_reason,
            "oldest_state_age_seconds": oldest or 0.0,
            "evicted_total": self._evicted,
            "expired_total": self._expired,
            "cleanup_handlers": len(self._cleanup_handlers),
        }

    def clear(self) -> None:
        self._states.clear()
        self._cleanup_handlers.clear()
