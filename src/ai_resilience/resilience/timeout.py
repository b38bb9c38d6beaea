"""
Timeout management with resource cleanup.

An operation races against its deadline. Resources registered while it
runs (connections, locks, temporary files) are released on every exit path:
success, failure or timeout. A result that arrives after the deadline is
discarded; the abandoned task is cancelled cooperatively and not awaited.
"""

from __future__ import annotations

import asyncio
import inspect
import os
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from ai_resilience.errors import OperationTimeoutError
from ai_resilience.telemetry.logger import get_logger
from ai_resilience.utils.clock import default_clock

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ai_resilience.utils.clock import Clock

T = TypeVar("T")

logger = get_logger(__name__)

_current_operation: ContextVar[str | None] = ContextVar(
    "ai_resilience_timeout_operation", default=None
)


def current_operation_id() -> str | None:
    """Id of the operation being run by a TimeoutManager in this context."""
    return _current_operation.get()


class ResourceType(str, Enum):
    CONNECTION = "connection"
    LOCK = "lock"
    FILE = "file"
    TASK = "task"
    OTHER = "other"


@dataclass
class TimeoutConfig:
    """Configuration for timeouts.

    Attributes:
        operation_timeout_seconds: Default deadline of one operation
        global_timeout_seconds: Upper bound for any operation
        cleanup_timeout_seconds: Deadline for each resource cleanup
    """

    operation_timeout_seconds: float = 30.0
    global_timeout_seconds: float = 300.0
    cleanup_timeout_seconds: float = 5.0

    @classmethod
    def default(cls) -> TimeoutConfig:
        return cls()

    @classmethod
    def from_env(cls) -> TimeoutConfig:
        return cls(
            operation_timeout_seconds=float(os.getenv("AI_RESILIENCE_OPERATION_TIMEOUT_SECS", "30")),
            global_timeout_seconds=float(os.getenv("AI_RESILIENCE_GLOBAL_TIMEOUT_SECS", "300")),
            cleanup_timeout_seconds=float(os.getenv("AI_RESILIENCE_CLEANUP_TIMEOUT_SECS", "5")),
        )


@dataclass
class ManagedResource:
    id: str
    type: ResourceType
    resource: Any
    cleanup: Callable[[Any], Any]
    operation_id: str | None
    created_at: float
    last_accessed: float


@dataclass
class TimeoutResult(Generic[T]):
    """Result of a timeout-bounded operation.

    Attributes:
        success: Whether the operation finished in time without error
        value: Result value (if success)
        error: The failure (an OperationTimeoutError on timeout)
        timed_out: Whether the deadline was hit
        timeout_type: ``operation`` or ``global`` when timed out
        duration_seconds: Time until the outcome was decided
        resources_created: Resources registered by the operation
        resources_cleaned: Resources released afterwards
        cleanup_errors: Errors raised by cleanup callbacks
    """

    success: bool
    value: T | None = None
    error: BaseException | None = None
    timed_out: bool = False
    timeout_type: str | None = None
    duration_seconds: float = 0.0
    resources_created: int = 0
    resources_cleaned: int = 0
    cleanup_errors: list[str] = field(default_factory=list)


@dataclass
class TimeoutMetrics:
    total_operations: int = 0
    successful_operations: int = 0
    failed_operations: int = 0
    timed_out_operations: int = 0
    late_completions: int = 0
    resources_cleaned: int = 0
    cleanup_failures: int = 0
    average_duration_seconds: float = 0.0


class TimeoutManager:
    """Runs operations under deadlines and owns their resources.

    Example:
        >>> manager = TimeoutManager(TimeoutConfig(operation_timeout_seconds=5))
        >>> async def fetch():
        ...     conn = await pool.acquire()
        ...     manager.register_resource(conn, pool.release, ResourceType.CONNECTION)
        ...     return await conn.fetch()
        >>> result = await manager.execute_with_timeout(fetch)
    """

    def __init__(self, config: TimeoutConfig | None = None, clock: Clock | None = None) -> None:
        self._config = config or TimeoutConfig()
        self._clock = clock or default_clock()
        self._resources: dict[str, ManagedResource] = {}
        self._active: dict[str, asyncio.Task[Any]] = {}
        self._metrics = TimeoutMetrics()

    @property
    def config(self) -> TimeoutConfig:
        return self._config

    def register_resource(
        self,
        resource: Any,
        cleanup: Callable[[Any], Any],
        resource_type: ResourceType = ResourceType.OTHER,
        resource_id: str | None = None,
        operation_id: str | None = None,
    ) -> str:
        """Register a resource to release when its operation ends.

        ``operation_id`` defaults to the operation running in the current
        context. ``cleanup`` receives the resource and may be a coroutine
        function.

        Returns:
            The resource id
        """
        rid = resource_id or f"res_{uuid.uuid4().hex[:12]}"
        now = self._clock.now()
        self._resources[rid] = ManagedResource(
            id=rid,
            type=resource_type,
            resource=resource,
            cleanup=cleanup,
            operation_id=operation_id or current_operation_id(),
            created_at=now,
            last_accessed=now,
        )
        return rid

    def unregister_resource(self, resource_id: str) -> bool:
        """Forget a resource without running its cleanup."""
        return self._resources.pop(resource_id, None) is not None

    def touch_resource(self, resource_id: str) -> None:
        resource = self._resources.get(resource_id)
        if resource is not None:
            resource.last_accessed = self._clock.now()

    def resources_for(self, operation_id: str) -> list[ManagedResource]:
        return [r for r in self._resources.values() if r.operation_id == operation_id]

    async def _cleanup_resource(self, resource: ManagedResource) -> str | None:
        self._resources.pop(resource.id, None)
        try:
            outcome = resource.cleanup(resource.resource)
            if inspect.isawaitable(outcome):
                await asyncio.wait_for(outcome, timeout=self._config.cleanup_timeout_seconds)
        except asyncio.TimeoutError:
            self._metrics.cleanup_failures += 1
            return f"{resource.id}: cleanup timed out"
        except Exception as exc:
            self._metrics.cleanup_failures += 1
            logger.warning("Resource cleanup failed", resource_id=resource.id, error=str(exc))
            return f"{resource.id}: {exc}"
        self._metrics.resources_cleaned += 1
        return None

    async def cleanup_operation(self, operation_id: str) -> tuple[int, list[str]]:
        """Release every resource registered for an operation.

        Returns:
            (number cleaned, cleanup error messages)
        """
        cleaned = 0
        errors: list[str] = []
        for resource in self.resources_for(operation_id):
            error = await self._cleanup_resource(resource)
            if error is None:
                cleaned += 1
            else:
                errors.append(error)
        return cleaned, errors

    def _effective_timeout(
        self, timeout_seconds: float | None, deadline: float | None
    ) -> tuple[float, str]:
        candidates = [
            (
                self._config.operation_timeout_seconds if timeout_seconds is None else timeout_seconds,
                "operation",
            ),
            (self._config.global_timeout_seconds, "global"),
        ]
        if deadline is not None:
            candidates.append((deadline - self._clock.now(), "global"))
        timeout, kind = min(candidates, key=lambda c: c[0])
        return max(0.0, timeout), kind

    def _on_late_completion(self, operation_id: str, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        self._metrics.late_completions += 1
        error = task.exception()
        logger.debug(
            "Discarded late completion",
            operation_id=operation_id,
            late_error=str(error) if error else None,
        )

    async def execute_with_timeout(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_id: str | None = None,
        timeout_seconds: float | None = None,
        deadline: float | None = None,
    ) -> TimeoutResult[T]:
        """Race an operation against its deadline.

        Args:
            operation: Async operation to run
            operation_id: Id under which resources are registered
            timeout_seconds: Overrides the configured operation timeout
            deadline: Absolute clock time bounding the call, e.g. a caller's
                overall budget

        Returns:
            TimeoutResult with outcome and cleanup report
        """
        op_id = operation_id or f"op_{uuid.uuid4().hex[:12]}"
        timeout, timeout_type = self._effective_timeout(timeout_seconds, deadline)
        started = self._clock.now()
        self._metrics.total_operations += 1

        token = _current_operation.set(op_id)
        try:
            task = asyncio.ensure_future(operation())
        finally:
            _current_operation.reset(token)
        self._active[op_id] = task

        result: TimeoutResult[T]
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
            if task in done:
                error = task.exception()
                if error is None:
                    self._metrics.successful_operations += 1
                    result = TimeoutResult(success=True, value=task.result())
                else:
                    self._metrics.failed_operations += 1
                    result = TimeoutResult(success=False, error=error)
            else:
                task.add_done_callback(lambda t: self._on_late_completion(op_id, t))
                task.cancel()
                self._metrics.timed_out_operations += 1
                logger.warning(
                    "Operation timed out",
                    operation_id=op_id,
                    timeout_seconds=timeout,
                    timeout_type=timeout_type,
                )
                result = TimeoutResult(
                    success=False,
                    error=OperationTimeoutError(
                        f"Operation '{op_id}' exceeded {timeout:.3f}s",
                        timeout_seconds=timeout,
                        timeout_type=timeout_type,
                    ),
                    timed_out=True,
                    timeout_type=timeout_type,
                )
        except asyncio.CancelledError:
            task.cancel()
            await self.cleanup_operation(op_id)
            raise
        finally:
            self._active.pop(op_id, None)

        result.duration_seconds = self._clock.now() - started
        result.resources_created = len(self.resources_for(op_id))
        result.resources_cleaned, result.cleanup_errors = await self.cleanup_operation(op_id)

        n = self._metrics.total_operations
        self._metrics.average_duration_seconds += (
            result.duration_seconds - self._metrics.average_duration_seconds
        ) / n
        return result

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_id: str | None = None,
        timeout_seconds: float | None = None,
    ) -> T:
        """Like :meth:`execute_with_timeout` but returns the value or raises."""
        result = await self.execute_with_timeout(operation, operation_id, timeout_seconds)
        if result.success:
            return result.value  # type: ignore[return-value]
        assert result.error is not None
        raise result.error

    async def force_cleanup_all(self) -> int:
        """Release every registered resource.

        Returns:
            Number of resources released without error
        """
        cleaned = 0
        for resource in list(self._resources.values()):
            if await self._cleanup_resource(resource) is None:
                cleaned += 1
        return cleaned

    async def shutdown(self) -> None:
        """Cancel in-flight operations and release all resources."""
        for task in list(self._active.values()):
            task.cancel()
        self._active.clear()
        cleaned = await self.force_cleanup_all()
        logger.info("Timeout manager shut down", resources_cleaned=cleaned)

    def get_metrics(self) -> TimeoutMetrics:
        return TimeoutMetrics(**vars(self._metrics))

    def get_resource_summary(self) -> dict[str, Any]:
        by_type: dict[str, int] = {}
        for resource in self._resources.values():
            by_type[resource.type.value] = by_type.get(resource.type.value, 0) + 1
        return {
            "total_resources": len(self._resources),
            "by_type": by_type,
            "active_operations": len(self._active),
        }
