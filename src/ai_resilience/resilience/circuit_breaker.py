"""
Per-service circuit breakers.

A CLOSED circuit admits every call; an OPEN one rejects calls until its
recovery timeout elapses; a HALF_OPEN one admits a few trial calls whose
outcome decides between CLOSED and OPEN.

Besides consecutive failures, a closed circuit also opens when the error
rate over a rolling window exceeds a threshold once enough calls were seen.
"""

from __future__ import annotations

import asyncio
import os
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from ai_resilience.errors import CircuitOpenError
from ai_resilience.telemetry.logger import get_logger
from ai_resilience.utils.clock import default_clock

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ai_resilience.utils.clock import Clock

T = TypeVar("T")

logger = get_logger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Thresholds and timeouts of a service circuit.

    Attributes:
        failure_threshold: Number of failures to trip the circuit
        success_threshold: Number of successes in half-open to close
        recovery_timeout_seconds: Time to wait before testing (half-open)
        volume_threshold: Minimum calls in the window before the error rate counts
        error_rate_threshold: Error rate in the window that trips the circuit
        time_window_seconds: Length of the rolling window
        half_open_max_calls: Concurrent calls admitted while half-open
        timeout_seconds: Optional timeout for operations
    """

    failure_threshold: int = 5
    success_threshold: int = 3
    recovery_timeout_seconds: float = 60.0
    volume_threshold: int = 10
    error_rate_threshold: float = 0.5
    time_window_seconds: float = 120.0
    half_open_max_calls: int = 3
    timeout_seconds: float | None = None

    @classmethod
    def default(cls) -> CircuitBreakerConfig:
        """Create default configuration."""
        return cls()

    @classmethod
    def from_env(cls) -> CircuitBreakerConfig:
        """Create configuration from environment variables."""
        return cls(
            failure_threshold=int(os.getenv("AI_RESILIENCE_BREAKER_FAILURE_THRESHOLD", "5")),
            recovery_timeout_seconds=float(
                os.getenv("AI_RESILIENCE_BREAKER_RECOVERY_SECS", "60")
            ),
        )


@dataclass
class CircuitStats:
    """Statistics for circuit breaker."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    state_changes: int = 0
    last_failure_time: float | None = None
    last_success_time: float | None = None


@dataclass
class CircuitStatus:
    """Snapshot of one breaker, as reported by the manager."""

    name: str
    state: CircuitState
    failure_count: int
    error_rate: float
    time_until_retry: float | None
    stats: CircuitStats

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "error_rate": self.error_rate,
            "time_until_retry": self.time_until_retry,
            "total_requests": self.stats.total_requests,
            "rejected_requests": self.stats.rejected_requests,
        }


class CircuitBreaker:
    """Fails fast on calls to a service that keeps failing.

    Example:
        >>> breaker = CircuitBreaker("jenkins", CircuitBreakerConfig(failure_threshold=3))
        >>> try:
        ...     result = await breaker.execute(trigger_build)
        ... except CircuitOpenError:
        ...     print("Service unavailable")
    """

    def __init__(
        self,
        name: str = "default",
        config: CircuitBreakerConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.name = name
        self._config = config or CircuitBreakerConfig()
        self._clock = clock or default_clock()
        self._state = CircuitState.CLOSED
        self._lock = asyncio.Lock()

        self._failure_count = 0
        self._success_count = 0
        self._half_open_calls = 0
        self._opened_at: float | None = None
        # (timestamp, succeeded) pairs inside the rolling window
        self._history: deque[tuple[float, bool]] = deque()

        self._stats = CircuitStats()

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state == CircuitState.HALF_OPEN

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _check_state_transition(self) -> None:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            elapsed = self._clock.now() - self._opened_at
            if elapsed >= self._config.recovery_timeout_seconds:
                self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        if new_state == self._state:
            return

        old_state = self._state
        self._state = new_state
        self._stats.state_changes += 1

        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock.now()
        elif new_state == CircuitState.HALF_OPEN:
            self._success_count = 0
            self._half_open_calls = 0
        elif new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._opened_at = None
            self._history.clear()

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            "Circuit state changed",
            circuit=self.name,
            from_state=old_state.value,
            to_state=new_state.value,
        )

    def _prune_history(self, now: float) -> None:
        horizon = now - self._config.time_window_seconds
        while self._history and self._history[0][0] < horizon:
            self._history.popleft()

    def error_rate(self) -> float:
        """Error rate over the rolling window."""
        self._prune_history(self._clock.now())
        if not self._history:
            return 0.0
        failures = sum(1 for _, ok in self._history if not ok)
        return failures / len(self._history)

    def _record_success(self) -> None:
        now = self._clock.now()
        self._stats.successful_requests += 1
        self._stats.last_success_time = now
        self._history.append((now, True))

        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self._config.success_threshold:
                self._transition_to(CircuitState.CLOSED)
        elif self._state == CircuitState.CLOSED:
            self._failure_count = max(0, self._failure_count - 1)

    def _record_failure(self) -> None:
        now = self._clock.now()
        self._stats.failed_requests += 1
        self._stats.last_failure_time = now
        self._history.append((now, False))

        if self._state == CircuitState.HALF_OPEN:
            # Single failure in half-open trips back to open
            self._transition_to(CircuitState.OPEN)
        elif self._state == CircuitState.CLOSED:
            self._failure_count += 1
            if self._failure_count >= self._config.failure_threshold:
                self._transition_to(CircuitState.OPEN)
                return
            self._prune_history(now)
            if (
                len(self._history) >= self._config.volume_threshold
                and self.error_rate() >= self._config.error_rate_threshold
            ):
                self._transition_to(CircuitState.OPEN)

    def get_time_until_retry(self) -> float | None:
        """Seconds left in the open window, None unless OPEN."""
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return None
        remaining = self._config.recovery_timeout_seconds - (self._clock.now() - self._opened_at)
        return max(0.0, remaining)

    def _reject(self) -> CircuitOpenError:
        self._stats.rejected_requests += 1
        return CircuitOpenError(
            f"Circuit '{self.name}' is open",
            service=self.name,
            time_until_retry=self.get_time_until_retry(),
        )

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]] | None = None,
    ) -> T:
        """Run a call to the service if the circuit admits it.

        Args:
            operation: Zero-argument async call to the service
            fallback: Answers instead when the circuit rejects the call

        Raises:
            CircuitOpenError: When the call is rejected and there is no fallback
        """
        async with self._lock:
            self._check_state_transition()
            self._stats.total_requests += 1

            rejection: CircuitOpenError | None = None
            if self._state == CircuitState.OPEN:
                rejection = self._reject()
            elif self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self._config.half_open_max_calls:
                    rejection = self._reject()
                else:
                    self._half_open_calls += 1

        if rejection is not None:
            if fallback:
                return await fallback()
            raise rejection

        try:
            result = await self._execute_with_timeout(operation)
        except Exception:
            async with self._lock:
                self._record_failure()
            raise

        async with self._lock:
            self._record_success()
        return result

    async def _execute_with_timeout(self, operation: Callable[[], Awaitable[T]]) -> T:
        if self._config.timeout_seconds:
            return await asyncio.wait_for(operation(), timeout=self._config.timeout_seconds)
        return await operation()

    def force_open(self) -> None:
        """Trip the circuit regardless of counters."""
        self._transition_to(CircuitState.OPEN)
        self._opened_at = self._clock.now()

    def reset(self) -> None:
        """Close the circuit and clear its counters."""
        if self._state != CircuitState.CLOSED:
            self._transition_to(CircuitState.CLOSED)
        self._failure_count = 0
        self._success_count = 0
        self._half_open_calls = 0
        self._opened_at = None
        self._history.clear()

    def get_stats(self) -> CircuitStats:
        """Get a copy of the breaker statistics."""
        return CircuitStats(**vars(self._stats))

    def get_status(self) -> CircuitStatus:
        return CircuitStatus(
            name=self.name,
            state=self._state,
            failure_count=self._failure_count,
            error_rate=self.error_rate(),
            time_until_retry=self.get_time_until_retry(),
            stats=self.get_stats(),
        )

    def __repr__(self) -> str:
        return (
            f"CircuitBreaker(name={self.name!r}, state={self._state.value}, "
            f"failures={self._failure_count}/{self._config.failure_threshold})"
        )


class CircuitBreakerManager:
    """Owns one circuit breaker per service name.

    Example:
        >>> manager = CircuitBreakerManager()
        >>> await manager.execute("github", create_issue)
        >>> manager.get_unhealthy_services()
        []
    """

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._default_config = default_config or CircuitBreakerConfig()
        self._clock = clock or default_clock()
        self._breakers: dict[str, CircuitBreaker] = {}

    def get_circuit_breaker(
        self, service: str, config: CircuitBreakerConfig | None = None
    ) -> CircuitBreaker:
        """Get the breaker for a service, creating it on first use."""
        breaker = self._breakers.get(service)
        if breaker is None:
            breaker = CircuitBreaker(service, config or self._default_config, self._clock)
            self._breakers[service] = breaker
        return breaker

    def get_state(self, service: str) -> CircuitState:
        breaker = self._breakers.get(service)
        return breaker.state if breaker else CircuitState.CLOSED

    async def execute(
        self,
        service: str,
        operation: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]] | None = None,
        config: CircuitBreakerConfig | None = None,
    ) -> T:
        return await self.get_circuit_breaker(service, config).execute(operation, fallback)

    def get_all_statuses(self) -> dict[str, CircuitStatus]:
        return {name: b.get_status() for name, b in self._breakers.items()}

    def get_unhealthy_services(self) -> list[str]:
        """Names of services whose circuit is not closed."""
        return [name for name, b in self._breakers.items() if not b.is_closed]

    def open_circuit_count(self) -> int:
        return sum(1 for b in self._breakers.values() if b.is_open)

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()

    def get_health_report(self) -> dict[str, Any]:
        """Summarize breaker health.

        The overall status is ``healthy`` when every circuit is closed,
        ``unhealthy`` when at least half are open, ``degraded`` otherwise.
        """
        statuses = self.get_all_statuses()
        open_count = sum(1 for s in statuses.values() if s.state == CircuitState.OPEN)
        half_open = sum(1 for s in statuses.values() if s.state == CircuitState.HALF_OPEN)
        total = len(statuses)

        if open_count == 0 and half_open == 0:
            overall = "healthy"
        elif total and open_count / total >= 0.5:
            overall = "unhealthy"
        else:
            overall = "degraded"

        return {
            "status": overall,
            "total_services": total,
            "healthy_services": total - open_count - half_open,
            "half_open_services": half_open,
            "open_services": open_count,
            "services": {name: s.to_dict() for name, s in statuses.items()},
        }
