"""错误基类：提供分层错误体系和结构化错误详情。

Base error classes for ai-resilience.

Provides a layered error hierarchy:
- ResilienceError: Base class for all library errors
- TaggedError: Failure of a protected operation, tagged with category/severity
- BoundaryIsolatedError: Call rejected by an isolated boundary
- OperationTimeoutError: Operation or global deadline exceeded
- CircuitOpenError: Call rejected by an open circuit
- FallbackExhaustedError: Every fallback step failed
- ConfigurationError: Invalid settings
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ai_resilience.errors.codes import ErrorCategory, ErrorSeverity


@dataclass
class ErrorDetails:
    """Structured diagnostics attached to an error."""

    source: str | None = None
    """Component that raised the error (e.g. 'boundary', 'timeout')"""

    details: dict[str, Any] = field(default_factory=dict)
    """Additional details about the error"""

    hint: str | None = None
    """Actionable hint for resolving the error"""

    def __str__(self) -> str:
        parts = []
        if self.source:
            parts.append(f"[{self.source}]")
        if self.hint:
            parts.append(f"(hint: {self.hint})")
        return " ".join(parts)


class ResilienceError(Exception):
    """Base class for all ai-resilience errors.

    Attributes:
        message: Human-readable error message
        details: Structured error details
    """

    def __init__(self, message: str, details: ErrorDetails | None = None) -> None:
        self.message = message
        self.details = details or ErrorDetails()
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        suffix = str(self.details)
        if suffix:
            return f"{self.message} {suffix}"
        return self.message

    def with_hint(self, hint: str) -> ResilienceError:
        """Add a hint to this error."""
        self.details.hint = hint
        self.args = (self._format_message(),)
        return self


class TaggedError(ResilienceError):
    """Failure of a protected operation.

    Callers raise this (or a subclass) from their operations to tell the
    engine where a failure came from and whether retrying makes sense.

    Attributes:
        category: Origin category
        severity: Failure severity
        retryable: Explicit retry hint; ``None`` defers to the category
        retry_after: Suggested wait in seconds before retrying
    """

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        retryable: bool | None = None,
        retry_after: float | None = None,
        details: ErrorDetails | None = None,
    ) -> None:
        self.category = category
        self.severity = severity
        self.retryable = retryable
        self.retry_after = retry_after
        super().__init__(message, details or ErrorDetails(source=category.value))


class BoundaryIsolatedError(ResilienceError):
    """Raised when a boundary rejects a call because it is isolated."""

    def __init__(self, boundary: str, isolation_end_time: float | None = None) -> None:
        self.boundary = boundary
        self.isolation_end_time = isolation_end_time
        super().__init__(
            f"Boundary '{boundary}' is isolated",
            ErrorDetails(
                source="boundary",
                details={"isolation_end_time": isolation_end_time},
            ),
        )


class OperationTimeoutError(ResilienceError):
    """Raised when an operation exceeds its deadline.

    ``timeout_type`` is one of ``operation``, ``global`` or ``cleanup``.
    """

    def __init__(
        self,
        message: str = "Operation timed out",
        *,
        timeout_seconds: float | None = None,
        timeout_type: str = "operation",
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.timeout_type = timeout_type
        super().__init__(
            message,
            ErrorDetails(
                source="timeout",
                details={"timeout_seconds": timeout_seconds, "timeout_type": timeout_type},
            ),
        )


class CircuitOpenError(ResilienceError):
    """Raised when a circuit is open and the call is rejected."""

    def __init__(
        self,
        message: str = "Circuit breaker is open",
        *,
        service: str | None = None,
        time_until_retry: float | None = None,
    ) -> None:
        self.service = service
        self.time_until_retry = time_until_retry
        super().__init__(
            message,
            ErrorDetails(source="circuit_breaker", details={"service": service}),
        )


class FallbackExhaustedError(ResilienceError):
    """Raised when every step of a fallback chain failed."""

    def __init__(self, message: str, errors: dict[str, BaseException] | None = None) -> None:
        self.errors = errors or {}
        super().__init__(
            message,
            ErrorDetails(source="fallback", details={"steps": list(self.errors)}),
        )


class ConfigurationError(ResilienceError):
    """Raised for invalid or unreadable settings."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        self.path = path
        super().__init__(
            message,
            ErrorDetails(source="config", details={"path": path} if path else {}),
        )
