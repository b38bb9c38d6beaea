"""错误分类：将异常映射到来源类别并判断是否可重试。

Error classification.

Maps arbitrary exceptions (tagged errors, timeouts, httpx failures and
plain exceptions with descriptive messages) to an :class:`ErrorCategory`.
"""

from __future__ import annotations

import asyncio

import httpx

from ai_resilience.errors.base import (
    CircuitOpenError,
    ConfigurationError,
    OperationTimeoutError,
    TaggedError,
)
from ai_resilience.errors.codes import ErrorCategory, ErrorSeverity

_NON_RETRYABLE_CATEGORIES = frozenset(
    {
        ErrorCategory.AUTHENTICATION,
        ErrorCategory.VALIDATION,
        ErrorCategory.SECURITY,
        ErrorCategory.CONFIGURATION,
    }
)

_STATUS_MAPPING: dict[int, ErrorCategory] = {
    400: ErrorCategory.VALIDATION,
    401: ErrorCategory.AUTHENTICATION,
    403: ErrorCategory.AUTHENTICATION,
    408: ErrorCategory.TIMEOUT,
    413: ErrorCategory.VALIDATION,
    422: ErrorCategory.VALIDATION,
    429: ErrorCategory.RATE_LIMIT,
}

# Checked in order; the first matching keyword group wins.
_MESSAGE_KEYWORDS: tuple[tuple[tuple[str, ...], ErrorCategory], ...] = (
    (
        ("unauthorized", "forbidden", "authentication", "invalid credentials"),
        ErrorCategory.AUTHENTICATION,
    ),
    (("rate limit", "too many requests"), ErrorCategory.RATE_LIMIT),
    (("timeout", "timed out"), ErrorCategory.TIMEOUT),
    (("network", "connection", "econnrefused", "econnreset"), ErrorCategory.NETWORK),
    (("validation", "invalid input", "bad request"), ErrorCategory.VALIDATION),
    (("server error", "internal error", "service unavailable"), ErrorCategory.DEPENDENCY),
)


def classify_status(status_code: int) -> ErrorCategory:
    """Classify an HTTP status code.

    Args:
        status_code: HTTP status code

    Returns:
        Error category
    """
    if status_code in _STATUS_MAPPING:
        return _STATUS_MAPPING[status_code]
    if status_code >= 500:
        return ErrorCategory.DEPENDENCY
    if status_code >= 400:
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


def classify_message(message: str) -> ErrorCategory:
    """Classify an error by keywords in its message."""
    lowered = message.lower()
    for keywords, category in _MESSAGE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return category
    return ErrorCategory.UNKNOWN


def classify_exception(error: BaseException) -> ErrorCategory:
    """Classify an exception by origin.

    Args:
        error: The exception to classify

    Returns:
        Error category
    """
    if isinstance(error, TaggedError):
        return error.category
    if isinstance(error, (OperationTimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return ErrorCategory.TIMEOUT
    if isinstance(error, CircuitOpenError):
        return ErrorCategory.DEPENDENCY
    if isinstance(error, ConfigurationError):
        return ErrorCategory.CONFIGURATION
    if isinstance(error, httpx.HTTPStatusError):
        return classify_status(error.response.status_code)
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return ErrorCategory.NETWORK
    if isinstance(error, PermissionError):
        return ErrorCategory.SECURITY
    return classify_message(str(error))


def is_retryable(category: ErrorCategory) -> bool:
    """Check if failures of a category are worth retrying."""
    return category not in _NON_RETRYABLE_CATEGORIES


def is_retryable_error(error: BaseException) -> bool:
    """Check if an exception is worth retrying.

    An explicit ``retryable`` flag on a :class:`TaggedError` wins over the
    category default.
    """
    if isinstance(error, TaggedError) and error.retryable is not None:
        return error.retryable
    return is_retryable(classify_exception(error))


def severity_of(error: BaseException) -> ErrorSeverity:
    """Get the severity of an exception."""
    if isinstance(error, TaggedError):
        return error.severity
    category = classify_exception(error)
    if category == ErrorCategory.SECURITY:
        return ErrorSeverity.CRITICAL
    if category in (ErrorCategory.AUTHENTICATION, ErrorCategory.CONFIGURATION):
        return ErrorSeverity.HIGH
    return ErrorSeverity.MEDIUM


def is_security_error(error: BaseException) -> bool:
    """Check if an exception originates from a security failure."""
    return classify_exception(error) == ErrorCategory.SECURITY
