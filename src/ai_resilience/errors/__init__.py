"""错误体系：结构化错误类型与错误分类。

Error hierarchy for ai-resilience.
"""

from ai_resilience.errors.base import (
    BoundaryIsolatedError,
    CircuitOpenError,
    ConfigurationError,
    ErrorDetails,
    FallbackExhaustedError,
    OperationTimeoutError,
    ResilienceError,
    TaggedError,
)
from ai_resilience.errors.classification import (
    classify_exception,
    classify_message,
    classify_status,
    is_retryable,
    is_retryable_error,
    is_security_error,
    severity_of,
)
from ai_resilience.errors.codes import ErrorCategory, ErrorSeverity

__all__ = [
    # Base errors
    "BoundaryIsolatedError",
    "CircuitOpenError",
    "ConfigurationError",
    "ErrorDetails",
    "FallbackExhaustedError",
    "OperationTimeoutError",
    "ResilienceError",
    "TaggedError",
    # Classification
    "ErrorCategory",
    "ErrorSeverity",
    "classify_exception",
    "classify_message",
    "classify_status",
    "is_retryable",
    "is_retryable_error",
    "is_security_error",
    "severity_of",
]
