"""
Error categories and severities.

Protected operations fail with errors tagged by origin category and
severity; components only branch on these values.
"""

from __future__ import annotations

from enum import Enum


class ErrorCategory(str, Enum):
    """Origin of a failure."""

    TOOL = "tool"
    AI_PROCESSING = "ai_processing"
    CONFIGURATION = "configuration"
    DEPENDENCY = "dependency"
    SECURITY = "security"
    NETWORK = "network"
    VALIDATION = "validation"
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    """How serious a failure is."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    ErrorSeverity.LOW: 0,
    ErrorSeverity.MEDIUM: 1,
    ErrorSeverity.HIGH: 2,
    ErrorSeverity.CRITICAL: 3,
}
