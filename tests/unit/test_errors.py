"""Tests for error hierarchy and classification."""

import asyncio

import httpx
import pytest

from ai_resilience.errors import (
    BoundaryIsolatedError,
    CircuitOpenError,
    ConfigurationError,
    ErrorCategory,
    ErrorSeverity,
    OperationTimeoutError,
    ResilienceError,
    TaggedError,
    classify_exception,
    classify_message,
    classify_status,
    is_retryable,
    is_retryable_error,
    is_security_error,
    severity_of,
)


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://tools.example.com/run")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(f"status {status}", request=request, response=response)


class TestErrorHierarchy:
    """Tests for the error classes."""

    def test_all_errors_share_base(self) -> None:
        """Test every library error derives from ResilienceError."""
        for error in (
            TaggedError("x"),
            BoundaryIsolatedError("registry"),
            OperationTimeoutError(),
            CircuitOpenError(),
            ConfigurationError("bad"),
        ):
            assert isinstance(error, ResilienceError)

    def test_with_hint(self) -> None:
        """Test hints are appended to the message."""
        error = ResilienceError("Boom").with_hint("check the server")
        assert "check the server" in str(error)
        assert error.details.hint == "check the server"

    def test_isolated_error_carries_boundary(self) -> None:
        """Test isolated error exposes boundary and window end."""
        error = BoundaryIsolatedError("tool_execution", 123.0)
        assert error.boundary == "tool_execution"
        assert error.isolation_end_time == 123.0
        assert "tool_execution" in str(error)

    def test_tagged_error_defaults(self) -> None:
        """Test tagged error default tags."""
        error = TaggedError("failed")
        assert error.category == ErrorCategory.UNKNOWN
        assert error.severity == ErrorSeverity.MEDIUM
        assert error.retryable is None

    def test_severity_rank_order(self) -> None:
        """Test severity ranks increase with severity."""
        ranks = [s.rank for s in (
            ErrorSeverity.LOW, ErrorSeverity.MEDIUM, ErrorSeverity.HIGH, ErrorSeverity.CRITICAL
        )]
        assert ranks == sorted(ranks)
        assert len(set(ranks)) == 4


class TestClassification:
    """Tests for classify_exception and friends."""

    @pytest.mark.parametrize(
        ("status", "category"),
        [
            (400, ErrorCategory.VALIDATION),
            (401, ErrorCategory.AUTHENTICATION),
            (403, ErrorCategory.AUTHENTICATION),
            (404, ErrorCategory.VALIDATION),
            (408, ErrorCategory.TIMEOUT),
            (429, ErrorCategory.RATE_LIMIT),
            (500, ErrorCategory.DEPENDENCY),
            (503, ErrorCategory.DEPENDENCY),
        ],
    )
    def test_classify_status(self, status: int, category: ErrorCategory) -> None:
        """Test HTTP status mapping."""
        assert classify_status(status) == category
        assert classify_exception(_status_error(status)) == category

    def test_tagged_error_wins(self) -> None:
        """Test a tagged category is used as is."""
        error = TaggedError("timeout talking to db", category=ErrorCategory.DEPENDENCY)
        assert classify_exception(error) == ErrorCategory.DEPENDENCY

    def test_timeouts(self) -> None:
        """Test timeout exceptions from every source."""
        assert classify_exception(asyncio.TimeoutError()) == ErrorCategory.TIMEOUT
        assert classify_exception(OperationTimeoutError()) == ErrorCategory.TIMEOUT
        assert classify_exception(httpx.ReadTimeout("slow")) == ErrorCategory.TIMEOUT

    def test_transport_and_connection_errors(self) -> None:
        """Test network failures."""
        assert classify_exception(httpx.ConnectError("refused")) == ErrorCategory.NETWORK
        assert classify_exception(ConnectionResetError()) == ErrorCategory.NETWORK

    def test_permission_error_is_security(self) -> None:
        """Test permission failures are security failures."""
        error = PermissionError("token revoked")
        assert classify_exception(error) == ErrorCategory.SECURITY
        assert is_security_error(error)
        assert severity_of(error) == ErrorSeverity.CRITICAL

    def test_message_keywords(self) -> None:
        """Test plain exceptions are classified by message."""
        assert classify_message("Rate limit exceeded") == ErrorCategory.RATE_LIMIT
        assert classify_message("request timed out") == ErrorCategory.TIMEOUT
        assert classify_message("Unauthorized") == ErrorCategory.AUTHENTICATION
        assert classify_message("something odd") == ErrorCategory.UNKNOWN
        assert classify_exception(RuntimeError("Service Unavailable")) == ErrorCategory.DEPENDENCY

    def test_retryability(self) -> None:
        """Test retryable categories."""
        assert is_retryable(ErrorCategory.NETWORK)
        assert is_retryable(ErrorCategory.RATE_LIMIT)
        assert not is_retryable(ErrorCategory.AUTHENTICATION)
        assert not is_retryable(ErrorCategory.SECURITY)
        assert not is_retryable(ErrorCategory.CONFIGURATION)

    def test_explicit_retry_flag_overrides_category(self) -> None:
        """Test TaggedError.retryable wins over the category default."""
        error = TaggedError("bad input", category=ErrorCategory.VALIDATION, retryable=True)
        assert is_retryable_error(error)
        assert not is_retryable_error(TaggedError("x", category=ErrorCategory.NETWORK, retryable=False))
