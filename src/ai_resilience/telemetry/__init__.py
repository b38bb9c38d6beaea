"""
Telemetry - structured logging and the metrics sink.
"""

from ai_resilience.telemetry.logger import (
    JsonFormatter,
    LogContext,
    LogLevel,
    ResilienceLogger,
    SensitiveDataMasker,
    TextFormatter,
    clear_log_context,
    get_log_context,
    get_logger,
    log_scope,
    set_log_context,
)
from ai_resilience.telemetry.metrics import (
    InMemoryRecorder,
    MetricSnapshot,
    MetricsRecorder,
    NullRecorder,
    safe_record,
)

__all__ = [
    "InMemoryRecorder",
    "JsonFormatter",
    "LogContext",
    "LogLevel",
    "MetricSnapshot",
    "MetricsRecorder",
    "NullRecorder",
    "ResilienceLogger",
    "SensitiveDataMasker",
    "TextFormatter",
    "clear_log_context",
    "get_log_context",
    "get_logger",
    "log_scope",
    "safe_record",
    "set_log_context",
]
