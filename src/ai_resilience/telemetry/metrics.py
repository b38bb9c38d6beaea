"""
Metrics sink for resilience events.

The core reports errors, recoveries and timings through a
:class:`MetricsRecorder`. Recording is best effort: a failing recorder is
logged and otherwise ignored.
"""

from __future__ import annotations

import statistics
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from ai_resilience.telemetry.logger import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

logger = get_logger(__name__)


class MetricsRecorder(Protocol):
    """Receiver of resilience events."""

    def record_error(self, error: BaseException, context: dict[str, Any]) -> None: ...

    def record_recovery(
        self, strategy: str, result: str, duration_ms: float, context: dict[str, Any]
    ) -> None: ...

    def record_performance_metric(
        self, name: str, value: float, labels: dict[str, str] | None = None
    ) -> None: ...


class NullRecorder:
    """Recorder that drops everything."""

    def record_error(self, error: BaseException, context: dict[str, Any]) -> None:
        pass

    def record_recovery(
        self, strategy: str, result: str, duration_ms: float, context: dict[str, Any]
    ) -> None:
        pass

    def record_performance_metric(
        self, name: str, value: float, labels: dict[str, str] | None = None
    ) -> None:
        pass


@dataclass
class MetricSnapshot:
    """Point-in-time view of an :class:`InMemoryRecorder`.

    Attributes:
        errors_by_type: Error counts keyed by exception class name
        recoveries: Recovery counts keyed by ``strategy:result``
        timings: Summary statistics per performance metric
    """

    errors_by_type: dict[str, int] = field(default_factory=dict)
    recoveries: dict[str, int] = field(default_factory=dict)
    timings: dict[str, dict[str, float]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "errors_by_type": dict(self.errors_by_type),
            "recoveries": dict(self.recoveries),
            "timings": {k: dict(v) for k, v in self.timings.items()},
        }


def _labels_key(name: str, labels: dict[str, str] | None) -> str:
    if not labels:
        return name
    parts = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
    return f"{name}{{{parts}}}"


class InMemoryRecorder:
    """Thread-safe aggregating recorder.

    Example:
        >>> recorder = InMemoryRecorder()
        >>> recorder.record_performance_metric("boundary.execute_ms", 12.5)
        >>> recorder.snapshot().timings["boundary.execute_ms"]["count"]
        1.0
    """

    def __init__(self, max_samples: int = 1000) -> None:
        self._lock = threading.Lock()
        self._max_samples = max_samples
        self._errors: dict[str, int] = defaultdict(int)
        self._recoveries: dict[str, int] = defaultdict(int)
        self._samples: dict[str, list[float]] = defaultdict(list)
        self._callbacks: list[Callable[[str, dict[str, Any]], None]] = []

    def add_callback(self, callback: Callable[[str, dict[str, Any]], None]) -> None:
        """Register a callback invoked with ``(event, payload)`` for every record."""
        self._callbacks.append(callback)

    def _notify(self, event: str, payload: dict[str, Any]) -> None:
        for callback in self._callbacks:
            try:
                callback(event, payload)
            except Exception:
                logger.exception("Metrics callback failed", event=event)

    def record_error(self, error: BaseException, context: dict[str, Any]) -> None:
        with self._lock:
            self._errors[type(error).__name__] += 1
        self._notify("error", {"error": str(error), **context})

    def record_recovery(
        self, strategy: str, result: str, duration_ms: float, context: dict[str, Any]
    ) -> None:
        with self._lock:
            self._recoveries[f"{strategy}:{result}"] += 1
            samples = self._samples[f"recovery.{strategy}_ms"]
            samples.append(duration_ms)
            if len(samples) > self._max_samples:
                del samples[0]
        self._notify(
            "recovery",
            {"strategy": strategy, "result": result, "duration_ms": duration_ms, **context},
        )

    def record_performance_metric(
        self, name: str, value: float, labels: dict[str, str] | None = None
    ) -> None:
        key = _labels_key(name, labels)
        with self._lock:
            samples = self._samples[key]
            samples.append(value)
            if len(samples) > self._max_samples:
                del samples[0]
        self._notify("metric", {"name": key, "value": value})

    def error_count(self, error_type: str | None = None) -> int:
        with self._lock:
            if error_type is None:
                return sum(self._errors.values())
            return self._errors.get(error_type, 0)

    def snapshot(self) -> MetricSnapshot:
        """Get aggregated view of everything recorded so far."""
        with self._lock:
            timings = {
                key: {
                    "count": float(len(values)),
                    "mean": statistics.fmean(values),
                    "min": min(values),
                    "max": max(values),
                }
                for key, values in self._samples.items()
                if values
            }
            return MetricSnapshot(
                errors_by_type=dict(self._errors),
                recoveries=dict(self._recoveries),
                timings=timings,
            )

    def reset(self) -> None:
        with self._lock:
            self._errors.clear()
            self._recoveries.clear()
            self._samples.clear()


def safe_record(method: Callable[..., None], *args: Any, **kwargs: Any) -> None:
    """Invoke a recorder method, logging instead of raising on failure."""
    try:
        method(*args, **kwargs)
    except Exception:
        logger.exception(
            "Metrics recorder failed", recorder_method=getattr(method, "__name__", "unknown")
        )
