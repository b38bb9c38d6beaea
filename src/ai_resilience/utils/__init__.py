"""Shared utilities."""

from ai_resilience.utils.clock import Clock, ManualClock, SystemClock, default_clock

__all__ = [
    "Clock",
    "ManualClock",
    "SystemClock",
    "default_clock",
]
