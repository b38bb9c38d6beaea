"""
Aggregated settings for every resilience component.

A settings document is a mapping with one section per component. Every
section is optional; missing keys keep their defaults and unknown keys are
rejected.

Example document (YAML)::

    boundaries:
      tool_execution:
        degradation_threshold: 2
        isolation_threshold: 4
    backoff:
      base_delay_ms: 100
      strategy: exponential
    orchestrator:
      error_rate_threshold: 0.25
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from ai_resilience.boundaries.boundary import BoundaryConfig
from ai_resilience.boundaries.profiles import PROFILE_FACTORIES
from ai_resilience.context.preserver import PreserverConfig
from ai_resilience.errors import ConfigurationError
from ai_resilience.recovery import CircuitStrategyConfig, RetryStrategyConfig
from ai_resilience.resilience import (
    BackoffConfig,
    CircuitBreakerConfig,
    DegradationThresholds,
    FallbackChainConfig,
    OrchestratorConfig,
    TimeoutConfig,
)

C = TypeVar("C")


def _coerce(value: Any, default: Any, path: str) -> Any:
    if isinstance(default, Enum):
        try:
            return type(default)(value)
        except ValueError:
            choices = ", ".join(m.value for m in type(default))
            raise ConfigurationError(
                f"Invalid value {value!r} (expected one of: {choices})", path=path
            ) from None
    if isinstance(default, dict) and isinstance(value, dict) and default:
        key_type = type(next(iter(default)))
        if issubclass(key_type, Enum):
            merged = dict(default)
            for key, item in value.items():
                merged[_coerce(key, next(iter(default)), f"{path}.{key}")] = item
            return merged
    if isinstance(default, bool) and not isinstance(value, bool):
        raise ConfigurationError(f"Expected a boolean, got {value!r}", path=path)
    if isinstance(default, (int, float)) and not isinstance(default, bool):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationError(f"Expected a number, got {value!r}", path=path)
    return value


def build_section(cls: type[C], data: dict[str, Any] | None, path: str) -> C:
    """Build a config dataclass from a mapping.

    Args:
        cls: Config dataclass
        data: Section contents; None for defaults
        path: Dotted location of the section, for error messages

    Raises:
        ConfigurationError: On unknown keys or values of the wrong kind
    """
    instance = cls()
    if data is None:
        return instance
    if not isinstance(data, dict):
        raise ConfigurationError(f"Section must be a mapping, got {type(data).__name__}", path=path)

    known = {f.name for f in dataclasses.fields(instance)}  # type: ignore[arg-type]
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"Unknown keys: {', '.join(unknown)}", path=path)

    changes = {
        key: _coerce(value, getattr(instance, key), f"{path}.{key}")
        for key, value in data.items()
    }
    return dataclasses.replace(instance, **changes)  # type: ignore[type-var]


def _section_dict(instance: Any) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for f in dataclasses.fields(instance):
        value = getattr(instance, f.name)
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, dict):
            value = {(k.value if isinstance(k, Enum) else k): v for k, v in value.items()}
        out[f.name] = value
    return out


@dataclass
class ResilienceSettings:
    """Settings of every component.

    ``boundaries`` holds per-boundary overrides keyed by boundary name; a
    boundary without an entry keeps its profile's defaults.
    """

    boundaries: dict[str, BoundaryConfig] = field(default_factory=dict)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    fallback: FallbackChainConfig = field(default_factory=FallbackChainConfig)
    timeout: TimeoutConfig = field(default_factory=TimeoutConfig)
    degradation: DegradationThresholds = field(default_factory=DegradationThresholds)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    preserver: PreserverConfig = field(default_factory=PreserverConfig)
    retry: RetryStrategyConfig = field(default_factory=RetryStrategyConfig)
    recovery_circuit: CircuitStrategyConfig = field(default_factory=CircuitStrategyConfig)

    _SECTIONS = (
        "circuit_breaker",
        "backoff",
        "fallback",
        "timeout",
        "degradation",
        "orchestrator",
        "preserver",
        "retry",
        "recovery_circuit",
    )

    @classmethod
    def default(cls) -> ResilienceSettings:
        return cls()

    @classmethod
    def from_env(cls) -> ResilienceSettings:
        """Build settings from ``AI_RESILIENCE_*`` environment variables."""
        return cls(
            boundaries={
                kind.value: BoundaryConfig.from_env(kind.value, factory().config)
                for kind, factory in PROFILE_FACTORIES.items()
            },
            circuit_breaker=CircuitBreakerConfig.from_env(),
            backoff=BackoffConfig.from_env(),
            fallback=FallbackChainConfig.from_env(),
            timeout=TimeoutConfig.from_env(),
            degradation=DegradationThresholds.from_env(),
            orchestrator=OrchestratorConfig.from_env(),
            preserver=PreserverConfig.from_env(),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ResilienceSettings:
        """Build settings from a parsed document.

        Raises:
            ConfigurationError: On unknown sections, keys or bad values
        """
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigurationError("Settings document must be a mapping")

        unknown = sorted(set(data) - set(cls._SECTIONS) - {"boundaries"})
        if unknown:
            raise ConfigurationError(f"Unknown sections: {', '.join(unknown)}")

        defaults = {kind.value: factory().config for kind, factory in PROFILE_FACTORIES.items()}
        boundaries: dict[str, BoundaryConfig] = {}
        raw_boundaries = data.get("boundaries") or {}
        if not isinstance(raw_boundaries, dict):
            raise ConfigurationError("Section must be a mapping", path="boundaries")
        for name, section in raw_boundaries.items():
            base = defaults.get(name, BoundaryConfig())
            override = build_section(BoundaryConfig, section, f"boundaries.{name}")
            boundaries[name] = dataclasses.replace(
                base, **{k: getattr(override, k) for k in (section or {})}
            )

        sections = {
            name: build_section(type(getattr(cls(), name)), data.get(name), name)
            for name in cls._SECTIONS
        }
        return cls(boundaries=boundaries, **sections)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "boundaries": {name: _section_dict(cfg) for name, cfg in self.boundaries.items()}
        }
        for name in self._SECTIONS:
            out[name] = _section_dict(getattr(self, name))
        return out

    def validate(self) -> list[str]:
        """Collect configuration warnings without rejecting the settings."""
        warnings = []
        for name, cfg in self.boundaries.items():
            warnings.extend(f"boundaries.{name}: {w}" for w in cfg.validate())
        if self.backoff.base_delay_ms > self.backoff.max_delay_ms:
            warnings.append("backoff: base_delay_ms exceeds max_delay_ms")
        if self.timeout.operation_timeout_seconds > self.timeout.global_timeout_seconds:
            warnings.append("timeout: operation timeout exceeds global timeout")
        return warnings
