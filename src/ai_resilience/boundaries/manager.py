"""
Registry of the configured boundaries.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from ai_resilience.boundaries.boundary import (
    Boundary,
    BoundaryConfig,
    BoundaryMetrics,
    BoundaryProfile,
    BoundaryState,
)
from ai_resilience.boundaries.profiles import PROFILE_FACTORIES, BoundaryKind
from ai_resilience.boundaries.resilient import ResilienceBoundary
from ai_resilience.context.preserver import ContextPreserver
from ai_resilience.recovery import RecoveryStrategyManager
from ai_resilience.telemetry.logger import get_logger
from ai_resilience.telemetry.metrics import NullRecorder
from ai_resilience.utils.clock import default_clock

if TYPE_CHECKING:
    from ai_resilience.resilience.orchestrator import ResilienceOrchestrator
    from ai_resilience.telemetry.metrics import MetricsRecorder
    from ai_resilience.utils.clock import Clock

logger = get_logger(__name__)


class BoundaryManager:
    """Owns one boundary per dependency category.

    All boundaries share the context preserver, the recovery manager and
    the metrics sink. Profiles and configs may be overridden per kind.
    Given an orchestrator, every boundary is a :class:`ResilienceBoundary`
    sharing it.

    Example:
        >>> manager = BoundaryManager()
        >>> result = await manager.get_boundary("registry").execute(list_tools, ctx)
        >>> manager.get_all_states()["registry"]
        <BoundaryState.HEALTHY: 'healthy'>
    """

    def __init__(
        self,
        profiles: dict[str, BoundaryProfile] | None = None,
        configs: dict[str, BoundaryConfig] | None = None,
        preserver: ContextPreserver | None = None,
        recovery_manager: RecoveryStrategyManager | None = None,
        metrics: MetricsRecorder | None = None,
        clock: Clock | None = None,
        orchestrator: ResilienceOrchestrator | None = None,
    ) -> None:
        self._clock = clock or default_clock()
        self._orchestrator = orchestrator
        self._metrics = metrics or NullRecorder()
        self._preserver = preserver or ContextPreserver(clock=self._clock)
        self._recovery = recovery_manager or RecoveryStrategyManager(
            metrics=self._metrics, clock=self._clock
        )
        profiles = profiles or {}
        configs = configs or {}

        self._boundaries: dict[str, Boundary] = {}
        for kind, factory in PROFILE_FACTORIES.items():
            profile = profiles.get(kind.value) or factory()
            self.register(profile, configs.get(kind.value))
        for name, profile in profiles.items():
            if name not in self._boundaries:
                self.register(profile, configs.get(name))

    @property
    def preserver(self) -> ContextPreserver:
        return self._preserver

    @property
    def recovery_manager(self) -> RecoveryStrategyManager:
        return self._recovery

    def register(self, profile: BoundaryProfile, config: BoundaryConfig | None = None) -> Boundary:
        """Create a boundary for a profile, replacing any of the same name."""
        shared: dict[str, Any] = {
            "config": config,
            "recovery_manager": self._recovery,
            "preserver": self._preserver,
            "metrics": self._metrics,
            "clock": self._clock,
        }
        if self._orchestrator is not None:
            boundary: Boundary = ResilienceBoundary(profile, orchestrator=self._orchestrator, **shared)
        else:
            boundary = Boundary(profile, **shared)
        self._boundaries[profile.name] = boundary
        return boundary

    def get_boundary(self, name: str | BoundaryKind) -> Boundary:
        key = name.value if isinstance(name, BoundaryKind) else name
        try:
            return self._boundaries[key]
        except KeyError:
            raise KeyError(f"Unknown boundary: {key}") from None

    @property
    def tool_execution(self) -> Boundary:
        return self._boundaries[BoundaryKind.TOOL_EXECUTION.value]

    @property
    def registry(self) -> Boundary:
        return self._boundaries[BoundaryKind.REGISTRY.value]

    @property
    def ai_processing(self) -> Boundary:
        return self._boundaries[BoundaryKind.AI_PROCESSING.value]

    @property
    def configuration(self) -> Boundary:
        return self._boundaries[BoundaryKind.CONFIGURATION.value]

    @property
    def response_delivery(self) -> Boundary:
        return self._boundaries[BoundaryKind.RESPONSE_DELIVERY.value]

    def names(self) -> list[str]:
        return list(self._boundaries)

    def get_all_states(self) -> dict[str, BoundaryState]:
        return {name: b.state for name, b in self._boundaries.items()}

    def get_all_metrics(self) -> dict[str, BoundaryMetrics]:
        return {name: b.get_metrics() for name, b in self._boundaries.items()}

    def get_unhealthy(self) -> list[str]:
        return [name for name, b in self._boundaries.items() if b.state != BoundaryState.HEALTHY]

    def reset_all(self) -> None:
        for boundary in self._boundaries.values():
            boundary.reset()
        logger.info("All boundaries reset", count=len(self._boundaries))

    def isolate_boundary(self, name: str | BoundaryKind, duration_seconds: float | None = None) -> None:
        """Force one boundary into isolation, e.g. on a security incident."""
        self.get_boundary(name).isolate(duration_seconds)
