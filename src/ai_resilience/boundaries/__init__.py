"""
Failure-isolation boundaries.

One generic :class:`Boundary` state machine, parameterized by a
:class:`BoundaryProfile` per dependency category, and a
:class:`ResilienceBoundary` that coordinates it with the orchestrator.
"""

from ai_resilience.boundaries.boundary import (
    Boundary,
    BoundaryConfig,
    BoundaryMetrics,
    BoundaryProfile,
    BoundaryResult,
    BoundaryState,
    default_snapshot,
)
from ai_resilience.boundaries.manager import BoundaryManager
from ai_resilience.boundaries.profiles import (
    DEFAULT_DELIVERY_CHANNELS,
    PROFILE_FACTORIES,
    BoundaryKind,
    ToolBlacklist,
    ai_processing_profile,
    configuration_profile,
    registry_profile,
    response_delivery_profile,
    tool_execution_profile,
)
from ai_resilience.boundaries.resilient import (
    IntegrationStep,
    IntegrationStrategy,
    ResilienceBoundary,
    ResilienceBoundaryConfig,
    ResilienceBoundaryResult,
)

__all__ = [
    "DEFAULT_DELIVERY_CHANNELS",
    "PROFILE_FACTORIES",
    "Boundary",
    "BoundaryConfig",
    "BoundaryKind",
    "BoundaryManager",
    "BoundaryMetrics",
    "BoundaryProfile",
    "BoundaryResult",
    "BoundaryState",
    "IntegrationStep",
    "IntegrationStrategy",
    "ResilienceBoundary",
    "ResilienceBoundaryConfig",
    "ResilienceBoundaryResult",
    "ToolBlacklist",
    "ai_processing_profile",
    "configuration_profile",
    "default_snapshot",
    "registry_profile",
    "response_delivery_profile",
    "tool_execution_profile",
]
