"""Cross-chain route discovery and selection."""

from escrowbridge.routing.base import (
    EstimateOnlyRoute,
    LiveRoute,
    ProviderStatus,
    ProviderStatusReport,
    ProviderSubmission,
    Route,
    RouteAggregator,
    RouteProvider,
    RouteRequest,
    RouteStep,
    StepKind,
)
from escrowbridge.routing.selector import RouteSelection, ScoringWeights, select_route

__all__ = [
    "EstimateOnlyRoute",
    "LiveRoute",
    "ProviderStatus",
    "ProviderStatusReport",
    "ProviderSubmission",
    "Route",
    "RouteAggregator",
    "RouteProvider",
    "RouteRequest",
    "RouteSelection",
    "RouteStep",
    "ScoringWeights",
    "StepKind",
    "select_route",
]
