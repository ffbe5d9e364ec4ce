"""Route selection.

Pure scoring over candidate routes:

    score = w_fee * (1 - fee_n) + w_duration * (1 - duration_n)
            + w_confidence * confidence + w_steps * (1 - steps_n)

where ``*_n`` are min-max normalized over the candidate set. All math is
Decimal so identical inputs always give identical output.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Sequence

from escrowbridge.config import Settings, get_settings
from escrowbridge.errors import NoExecutableRoute
from escrowbridge.routing.base import Route

ZERO = Decimal("0")
ONE = Decimal("1")


@dataclass(frozen=True)
class ScoringWeights:
    """Weights applied to each scoring term."""

    fee: Decimal = Decimal("0.3")
    duration: Decimal = Decimal("0.3")
    confidence: Decimal = Decimal("0.3")
    steps: Decimal = Decimal("0.1")

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ScoringWeights":
        settings = settings or get_settings()
        return cls(
            fee=settings.route_weight_fee,
            duration=settings.route_weight_duration,
            confidence=settings.route_weight_confidence,
            steps=settings.route_weight_steps,
        )


@dataclass(frozen=True)
class ScoredRoute:
    route: Route
    score: Decimal


@dataclass(frozen=True)
class RouteSelection:
    """Result of selecting among candidates."""

    route: Route
    score: Decimal
    awaiting_manual_route: bool = False
    ranked: tuple[ScoredRoute, ...] = ()


def _normalizer(values: list[Decimal]):
    low = min(values)
    high = max(values)
    spread = high - low

    def normalize(value: Decimal) -> Decimal:
        if spread == 0:
            return ZERO
        return (value - low) / spread

    return normalize


def score_routes(routes: Sequence[Route], weights: ScoringWeights) -> list[ScoredRoute]:
    """Score and rank routes, best first.

    Ties are broken by lowest fee, then fewest steps, then route id.
    """
    if not routes:
        return []

    norm_fee = _normalizer([r.estimated_fees for r in routes])
    norm_duration = _normalizer([Decimal(r.estimated_duration_seconds) for r in routes])
    norm_steps = _normalizer([Decimal(r.step_count) for r in routes])

    scored = []
    for route in routes:
        confidence = min(max(route.confidence_score, ZERO), ONE)
        score = (
            weights.fee * (ONE - norm_fee(route.estimated_fees))
            + weights.duration * (ONE - norm_duration(Decimal(route.estimated_duration_seconds)))
            + weights.confidence * confidence
            + weights.steps * (ONE - norm_steps(Decimal(route.step_count)))
        )
        scored.append(ScoredRoute(route=route, score=score))

    scored.sort(
        key=lambda s: (-s.score, s.route.estimated_fees, s.route.step_count, s.route.route_id)
    )
    return scored


def select_route(
    routes: Sequence[Route],
    weights: Optional[ScoringWeights] = None,
) -> RouteSelection:
    """Pick the best route.

    Only executable routes compete when any exist. If every candidate is an
    estimate-only placeholder the best one is returned with
    ``awaiting_manual_route`` set.

    Raises:
        NoExecutableRoute: no candidates at all
    """
    if not routes:
        raise NoExecutableRoute("No candidate routes to select from")

    weights = weights or ScoringWeights.from_settings()
    executable = [r for r in routes if r.is_executable]
    pool = executable or list(routes)
    ranked = score_routes(pool, weights)
    best = ranked[0]

    return RouteSelection(
        route=best.route,
        score=best.score,
        awaiting_manual_route=not executable,
        ranked=tuple(ranked),
    )
