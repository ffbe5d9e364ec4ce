"""Abstract routing interface for bridge/swap aggregators.

A route is either a ``LiveRoute`` (returned by a provider and executable)
or an ``EstimateOnlyRoute`` (built from the static estimate table when no
provider answered). Downstream code checks the type, never a flag, so an
estimate can't be executed by accident.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Optional

from escrowbridge.chains import classify, normalize_network
from escrowbridge.errors import NoRouteFound, ProviderUnavailable

logger = logging.getLogger(__name__)


class StepKind(str, Enum):
    """Kind of a single route step."""

    SWAP = "swap"
    BRIDGE = "bridge"


@dataclass(frozen=True)
class RouteStep:
    """A single swap or bridge hop."""

    kind: StepKind
    provider: str  # e.g., "stargate", "uniswap"
    from_network: str
    to_network: str
    from_asset: str
    to_asset: str
    estimated_duration_seconds: int = 0
    estimated_fee: Decimal = Decimal("0")

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "provider": self.provider,
            "from_network": self.from_network,
            "to_network": self.to_network,
            "from_asset": self.from_asset,
            "to_asset": self.to_asset,
            "estimated_duration_seconds": self.estimated_duration_seconds,
            "estimated_fee": str(self.estimated_fee),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RouteStep":
        return cls(
            kind=StepKind(data["kind"]),
            provider=data["provider"],
            from_network=data["from_network"],
            to_network=data["to_network"],
            from_asset=data["from_asset"],
            to_asset=data["to_asset"],
            estimated_duration_seconds=int(data.get("estimated_duration_seconds", 0)),
            estimated_fee=Decimal(data.get("estimated_fee", "0")),
        )


@dataclass(frozen=True)
class Route:
    """A candidate execution plan. Immutable once returned."""

    route_id: str
    provider: str
    source_network: str
    destination_network: str
    source_asset: str
    destination_asset: str
    amount: Decimal
    steps: tuple[RouteStep, ...]
    estimated_fees: Decimal  # USD
    estimated_duration_seconds: int
    confidence_score: Decimal  # 0..1
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    # Opaque provider data needed to execute (e.g., the raw aggregator route)
    provider_payload: dict = field(default_factory=dict, compare=False)

    kind: ClassVar[str] = "route"
    is_executable: ClassVar[bool] = False

    @property
    def step_count(self) -> int:
        return len(self.steps)

    @property
    def providers_used(self) -> list[str]:
        """Distinct step providers in route order."""
        seen: list[str] = []
        for step in self.steps:
            if step.provider not in seen:
                seen.append(step.provider)
        return seen

    def to_dict(self) -> dict:
        """Convert to dictionary for storage."""
        return {
            "kind": self.kind,
            "route_id": self.route_id,
            "provider": self.provider,
            "source_network": self.source_network,
            "destination_network": self.destination_network,
            "source_asset": self.source_asset,
            "destination_asset": self.destination_asset,
            "amount": str(self.amount),
            "steps": [step.to_dict() for step in self.steps],
            "estimated_fees": str(self.estimated_fees),
            "estimated_duration_seconds": self.estimated_duration_seconds,
            "confidence_score": str(self.confidence_score),
            "from_address": self.from_address,
            "to_address": self.to_address,
            "provider_payload": self.provider_payload,
            "providers_used": self.providers_used,
        }

    @staticmethod
    def from_dict(data: dict) -> "Route":
        """Rebuild the right route variant from its stored form."""
        route_cls = EstimateOnlyRoute if data.get("kind") == EstimateOnlyRoute.kind else LiveRoute
        return route_cls(
            route_id=data["route_id"],
            provider=data["provider"],
            source_network=data["source_network"],
            destination_network=data["destination_network"],
            source_asset=data["source_asset"],
            destination_asset=data["destination_asset"],
            amount=Decimal(data["amount"]),
            steps=tuple(RouteStep.from_dict(s) for s in data.get("steps", [])),
            estimated_fees=Decimal(data["estimated_fees"]),
            estimated_duration_seconds=int(data["estimated_duration_seconds"]),
            confidence_score=Decimal(data["confidence_score"]),
            from_address=data.get("from_address"),
            to_address=data.get("to_address"),
            provider_payload=data.get("provider_payload") or {},
        )


@dataclass(frozen=True)
class LiveRoute(Route):
    """A route returned by a live provider. Executable."""

    kind: ClassVar[str] = "live"
    is_executable: ClassVar[bool] = True


@dataclass(frozen=True)
class EstimateOnlyRoute(Route):
    """Placeholder built from static estimates. Display only, never executed."""

    kind: ClassVar[str] = "estimate"
    is_executable: ClassVar[bool] = False

    def __post_init__(self):
        if self.confidence_score != 0:
            raise ValueError("Estimate-only routes must have confidence_score 0")


@dataclass(frozen=True)
class RouteRequest:
    """Parameters for a route lookup."""

    source_network: str
    destination_network: str
    asset: Optional[str]
    amount: Decimal
    from_address: str
    to_address: str
    destination_asset: Optional[str] = None
    deal_id: Optional[str] = None


class ProviderStatus(str, Enum):
    """Status reported by a provider for a submitted route."""

    PENDING = "PENDING"
    DONE = "DONE"
    FAILED = "FAILED"
    NOT_FOUND = "NOT_FOUND"


@dataclass
class ProviderSubmission:
    """Handle returned when a provider accepts a route for execution."""

    handle: str
    source_tx_hash: Optional[str] = None


@dataclass
class ProviderStatusReport:
    """A status answer from a provider poll."""

    status: ProviderStatus
    substatus: str = ""
    message: str = ""
    retryable: bool = True
    source_tx_hash: Optional[str] = None
    destination_tx_hash: Optional[str] = None

    def detail(self) -> str:
        parts = [p for p in (self.substatus, self.message) if p]
        return ": ".join(parts)


def new_route_id() -> str:
    return f"rt_{uuid.uuid4().hex[:16]}"


class RouteProvider(ABC):
    """Abstract base class for routing providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name identifier."""
        pass

    def supports(self, source_network: str, destination_network: str) -> bool:
        """Check if this provider can route between the networks."""
        return True

    @abstractmethod
    async def find_routes(self, request: RouteRequest) -> list[LiveRoute]:
        """
        Find candidate routes.

        Raises:
            ProviderUnavailable: provider unreachable, timed out or rate limited
            NoRouteFound: provider answered with no usable route
        """
        pass

    @abstractmethod
    async def start_execution(self, route: LiveRoute) -> ProviderSubmission:
        """
        Submit the first step of a route for execution.

        Raises:
            ProviderUnavailable: transient submission failure
        """
        pass

    @abstractmethod
    async def get_status(self, handle: str, route: LiveRoute) -> ProviderStatusReport:
        """
        Query the current status of a submitted route.

        Raises:
            ProviderUnavailable: transient status-check failure
        """
        pass


class RouteAggregator:
    """Route Aggregator Adapter.

    Queries every provider that supports the network pair and merges the
    candidates. Never mutates state.
    """

    def __init__(
        self,
        providers: Optional[list[RouteProvider]] = None,
        timeout_seconds: float = 30.0,
    ):
        self.providers: list[RouteProvider] = providers or []
        self.timeout_seconds = timeout_seconds

    def add_provider(self, provider: RouteProvider) -> None:
        """Add a routing provider."""
        self.providers.append(provider)

    def get_provider(self, name: str) -> Optional[RouteProvider]:
        """Look up a provider by name (used to resume executions)."""
        for provider in self.providers:
            if provider.name == name:
                return provider
        return None

    async def find_routes(
        self,
        source: str,
        destination: str,
        asset: Optional[str],
        amount: Decimal,
        from_address: str,
        to_address: str,
        destination_asset: Optional[str] = None,
        deal_id: Optional[str] = None,
    ) -> list[LiveRoute]:
        """Get candidate routes from all providers that support the pair.

        Raises:
            ProviderUnavailable: every provider failed transiently
            NoRouteFound: no provider has a route
        """
        request = RouteRequest(
            source_network=normalize_network(source),
            destination_network=normalize_network(destination),
            asset=asset,
            amount=amount,
            from_address=from_address,
            to_address=to_address,
            destination_asset=destination_asset,
            deal_id=deal_id,
        )
        routes: list[LiveRoute] = []
        errors: list[str] = []
        unavailable = 0
        asked = 0

        logger.info(
            f"Finding routes: {amount} {asset or 'native'} "
            f"{request.source_network} -> {request.destination_network} (deal {deal_id})"
        )

        for provider in self.providers:
            if not provider.supports(request.source_network, request.destination_network):
                continue
            asked += 1
            try:
                found = await asyncio.wait_for(
                    provider.find_routes(request), timeout=self.timeout_seconds
                )
                logger.info(f"{provider.name} returned {len(found)} route(s)")
                routes.extend(found)
            except asyncio.TimeoutError:
                unavailable += 1
                errors.append(f"{provider.name}: timed out after {self.timeout_seconds}s")
            except ProviderUnavailable as e:
                unavailable += 1
                errors.append(f"{provider.name}: {e}")
            except NoRouteFound as e:
                errors.append(f"{provider.name}: {e}")

        if routes:
            return routes

        if errors:
            logger.warning(
                f"No routes for {request.source_network}->{request.destination_network}. "
                f"Errors: {'; '.join(errors)}"
            )
        if asked == 0:
            raise NoRouteFound(
                f"No providers support {request.source_network}->{request.destination_network}"
            )
        if unavailable:
            raise ProviderUnavailable("; ".join(errors))
        raise NoRouteFound("; ".join(errors) or "No routes returned")

    async def find_routes_or_estimate(
        self,
        source: str,
        destination: str,
        asset: Optional[str],
        amount: Decimal,
        from_address: str,
        to_address: str,
        destination_asset: Optional[str] = None,
        deal_id: Optional[str] = None,
    ) -> list[Route]:
        """Like find_routes, but degrades to an estimate-only placeholder.

        Deal creation never blocks on the external provider: when it is
        unavailable a single EstimateOnlyRoute is returned instead.
        NoRouteFound still propagates.
        """
        from escrowbridge.routing.estimates import build_estimate_route

        try:
            return list(
                await self.find_routes(
                    source,
                    destination,
                    asset,
                    amount,
                    from_address,
                    to_address,
                    destination_asset=destination_asset,
                    deal_id=deal_id,
                )
            )
        except ProviderUnavailable as e:
            logger.warning(f"Route provider unavailable, using static estimate: {e}")
            request = RouteRequest(
                source_network=normalize_network(source),
                destination_network=normalize_network(destination),
                asset=asset,
                amount=amount,
                from_address=from_address,
                to_address=to_address,
                destination_asset=destination_asset,
                deal_id=deal_id,
            )
            transaction_type = classify(source, destination, asset, destination_asset)
            return [build_estimate_route(request, transaction_type)]


# Services with a long track record; routes through them get a confidence bonus
REPUTABLE_SERVICES = {"across", "stargate", "hop", "connext", "uniswap", "1inch", "paraswap"}


def estimate_confidence(
    steps: tuple[RouteStep, ...],
    duration_seconds: int,
    fees_usd: Decimal,
) -> Decimal:
    """Heuristic route confidence in [0.30, 1.00].

    Starts at 100 and loses points for extra steps, long duration and high
    fees; gains points when a reputable bridge or DEX is involved.
    """
    confidence = 100
    confidence -= (max(len(steps), 1) - 1) * 10

    if duration_seconds > 3600:
        confidence -= 15
    elif duration_seconds > 1800:
        confidence -= 10

    if fees_usd > 50:
        confidence -= 15
    elif fees_usd > 20:
        confidence -= 10

    if any(step.provider.lower() in REPUTABLE_SERVICES for step in steps):
        confidence += 10

    confidence = max(min(confidence, 100), 30)
    return Decimal(confidence) / Decimal(100)
