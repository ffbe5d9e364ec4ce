"""Static fee/time estimates.

Used when the live route provider cannot be reached. Values are rough USD
figures for display only; routes built from them are never executed.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from escrowbridge.chains import (
    TransactionType,
    classify,
    escrow_asset_for,
    normalize_network,
    resolve_asset,
)
from escrowbridge.errors import ProviderUnavailable
from escrowbridge.routing.base import (
    EstimateOnlyRoute,
    RouteAggregator,
    RouteRequest,
    RouteStep,
    StepKind,
    new_route_id,
)

logger = logging.getLogger(__name__)

ESTIMATE_PROVIDER = "static_estimate"

# Typical network fee in USD for a single transfer
NETWORK_FEES_USD: dict[str, Decimal] = {
    "ethereum": Decimal("5.00"),
    "polygon": Decimal("0.05"),
    "bsc": Decimal("0.20"),
    "arbitrum": Decimal("0.30"),
    "optimism": Decimal("0.25"),
    "avalanche": Decimal("0.40"),
    "solana": Decimal("0.01"),
    "bitcoin": Decimal("3.00"),
}
DEFAULT_NETWORK_FEE_USD = Decimal("2.00")

# Bridge fees by asset class
BRIDGE_FEE_NATIVE_USD = Decimal("8.00")
BRIDGE_FEE_COMMON_TOKEN_USD = Decimal("5.00")
BRIDGE_FEE_OTHER_USD = Decimal("10.00")
COMMON_BRIDGE_TOKENS = {"USDC", "USDT", "WETH"}

SWAP_FEE_USD = Decimal("2.00")

# (seconds, display range)
DURATIONS: dict[TransactionType, tuple[int, str]] = {
    TransactionType.SAME_CHAIN: (300, "2-5 minutes"),
    TransactionType.SAME_CHAIN_SWAP: (300, "2-5 minutes"),
    TransactionType.CROSS_CHAIN_BRIDGE: (1800, "15-45 minutes"),
    TransactionType.CROSS_CHAIN_SWAP_BRIDGE: (2700, "20-60 minutes"),
}

SAME_CHAIN_CONFIDENCE = Decimal("0.95")
FALLBACK_CONFIDENCE = Decimal("0.80")


@dataclass
class FeeEstimate:
    """Fee and timing estimate for moving a deal's value."""

    transaction_type: TransactionType
    source_network_fee: Decimal
    destination_network_fee: Decimal
    bridge_fee: Decimal
    swap_fee: Decimal
    estimated_duration_seconds: int
    estimated_time: str
    confidence: Decimal
    fallback_mode: bool
    route_id: Optional[str] = None

    @property
    def total_fee(self) -> Decimal:
        return (
            self.source_network_fee
            + self.destination_network_fee
            + self.bridge_fee
            + self.swap_fee
        )

    def to_dict(self) -> dict:
        return {
            "transaction_type": self.transaction_type.value,
            "source_network_fee": str(self.source_network_fee),
            "destination_network_fee": str(self.destination_network_fee),
            "bridge_fee": str(self.bridge_fee),
            "swap_fee": str(self.swap_fee),
            "total_fee": str(self.total_fee),
            "estimated_duration_seconds": self.estimated_duration_seconds,
            "estimated_time": self.estimated_time,
            "confidence": str(self.confidence),
            "fallback_mode": self.fallback_mode,
            "route_id": self.route_id,
        }


def network_fee(network: str) -> Decimal:
    return NETWORK_FEES_USD.get(normalize_network(network), DEFAULT_NETWORK_FEE_USD)


def bridge_fee(symbol: str, native_symbol: str) -> Decimal:
    """Static bridge fee for an asset."""
    if symbol == native_symbol:
        return BRIDGE_FEE_NATIVE_USD
    if symbol in COMMON_BRIDGE_TOKENS:
        return BRIDGE_FEE_COMMON_TOKEN_USD
    return BRIDGE_FEE_OTHER_USD


def _plan_steps(request: RouteRequest, transaction_type: TransactionType) -> tuple[RouteStep, ...]:
    src = request.source_network
    dst = request.destination_network
    paid = resolve_asset(src, request.asset)
    if request.destination_asset:
        received = request.destination_asset.upper()
    else:
        received = resolve_asset(dst, escrow_asset_for(request.asset, src, dst))

    if transaction_type == TransactionType.SAME_CHAIN:
        return ()
    if transaction_type == TransactionType.SAME_CHAIN_SWAP:
        return (RouteStep(StepKind.SWAP, ESTIMATE_PROVIDER, src, dst, paid, received),)
    if transaction_type == TransactionType.CROSS_CHAIN_BRIDGE:
        return (RouteStep(StepKind.BRIDGE, ESTIMATE_PROVIDER, src, dst, paid, received),)
    return (
        RouteStep(StepKind.BRIDGE, ESTIMATE_PROVIDER, src, dst, paid, paid),
        RouteStep(StepKind.SWAP, ESTIMATE_PROVIDER, dst, dst, paid, received),
    )


def estimate_static_fees(
    source: str,
    destination: str,
    asset: Optional[str],
    destination_asset: Optional[str] = None,
    fallback_mode: bool = True,
) -> FeeEstimate:
    """Look up the static estimate for a transfer."""
    transaction_type = classify(source, destination, asset, destination_asset)
    src = resolve_asset(source, None)
    symbol = resolve_asset(source, asset)
    duration, display = DURATIONS[transaction_type]

    if not transaction_type.is_cross_chain:
        swap = SWAP_FEE_USD if transaction_type == TransactionType.SAME_CHAIN_SWAP else Decimal("0")
        return FeeEstimate(
            transaction_type=transaction_type,
            source_network_fee=network_fee(source),
            destination_network_fee=Decimal("0"),
            bridge_fee=Decimal("0"),
            swap_fee=swap,
            estimated_duration_seconds=duration,
            estimated_time=display,
            confidence=SAME_CHAIN_CONFIDENCE,
            fallback_mode=fallback_mode,
        )

    swap = SWAP_FEE_USD if transaction_type == TransactionType.CROSS_CHAIN_SWAP_BRIDGE else Decimal("0")
    return FeeEstimate(
        transaction_type=transaction_type,
        source_network_fee=network_fee(source),
        destination_network_fee=network_fee(destination),
        bridge_fee=bridge_fee(symbol, src),
        swap_fee=swap,
        estimated_duration_seconds=duration,
        estimated_time=display,
        confidence=FALLBACK_CONFIDENCE,
        fallback_mode=fallback_mode,
    )


def build_estimate_route(
    request: RouteRequest, transaction_type: TransactionType
) -> EstimateOnlyRoute:
    """Build the non-executable placeholder route for a request."""
    estimate = estimate_static_fees(
        request.source_network,
        request.destination_network,
        request.asset,
        request.destination_asset,
    )
    steps = _plan_steps(request, transaction_type)
    destination_asset = steps[-1].to_asset if steps else resolve_asset(
        request.destination_network, request.destination_asset or request.asset
    )
    return EstimateOnlyRoute(
        route_id=new_route_id(),
        provider=ESTIMATE_PROVIDER,
        source_network=request.source_network,
        destination_network=request.destination_network,
        source_asset=resolve_asset(request.source_network, request.asset),
        destination_asset=destination_asset,
        amount=request.amount,
        steps=steps,
        estimated_fees=estimate.total_fee,
        estimated_duration_seconds=estimate.estimated_duration_seconds,
        confidence_score=Decimal("0"),
        from_address=request.from_address,
        to_address=request.to_address,
    )


async def estimate_fees(
    aggregator: RouteAggregator,
    source: str,
    destination: str,
    asset: Optional[str],
    amount: Decimal,
    from_address: str,
    to_address: str,
    destination_asset: Optional[str] = None,
) -> FeeEstimate:
    """Estimate fees for a transfer, live when possible.

    Same-chain transfers without a swap never hit the provider. Otherwise
    the cheapest live route is used; if the provider is unavailable the
    static table is returned with ``fallback_mode`` set.
    """
    transaction_type = classify(source, destination, asset, destination_asset)
    if transaction_type == TransactionType.SAME_CHAIN:
        return estimate_static_fees(source, destination, asset, fallback_mode=False)

    try:
        routes = await aggregator.find_routes(
            source,
            destination,
            asset,
            amount,
            from_address,
            to_address,
            destination_asset=destination_asset,
        )
    except ProviderUnavailable as e:
        logger.warning(f"Fee estimation falling back to static table: {e}")
        return estimate_static_fees(source, destination, asset, destination_asset)

    cheapest = min(routes, key=lambda r: (r.estimated_fees, r.step_count, r.route_id))
    bridge_total = sum(
        (s.estimated_fee for s in cheapest.steps if s.kind == StepKind.BRIDGE), Decimal("0")
    )
    swap_total = sum(
        (s.estimated_fee for s in cheapest.steps if s.kind == StepKind.SWAP), Decimal("0")
    )
    network_total = cheapest.estimated_fees - bridge_total - swap_total
    minutes = max(1, cheapest.estimated_duration_seconds // 60)
    return FeeEstimate(
        transaction_type=transaction_type,
        source_network_fee=max(network_total, Decimal("0")),
        destination_network_fee=Decimal("0"),
        bridge_fee=bridge_total,
        swap_fee=swap_total,
        estimated_duration_seconds=cheapest.estimated_duration_seconds,
        estimated_time=f"~{minutes} minutes",
        confidence=cheapest.confidence_score,
        fallback_mode=False,
        route_id=cheapest.route_id,
    )
