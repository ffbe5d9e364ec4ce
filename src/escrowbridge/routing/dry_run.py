"""Dry-run route provider for simulated cross-chain transfers.

Deterministic: the same request always yields the same routes, and status
polls follow a script (defaulting to PENDING then DONE). Used in
development and tests.
"""

import logging
from collections import deque
from decimal import Decimal
from typing import Optional, Union

from escrowbridge.chains import escrow_asset_for, require_network, resolve_asset
from escrowbridge.errors import NoRouteFound, UnsupportedAssetPair
from escrowbridge.routing.base import (
    LiveRoute,
    ProviderStatus,
    ProviderStatusReport,
    ProviderSubmission,
    RouteProvider,
    RouteRequest,
    RouteStep,
    StepKind,
    estimate_confidence,
)
from escrowbridge.routing.estimates import network_fee

logger = logging.getLogger(__name__)

# (tool, fee USD, duration seconds)
SIMULATED_BRIDGES: list[tuple[str, Decimal, int]] = [
    ("stargate", Decimal("4.50"), 900),
    ("across", Decimal("6.00"), 300),
    ("hop", Decimal("3.20"), 1500),
]

SIMULATED_DEXES: list[tuple[str, Decimal, int]] = [
    ("uniswap", Decimal("1.80"), 60),
    ("1inch", Decimal("1.50"), 90),
]

StatusScriptItem = Union[ProviderStatusReport, Exception]


class DryRunRouteProvider(RouteProvider):
    """
    Simulated route provider.

    Scriptable for tests:
    - ``find_error``: raised by every find_routes call while set
    - ``start_errors``: raised by successive start_execution calls
    - ``status_script``: answers for successive status polls
    - ``polls_to_complete``: PENDING polls before DONE once the script is empty
    """

    def __init__(
        self,
        provider_name: str = "dry_run",
        polls_to_complete: int = 1,
        bridges: Optional[list[tuple[str, Decimal, int]]] = None,
        dexes: Optional[list[tuple[str, Decimal, int]]] = None,
    ):
        self._name = provider_name
        self.polls_to_complete = polls_to_complete
        self.bridges = bridges if bridges is not None else list(SIMULATED_BRIDGES)
        self.dexes = dexes if dexes is not None else list(SIMULATED_DEXES)

        self.find_error: Optional[Exception] = None
        self.start_errors: deque[Exception] = deque()
        self.status_script: deque[StatusScriptItem] = deque()

        self.find_calls = 0
        self.submissions: list[str] = []
        self._poll_counts: dict[str, int] = {}

    @property
    def name(self) -> str:
        return self._name

    # ======================
    # Scripting helpers
    # ======================

    def queue_status(self, *items: StatusScriptItem) -> None:
        self.status_script.extend(items)

    def queue_start_error(self, error: Exception) -> None:
        self.start_errors.append(error)

    # ======================
    # RouteProvider
    # ======================

    async def find_routes(self, request: RouteRequest) -> list[LiveRoute]:
        self.find_calls += 1
        if self.find_error is not None:
            raise self.find_error

        src = require_network(request.source_network)
        dst = require_network(request.destination_network)
        if not src.supports_asset(request.asset):
            raise UnsupportedAssetPair(f"{request.asset} is not available on {src.name}")

        from_symbol = resolve_asset(src.name, request.asset)
        if request.destination_asset:
            if not dst.supports_asset(request.destination_asset):
                raise UnsupportedAssetPair(
                    f"{request.destination_asset} is not available on {dst.name}"
                )
            to_symbol = request.destination_asset.upper()
        else:
            to_symbol = resolve_asset(dst.name, escrow_asset_for(request.asset, src.name, dst.name))

        if src.name == dst.name:
            if from_symbol == to_symbol:
                raise NoRouteFound("Nothing to route: same network and asset")
            if not self.dexes:
                raise NoRouteFound(f"No simulated DEX on {src.name}")
            return [
                self._build_route(
                    request,
                    from_symbol,
                    to_symbol,
                    [self._swap_step(dex, src.name, from_symbol, to_symbol)],
                )
                for dex in self.dexes
            ]

        if not self.bridges:
            raise NoRouteFound(f"No simulated bridge for {src.name} -> {dst.name}")

        # Bridges carry the paid asset when the destination has it
        bridged_symbol = from_symbol if dst.supports_asset(from_symbol) else dst.native_asset
        routes = []
        for tool, fee, duration in self.bridges:
            steps = [
                RouteStep(
                    kind=StepKind.BRIDGE,
                    provider=tool,
                    from_network=src.name,
                    to_network=dst.name,
                    from_asset=from_symbol,
                    to_asset=bridged_symbol,
                    estimated_duration_seconds=duration,
                    estimated_fee=fee + network_fee(src.name),
                )
            ]
            if bridged_symbol != to_symbol:
                steps.append(self._swap_step(self.dexes[0], dst.name, bridged_symbol, to_symbol))
            routes.append(self._build_route(request, from_symbol, to_symbol, steps))
        return routes

    def _swap_step(
        self, dex: tuple[str, Decimal, int], network: str, from_symbol: str, to_symbol: str
    ) -> RouteStep:
        tool, fee, duration = dex
        return RouteStep(
            kind=StepKind.SWAP,
            provider=tool,
            from_network=network,
            to_network=network,
            from_asset=from_symbol,
            to_asset=to_symbol,
            estimated_duration_seconds=duration,
            estimated_fee=fee,
        )

    def _build_route(
        self,
        request: RouteRequest,
        from_symbol: str,
        to_symbol: str,
        steps: list[RouteStep],
    ) -> LiveRoute:
        steps = tuple(steps)
        fees = sum((s.estimated_fee for s in steps), Decimal("0"))
        duration = sum(s.estimated_duration_seconds for s in steps)
        tools = "-".join(s.provider for s in steps)
        route_id = (
            f"dry_{tools}_{request.source_network}_{request.destination_network}_"
            f"{from_symbol}_{to_symbol}"
        ).lower()
        return LiveRoute(
            route_id=route_id,
            provider=self.name,
            source_network=request.source_network,
            destination_network=request.destination_network,
            source_asset=from_symbol,
            destination_asset=to_symbol,
            amount=request.amount,
            steps=steps,
            estimated_fees=fees,
            estimated_duration_seconds=duration,
            confidence_score=estimate_confidence(steps, duration, fees),
            from_address=request.from_address,
            to_address=request.to_address,
            provider_payload={"simulated": True},
        )

    async def start_execution(self, route: LiveRoute) -> ProviderSubmission:
        if self.start_errors:
            raise self.start_errors.popleft()

        handle = f"dryrun-{len(self.submissions) + 1}-{route.route_id}"
        self.submissions.append(handle)
        logger.info(f"[DRY RUN] Started route {route.route_id} as {handle}")
        return ProviderSubmission(handle=handle, source_tx_hash=f"0xdry{len(self.submissions):060x}")

    async def get_status(self, handle: str, route: LiveRoute) -> ProviderStatusReport:
        if self.status_script:
            item = self.status_script.popleft()
            if isinstance(item, Exception):
                raise item
            return item

        polls = self._poll_counts.get(handle, 0) + 1
        self._poll_counts[handle] = polls
        if polls > self.polls_to_complete:
            return ProviderStatusReport(
                status=ProviderStatus.DONE,
                substatus="COMPLETED",
                message="Simulated transfer completed",
            )
        return ProviderStatusReport(
            status=ProviderStatus.PENDING,
            substatus="WAIT_DESTINATION_TRANSACTION",
            message="Simulated transfer in progress",
        )
