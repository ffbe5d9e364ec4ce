"""LI.FI bridge/DEX aggregator integration.

Quotes multi-step routes (swap, bridge, swap+bridge) across EVM chains and
polls transfer status.
API docs: https://docs.li.fi/li.fi-api/li.fi-api
"""

import logging
from decimal import Decimal
from typing import Awaitable, Callable, Optional

import httpx

from escrowbridge.chains import (
    get_network,
    get_network_by_chain_id,
    require_network,
    resolve_asset,
)
from escrowbridge.errors import (
    ExecutionRejected,
    NoRouteFound,
    ProviderUnavailable,
    UnsupportedAssetPair,
)
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

logger = logging.getLogger(__name__)

LIFI_API_URL = "https://li.quest/v1"

ALLOWED_BRIDGES = ["across", "connext", "hop", "stargate", "polygon", "arbitrum", "wormhole", "allbridge"]
ALLOWED_EXCHANGES = ["1inch", "uniswap", "0x", "paraswap", "kyberswap"]

# Token decimals that differ from 18
TOKEN_DECIMALS: dict[str, int] = {
    "USDC": 6,
    "USDT": 6,
}
# Per-network overrides (BSC pegged stables use 18)
NETWORK_TOKEN_DECIMALS: dict[tuple[str, str], int] = {
    ("bsc", "USDC"): 18,
    ("bsc", "USDT"): 18,
}

DEFAULT_STEP_DURATION = 600
DEFAULT_ROUTE_DURATION = 1800

# Failure substatuses worth retrying with the same route
RETRYABLE_SUBSTATUSES = {
    "SLIPPAGE_EXCEEDED",
    "INSUFFICIENT_LIQUIDITY",
    "BRIDGE_NOT_AVAILABLE",
    "CHAIN_NOT_AVAILABLE",
    "REFUNDED",
    "TIMEOUT",
}

# Signs and broadcasts a transaction request, returning the source tx hash
TransactionSubmitter = Callable[[dict], Awaitable[str]]


def token_decimals(network: str, symbol: str) -> int:
    """Decimals used for base-unit conversion."""
    if (network, symbol) in NETWORK_TOKEN_DECIMALS:
        return NETWORK_TOKEN_DECIMALS[(network, symbol)]
    return TOKEN_DECIMALS.get(symbol, 18)


def to_base_units(amount: Decimal, decimals: int) -> str:
    """Convert a human-readable amount to an integer string in base units."""
    return str(int(amount.scaleb(decimals)))


def _step_network(chain_id: Optional[int], default: str) -> str:
    """Network a LI.FI step runs on; intermediate hops may leave the request's pair."""
    if not chain_id:
        return default
    config = get_network_by_chain_id(int(chain_id))
    return config.name if config else default


class LiFiProvider(RouteProvider):
    """LI.FI route provider.

    Covers the EVM networks in the registry. Execution needs a transaction
    submitter (the signing collaborator); without one routes can be quoted
    but not started.
    """

    def __init__(
        self,
        api_url: str = LIFI_API_URL,
        api_key: Optional[str] = None,
        integrator: str = "escrowbridge",
        slippage: Decimal = Decimal("0.03"),
        timeout: float = 30.0,
        submitter: Optional[TransactionSubmitter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.integrator = integrator
        self.slippage = slippage
        self.timeout = timeout
        self.submitter = submitter
        self._transport = transport

    @property
    def name(self) -> str:
        return "lifi"

    def supports(self, source_network: str, destination_network: str) -> bool:
        src = get_network(source_network)
        dst = get_network(destination_network)
        return bool(src and dst and src.is_evm and dst.is_evm)

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["x-lifi-api-key"] = self.api_key
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            headers=self._headers(),
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        """Send a request, mapping failures onto the routing error taxonomy."""
        url = f"{self.api_url}{path}"
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderUnavailable(f"LI.FI timeout on {path}: {e}") from e
        except httpx.TransportError as e:
            raise ProviderUnavailable(f"LI.FI unreachable on {path}: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderUnavailable(f"LI.FI API error {response.status_code} on {path}")
        if response.status_code >= 400:
            try:
                message = response.json().get("message", response.text)
            except ValueError:
                message = response.text
            raise NoRouteFound(f"LI.FI rejected request ({response.status_code}): {message}")

        try:
            return response.json()
        except ValueError as e:
            raise ProviderUnavailable(f"LI.FI returned invalid JSON on {path}") from e

    # ======================
    # Quoting
    # ======================

    async def find_routes(self, request: RouteRequest) -> list[LiveRoute]:
        src = require_network(request.source_network)
        dst = require_network(request.destination_network)

        if not src.supports_asset(request.asset):
            raise UnsupportedAssetPair(f"{request.asset} is not available on {src.name}")
        if request.destination_asset and not dst.supports_asset(request.destination_asset):
            raise UnsupportedAssetPair(
                f"{request.destination_asset} is not available on {dst.name}"
            )

        from_symbol = resolve_asset(src.name, request.asset)
        to_symbol = resolve_asset(dst.name, request.destination_asset or request.asset)
        if not dst.supports_asset(to_symbol):
            to_symbol = dst.native_asset

        body = {
            "fromChainId": src.chain_id,
            "toChainId": dst.chain_id,
            "fromTokenAddress": src.token_address(from_symbol),
            "toTokenAddress": dst.token_address(to_symbol),
            "fromAmount": to_base_units(request.amount, token_decimals(src.name, from_symbol)),
            "fromAddress": request.from_address,
            "toAddress": request.to_address,
            "options": {
                "order": "RECOMMENDED",
                "slippage": float(self.slippage),
                "integrator": self.integrator,
                "bridges": {"allow": ALLOWED_BRIDGES},
                "exchanges": {"allow": ALLOWED_EXCHANGES},
            },
        }

        data = await self._request("POST", "/advanced/routes", json=body)
        raw_routes = data.get("routes") or []
        if not raw_routes:
            raise NoRouteFound(f"LI.FI has no routes {src.name} -> {dst.name} for {from_symbol}")

        routes = []
        for raw in raw_routes:
            try:
                routes.append(self._parse_route(raw, request, from_symbol, to_symbol))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed LI.FI route: {e}")

        if not routes:
            raise NoRouteFound("LI.FI returned no usable routes")
        return routes

    def _parse_route(
        self, raw: dict, request: RouteRequest, from_symbol: str, to_symbol: str
    ) -> LiveRoute:
        steps = []
        total_duration = 0
        total_fees = Decimal("0")

        for raw_step in raw.get("steps", []):
            estimate = raw_step.get("estimate") or {}
            duration = int(estimate.get("executionDuration") or DEFAULT_STEP_DURATION)
            fee = Decimal("0")
            for cost in (estimate.get("feeCosts") or []) + (estimate.get("gasCosts") or []):
                fee += Decimal(str(cost.get("amountUSD") or "0"))

            tool = raw_step.get("tool") or (raw_step.get("toolDetails") or {}).get("name", "unknown")
            action = raw_step.get("action") or {}
            kind = StepKind.SWAP if raw_step.get("type") == "swap" else StepKind.BRIDGE
            if action.get("fromChainId") and action.get("fromChainId") == action.get("toChainId"):
                kind = StepKind.SWAP

            steps.append(
                RouteStep(
                    kind=kind,
                    provider=tool,
                    from_network=_step_network(
                        action.get("fromChainId"), request.source_network
                    ),
                    to_network=_step_network(
                        action.get("toChainId"), request.destination_network
                    ),
                    from_asset=(action.get("fromToken") or {}).get("symbol", from_symbol),
                    to_asset=(action.get("toToken") or {}).get("symbol", to_symbol),
                    estimated_duration_seconds=duration,
                    estimated_fee=fee,
                )
            )
            total_duration += duration
            total_fees += fee

        if not steps:
            total_duration = DEFAULT_ROUTE_DURATION
        steps = tuple(steps)

        return LiveRoute(
            route_id=str(raw["id"]),
            provider=self.name,
            source_network=request.source_network,
            destination_network=request.destination_network,
            source_asset=from_symbol,
            destination_asset=to_symbol,
            amount=request.amount,
            steps=steps,
            estimated_fees=total_fees,
            estimated_duration_seconds=total_duration,
            confidence_score=estimate_confidence(steps, total_duration, total_fees),
            from_address=request.from_address,
            to_address=request.to_address,
            provider_payload={"route": raw},
        )

    # ======================
    # Execution
    # ======================

    async def start_execution(self, route: LiveRoute) -> ProviderSubmission:
        """Fetch the first step's transaction and hand it to the submitter."""
        if self.submitter is None:
            raise ExecutionRejected("LI.FI execution requires a transaction submitter")

        raw_route = route.provider_payload.get("route") or {}
        raw_steps = raw_route.get("steps") or []
        if not raw_steps:
            raise ExecutionRejected(f"Route {route.route_id} has no executable steps")

        step = await self._request("POST", "/advanced/stepTransaction", json=raw_steps[0])
        tx_request = step.get("transactionRequest")
        if not tx_request:
            raise ProviderUnavailable("LI.FI did not return a transaction request")

        tx_hash = await self.submitter(tx_request)
        logger.info(f"LI.FI route {route.route_id} submitted: {tx_hash}")
        return ProviderSubmission(handle=tx_hash, source_tx_hash=tx_hash)

    async def get_status(self, handle: str, route: LiveRoute) -> ProviderStatusReport:
        params = {"txHash": handle}
        bridge = next((s.provider for s in route.steps if s.kind == StepKind.BRIDGE), None)
        if bridge:
            params["bridge"] = bridge
        src = get_network(route.source_network)
        dst = get_network(route.destination_network)
        if src and src.chain_id:
            params["fromChain"] = src.chain_id
        if dst and dst.chain_id:
            params["toChain"] = dst.chain_id

        data = await self._request("GET", "/status", params=params)
        return self._parse_status(data)

    @staticmethod
    def _parse_status(data: dict) -> ProviderStatusReport:
        raw_status = str(data.get("status", "NOT_FOUND")).upper()
        substatus = str(data.get("substatus") or "")
        message = str(data.get("substatusMessage") or "")
        sending = data.get("sending") or {}
        receiving = data.get("receiving") or {}

        if raw_status == "DONE" and substatus in ("PARTIAL", "REFUNDED"):
            # Funds returned or only partially delivered
            status = ProviderStatus.FAILED
        elif raw_status == "DONE":
            status = ProviderStatus.DONE
        elif raw_status in ("FAILED", "INVALID"):
            status = ProviderStatus.FAILED
        elif raw_status == "NOT_FOUND":
            status = ProviderStatus.NOT_FOUND
        else:
            status = ProviderStatus.PENDING

        return ProviderStatusReport(
            status=status,
            substatus=substatus,
            message=message,
            retryable=status != ProviderStatus.FAILED or substatus in RETRYABLE_SUBSTATUSES,
            source_tx_hash=sending.get("txHash"),
            destination_tx_hash=receiving.get("txHash"),
        )
