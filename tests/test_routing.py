"""Tests for route providers, the aggregator and fee estimates."""

import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from escrowbridge.chains import TransactionType
from escrowbridge.errors import (
    ExecutionRejected,
    NoRouteFound,
    ProviderUnavailable,
    UnsupportedAssetPair,
)
from escrowbridge.routing.base import (
    EstimateOnlyRoute,
    LiveRoute,
    ProviderStatus,
    Route,
    RouteAggregator,
    RouteRequest,
)
from escrowbridge.routing.dry_run import DryRunRouteProvider
from escrowbridge.routing.estimates import estimate_fees, estimate_static_fees
from escrowbridge.routing.lifi import LiFiProvider, to_base_units, token_decimals

FROM = "0x" + "1" * 40
TO = "0x" + "2" * 40


def request(source="ethereum", destination="polygon", asset="USDC", **kwargs):
    return RouteRequest(
        source_network=source,
        destination_network=destination,
        asset=asset,
        amount=Decimal("100"),
        from_address=FROM,
        to_address=TO,
        **kwargs,
    )


class SlowProvider(DryRunRouteProvider):
    async def find_routes(self, request):
        await asyncio.sleep(5)
        return []


class TestDryRunProvider:
    """Tests for the simulated provider."""

    @pytest.mark.asyncio
    async def test_bridge_routes_are_deterministic(self):
        provider = DryRunRouteProvider()
        first = await provider.find_routes(request())
        second = await provider.find_routes(request())

        assert [r.route_id for r in first] == [r.route_id for r in second]
        assert len(first) == 3
        assert all(isinstance(r, LiveRoute) for r in first)
        assert all(Decimal("0.3") <= r.confidence_score <= 1 for r in first)

    @pytest.mark.asyncio
    async def test_native_bridge_adds_no_swap_when_assets_match(self):
        provider = DryRunRouteProvider()
        routes = await provider.find_routes(request(destination="arbitrum", asset=None))
        assert all(r.step_count == 1 for r in routes)
        assert routes[0].destination_asset == "ETH"

    @pytest.mark.asyncio
    async def test_same_chain_swap(self):
        provider = DryRunRouteProvider()
        routes = await provider.find_routes(
            request(destination="ethereum", asset="USDC", destination_asset="ETH")
        )
        assert {r.steps[0].provider for r in routes} == {"uniswap", "1inch"}

    @pytest.mark.asyncio
    async def test_nothing_to_route(self):
        provider = DryRunRouteProvider()
        with pytest.raises(NoRouteFound):
            await provider.find_routes(request(destination="ethereum", asset="USDC"))

    @pytest.mark.asyncio
    async def test_unsupported_asset(self):
        provider = DryRunRouteProvider()
        with pytest.raises(UnsupportedAssetPair):
            await provider.find_routes(request(source="bitcoin", asset="USDC"))

    @pytest.mark.asyncio
    async def test_status_script(self):
        provider = DryRunRouteProvider(polls_to_complete=1)
        route = (await provider.find_routes(request()))[0]
        submission = await provider.start_execution(route)

        assert (await provider.get_status(submission.handle, route)).status == ProviderStatus.PENDING
        assert (await provider.get_status(submission.handle, route)).status == ProviderStatus.DONE


class TestAggregator:
    """Tests for RouteAggregator."""

    @pytest.mark.asyncio
    async def test_merges_providers(self):
        aggregator = RouteAggregator(
            [DryRunRouteProvider("sim_a"), DryRunRouteProvider("sim_b")], timeout_seconds=1
        )
        routes = await aggregator.find_routes("ethereum", "polygon", "USDC", Decimal("100"), FROM, TO)
        assert {r.provider for r in routes} == {"sim_a", "sim_b"}
        assert aggregator.get_provider("sim_b").name == "sim_b"
        assert aggregator.get_provider("missing") is None

    @pytest.mark.asyncio
    async def test_one_provider_failing_is_tolerated(self):
        broken = DryRunRouteProvider("broken")
        broken.find_error = ProviderUnavailable("down")
        aggregator = RouteAggregator([broken, DryRunRouteProvider("ok")], timeout_seconds=1)

        routes = await aggregator.find_routes("ethereum", "polygon", "USDC", Decimal("1"), FROM, TO)
        assert {r.provider for r in routes} == {"ok"}

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        aggregator = RouteAggregator([SlowProvider()], timeout_seconds=0.05)
        with pytest.raises(ProviderUnavailable):
            await aggregator.find_routes("ethereum", "polygon", "USDC", Decimal("1"), FROM, TO)

    @pytest.mark.asyncio
    async def test_no_route_is_permanent(self):
        provider = DryRunRouteProvider(bridges=[])
        aggregator = RouteAggregator([provider], timeout_seconds=1)
        with pytest.raises(NoRouteFound):
            await aggregator.find_routes("ethereum", "polygon", "USDC", Decimal("1"), FROM, TO)

    @pytest.mark.asyncio
    async def test_unavailable_falls_back_to_estimate(self):
        provider = DryRunRouteProvider()
        provider.find_error = ProviderUnavailable("503")
        aggregator = RouteAggregator([provider], timeout_seconds=1)

        routes = await aggregator.find_routes_or_estimate(
            "ethereum", "polygon", "USDC", Decimal("100"), FROM, TO
        )

        assert len(routes) == 1
        placeholder = routes[0]
        assert isinstance(placeholder, EstimateOnlyRoute)
        assert placeholder.confidence_score == 0
        assert not placeholder.is_executable
        # Survives storage as the same variant
        assert isinstance(Route.from_dict(placeholder.to_dict()), EstimateOnlyRoute)

    @pytest.mark.asyncio
    async def test_no_route_is_not_masked_by_estimate(self):
        aggregator = RouteAggregator([DryRunRouteProvider(bridges=[])], timeout_seconds=1)
        with pytest.raises(NoRouteFound):
            await aggregator.find_routes_or_estimate(
                "ethereum", "polygon", "USDC", Decimal("100"), FROM, TO
            )


class TestFeeEstimates:
    """Tests for static and live fee estimation."""

    def test_static_cross_chain(self):
        estimate = estimate_static_fees("ethereum", "polygon", "USDC")
        assert estimate.transaction_type == TransactionType.CROSS_CHAIN_BRIDGE
        assert estimate.bridge_fee == Decimal("5.00")
        assert estimate.total_fee == Decimal("5.00") + Decimal("0.05") + Decimal("5.00")
        assert estimate.fallback_mode

    def test_static_same_chain(self):
        estimate = estimate_static_fees("polygon", "polygon", None)
        assert estimate.transaction_type == TransactionType.SAME_CHAIN
        assert estimate.bridge_fee == 0
        assert estimate.estimated_time == "2-5 minutes"

    @pytest.mark.asyncio
    async def test_live_estimate_uses_cheapest_route(self):
        aggregator = RouteAggregator([DryRunRouteProvider()], timeout_seconds=1)
        estimate = await estimate_fees(aggregator, "ethereum", "polygon", "USDC", Decimal("100"), FROM, TO)
        assert not estimate.fallback_mode
        # hop is the cheapest simulated bridge
        assert estimate.bridge_fee == Decimal("3.20") + Decimal("5.00")

    @pytest.mark.asyncio
    async def test_estimate_falls_back_when_unavailable(self):
        provider = DryRunRouteProvider()
        provider.find_error = ProviderUnavailable("down")
        aggregator = RouteAggregator([provider], timeout_seconds=1)

        estimate = await estimate_fees(aggregator, "ethereum", "polygon", "USDC", Decimal("100"), FROM, TO)
        assert estimate.fallback_mode


# ======================
# LI.FI over a mock transport
# ======================

LIFI_ROUTE = {
    "id": "lifi-route-1",
    "steps": [
        {
            "type": "cross",
            "tool": "stargate",
            "action": {
                "fromChainId": 1,
                "toChainId": 137,
                "fromToken": {"symbol": "USDC"},
                "toToken": {"symbol": "USDC"},
            },
            "estimate": {
                "executionDuration": 420,
                "feeCosts": [{"amountUSD": "1.25"}],
                "gasCosts": [{"amountUSD": "3.75"}],
            },
        }
    ],
}


def lifi_provider(handler, submitter=None):
    return LiFiProvider(
        api_url="https://lifi.test/v1",
        transport=httpx.MockTransport(handler),
        submitter=submitter,
        timeout=1.0,
    )


class TestLiFiProvider:
    """Tests for the LI.FI wire mapping."""

    def test_base_units(self):
        assert token_decimals("ethereum", "USDC") == 6
        assert token_decimals("bsc", "USDC") == 18
        assert to_base_units(Decimal("1.5"), 6) == "1500000"

    def test_supports_evm_only(self):
        provider = LiFiProvider()
        assert provider.supports("ethereum", "polygon")
        assert not provider.supports("ethereum", "solana")

    @pytest.mark.asyncio
    async def test_find_routes_parses_steps(self):
        seen = {}

        def handler(req: httpx.Request) -> httpx.Response:
            seen["path"] = req.url.path
            seen["body"] = json.loads(req.content)
            return httpx.Response(200, json={"routes": [LIFI_ROUTE]})

        routes = await lifi_provider(handler).find_routes(request())

        assert seen["path"] == "/v1/advanced/routes"
        assert seen["body"]["fromChainId"] == 1
        assert seen["body"]["toChainId"] == 137
        assert seen["body"]["fromAmount"] == "100000000"
        route = routes[0]
        assert route.route_id == "lifi-route-1"
        assert route.estimated_fees == Decimal("5.00")
        assert route.estimated_duration_seconds == 420
        assert route.steps[0].provider == "stargate"
        assert route.is_executable

    @pytest.mark.asyncio
    async def test_multi_hop_steps_keep_their_networks(self):
        hop = {
            "id": "lifi-route-2",
            "steps": [
                dict(LIFI_ROUTE["steps"][0], action={"fromChainId": 1, "toChainId": 42161}),
                {
                    "type": "cross",
                    "tool": "across",
                    "action": {"fromChainId": 42161, "toChainId": 137},
                    "estimate": {"executionDuration": 120},
                },
            ],
        }

        def handler(req):
            return httpx.Response(200, json={"routes": [hop]})

        route = (await lifi_provider(handler).find_routes(request()))[0]

        assert [(s.from_network, s.to_network) for s in route.steps] == [
            ("ethereum", "arbitrum"),
            ("arbitrum", "polygon"),
        ]
        assert route.providers_used == ["stargate", "across"]
        assert route.to_dict()["providers_used"] == ["stargate", "across"]

    @pytest.mark.asyncio
    async def test_server_errors_are_transient(self):
        def handler(req):
            return httpx.Response(503, json={"message": "busy"})

        with pytest.raises(ProviderUnavailable):
            await lifi_provider(handler).find_routes(request())

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self):
        def handler(req):
            return httpx.Response(429)

        with pytest.raises(ProviderUnavailable):
            await lifi_provider(handler).find_routes(request())

    @pytest.mark.asyncio
    async def test_client_errors_are_permanent(self):
        def handler(req):
            return httpx.Response(400, json={"message": "No available quotes"})

        with pytest.raises(NoRouteFound):
            await lifi_provider(handler).find_routes(request())

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self):
        def handler(req):
            raise httpx.ConnectError("refused", request=req)

        with pytest.raises(ProviderUnavailable):
            await lifi_provider(handler).find_routes(request())

    @pytest.mark.asyncio
    async def test_empty_routes(self):
        def handler(req):
            return httpx.Response(200, json={"routes": []})

        with pytest.raises(NoRouteFound):
            await lifi_provider(handler).find_routes(request())

    @pytest.mark.asyncio
    async def test_start_requires_submitter(self):
        def handler(req):
            return httpx.Response(200, json={"routes": [LIFI_ROUTE]})

        provider = lifi_provider(handler)
        route = (await provider.find_routes(request()))[0]
        with pytest.raises(ExecutionRejected):
            await provider.start_execution(route)

    @pytest.mark.asyncio
    async def test_start_submits_step_transaction(self):
        def handler(req):
            if req.url.path.endswith("/advanced/routes"):
                return httpx.Response(200, json={"routes": [LIFI_ROUTE]})
            return httpx.Response(200, json={"transactionRequest": {"to": TO, "data": "0x"}})

        submitted = []

        async def submitter(tx_request):
            submitted.append(tx_request)
            return "0xabc"

        provider = lifi_provider(handler, submitter=submitter)
        route = (await provider.find_routes(request()))[0]
        submission = await provider.start_execution(route)

        assert submission.handle == "0xabc"
        assert submitted == [{"to": TO, "data": "0x"}]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload,status,retryable",
        [
            ({"status": "PENDING"}, ProviderStatus.PENDING, True),
            ({"status": "DONE", "substatus": "COMPLETED"}, ProviderStatus.DONE, True),
            ({"status": "DONE", "substatus": "REFUNDED"}, ProviderStatus.FAILED, True),
            ({"status": "FAILED", "substatus": "SLIPPAGE_EXCEEDED"}, ProviderStatus.FAILED, True),
            ({"status": "FAILED", "substatus": "UNKNOWN_ERROR"}, ProviderStatus.FAILED, False),
            ({"status": "NOT_FOUND"}, ProviderStatus.NOT_FOUND, True),
        ],
    )
    async def test_status_mapping(self, payload, status, retryable):
        def handler(req):
            if req.url.path.endswith("/status"):
                assert req.url.params["txHash"] == "0xabc"
                assert req.url.params["bridge"] == "stargate"
                return httpx.Response(200, json=payload)
            return httpx.Response(200, json={"routes": [LIFI_ROUTE]})

        provider = lifi_provider(handler)
        route = (await provider.find_routes(request()))[0]
        report = await provider.get_status("0xabc", route)

        assert report.status == status
        assert report.retryable == retryable
