"""Tests for the FastAPI endpoints."""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from conftest import BUYER_ADDRESS, SELLER_ADDRESS
from escrowbridge.api.app import create_app


@pytest.fixture
def test_app(services):
    """Application over the test services (lifespan does not run under ASGITransport)."""
    return create_app(services)


@pytest_asyncio.fixture
async def client(test_app):
    """Create async test client."""
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def deal_payload(**overrides) -> dict:
    payload = {
        "buyer": {"ref": "buyer-1", "network": "ethereum", "address": BUYER_ADDRESS},
        "seller": {"ref": "seller-1", "network": "ethereum", "address": SELLER_ADDRESS},
        "amount": "2.5",
        "conditions": [
            {"description": "Home inspection passed", "type": "inspection"},
            {"description": "Title documents delivered", "type": "DOCUMENTS"},
        ],
    }
    payload.update(overrides)
    return payload


async def create(client, **overrides) -> dict:
    response = await client.post("/api/v1/deals", json=deal_payload(**overrides))
    assert response.status_code == 201, response.text
    return response.json()


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    @pytest.mark.asyncio
    async def test_health_check(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "escrowbridge"

    @pytest.mark.asyncio
    async def test_detailed_health(self, client):
        response = await client.get("/health/detailed")

        assert response.status_code == 200
        data = response.json()
        assert data["providers"] == ["dry_run"]
        assert data["ledger"] == "dry_run"
        assert data["config"]["environment"] == "test"
        assert data["config"]["routing"]["lifi_api_key"] == "(not set)"


class TestNetworkEndpoints:
    """Tests for network registry and estimates."""

    @pytest.mark.asyncio
    async def test_list_networks(self, client):
        response = await client.get("/api/v1/networks")

        assert response.status_code == 200
        names = {n["name"] for n in response.json()["networks"]}
        assert {"ethereum", "polygon", "solana", "bitcoin"} <= names

    @pytest.mark.asyncio
    async def test_same_chain_estimate(self, client):
        response = await client.get(
            "/api/v1/estimate",
            params={
                "source": "ethereum",
                "destination": "ethereum",
                "amount": "1",
                "from_address": BUYER_ADDRESS,
                "to_address": SELLER_ADDRESS,
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert data["transaction_type"] == "same_chain"
        assert data["fallback_mode"] is False

    @pytest.mark.asyncio
    async def test_estimate_unknown_network(self, client):
        response = await client.get(
            "/api/v1/estimate",
            params={
                "source": "ethereum",
                "destination": "dogechain",
                "amount": "1",
                "from_address": BUYER_ADDRESS,
                "to_address": SELLER_ADDRESS,
            },
        )
        assert response.status_code == 422
        assert "polygon" in response.json()["detail"]


class TestDealEndpoints:
    """Tests for the deal lifecycle endpoints."""

    @pytest.mark.asyncio
    async def test_create_deal(self, client):
        data = await create(client)

        assert data["status"] == "AWAITING_OTHER_PARTY"
        assert data["amount"] == "2.5"
        assert [c["type"] for c in data["conditions"]] == ["INSPECTION", "DOCUMENTS"]
        assert data["next_action"] == "Waiting for the counterparty to accept"

    @pytest.mark.asyncio
    async def test_full_same_chain_flow(self, client):
        deal = await create(client)
        deal_id = deal["deal_id"]

        response = await client.post(f"/api/v1/deals/{deal_id}/accept")
        assert response.json()["status"] == "AWAITING_DEPOSIT"

        response = await client.post(
            f"/api/v1/deals/{deal_id}/deposit", json={"proof": "escrow-tx-1", "amount": "2.5"}
        )
        assert response.json()["status"] == "AWAITING_FULFILLMENT"

        for condition in deal["conditions"]:
            response = await client.post(
                f"/api/v1/deals/{deal_id}/conditions/{condition['id']}/fulfill",
                json={"fulfilled_by": "buyer-1"},
            )
            assert response.status_code == 200
        assert response.json()["status"] == "READY_FOR_APPROVAL"

        response = await client.post(f"/api/v1/deals/{deal_id}/approval/start")
        assert response.json()["status"] == "IN_APPROVAL"
        assert response.json()["approval_deadline"] is not None

        response = await client.post(f"/api/v1/deals/{deal_id}/approval/confirm")
        data = response.json()
        assert data["status"] == "COMPLETED"
        assert data["progress_percentage"] == 100

    @pytest.mark.asyncio
    async def test_dispute_and_refund(self, client):
        deal = await create(client, conditions=[])
        deal_id = deal["deal_id"]
        await client.post(f"/api/v1/deals/{deal_id}/accept")
        await client.post(f"/api/v1/deals/{deal_id}/deposit", json={"proof": "escrow-tx-1"})
        await client.post(f"/api/v1/deals/{deal_id}/approval/start")

        response = await client.post(
            f"/api/v1/deals/{deal_id}/dispute", json={"reason": "damaged", "raised_by": "buyer-1"}
        )
        assert response.json()["status"] == "IN_DISPUTE"

        response = await client.post(f"/api/v1/deals/{deal_id}/dispute", json={"reason": "again"})
        assert response.status_code == 409

        response = await client.post(
            f"/api/v1/deals/{deal_id}/dispute/resolve", json={"outcome": "refund"}
        )
        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"

    @pytest.mark.asyncio
    async def test_list_deals(self, client):
        await create(client)

        response = await client.get("/api/v1/deals", params={"status": "awaiting_other_party"})
        assert response.status_code == 200
        assert len(response.json()["deals"]) == 1

        response = await client.get("/api/v1/deals", params={"party": "nobody"})
        assert response.json()["deals"] == []

    @pytest.mark.asyncio
    async def test_list_unknown_status(self, client):
        response = await client.get("/api/v1/deals", params={"status": "SHIPPED"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_cancel_and_amend(self, client):
        deal_id = (await create(client))["deal_id"]

        response = await client.patch(f"/api/v1/deals/{deal_id}/amount", json={"amount": "3"})
        assert response.json()["amount"] == "3"

        response = await client.post(f"/api/v1/deals/{deal_id}/cancel", json={"reason": "no"})
        assert response.json()["status"] == "CANCELLED"

    @pytest.mark.asyncio
    async def test_cross_chain_fees(self, client):
        deal_id = (
            await create(
                client,
                seller={"ref": "seller-1", "network": "polygon", "address": SELLER_ADDRESS},
                asset="USDC",
                amount="1000",
                conditions=[],
            )
        )["deal_id"]

        response = await client.get(f"/api/v1/deals/{deal_id}/fees")

        assert response.status_code == 200
        data = response.json()
        assert data["transaction_type"] == "cross_chain_bridge"
        assert data["fallback_mode"] is False

    @pytest.mark.asyncio
    async def test_deal_executions(self, client):
        deal_id = (
            await create(
                client,
                seller={"ref": "seller-1", "network": "polygon", "address": SELLER_ADDRESS},
                asset="USDC",
                amount="1000",
                conditions=[],
            )
        )["deal_id"]
        await client.post(f"/api/v1/deals/{deal_id}/accept")

        response = await client.get(f"/api/v1/deals/{deal_id}/executions")

        assert response.status_code == 200
        executions = response.json()["executions"]
        assert len(executions) == 1
        assert executions[0]["side"] == "deposit"
        assert executions[0]["status"] == "IN_PROGRESS"
        assert [h["status"] for h in executions[0]["history"]] == ["STARTED", "IN_PROGRESS"]

        missing = await client.get("/api/v1/deals/deal_missing/executions")
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_scheduler_sweep(self, client):
        response = await client.post("/api/v1/scheduler/sweep")

        assert response.status_code == 200
        assert response.json()["errors"] == []


class TestErrorMapping:
    """Tests for domain error to HTTP status mapping."""

    @pytest.mark.asyncio
    async def test_missing_deal_is_404(self, client):
        response = await client.get("/api/v1/deals/deal_missing")

        assert response.status_code == 404
        assert response.json()["error"] == "DealNotFound"

    @pytest.mark.asyncio
    async def test_wrong_state_is_409(self, client):
        deal_id = (await create(client))["deal_id"]

        response = await client.post(
            f"/api/v1/deals/{deal_id}/deposit", json={"proof": "escrow-tx-1"}
        )

        assert response.status_code == 409
        data = response.json()
        assert data["error"] == "StateConflict"
        assert data["current"] == "AWAITING_OTHER_PARTY"
        assert data["requested"] == "record_deposit"

    @pytest.mark.asyncio
    async def test_amount_mismatch_is_422(self, client):
        deal_id = (await create(client))["deal_id"]
        await client.post(f"/api/v1/deals/{deal_id}/accept")

        response = await client.post(
            f"/api/v1/deals/{deal_id}/deposit", json={"proof": "escrow-tx-1", "amount": "2"}
        )

        assert response.status_code == 422
        assert response.json()["error"] == "ValidationError"

    @pytest.mark.asyncio
    async def test_unknown_network_is_422(self, client):
        response = await client.post(
            "/api/v1/deals",
            json=deal_payload(
                buyer={"ref": "buyer-1", "network": "dogechain", "address": BUYER_ADDRESS}
            ),
        )
        assert response.status_code == 422

    @pytest.mark.parametrize("amount", ["abc", "0", "-5"])
    @pytest.mark.asyncio
    async def test_invalid_amount_rejected(self, client, amount):
        response = await client.post("/api/v1/deals", json=deal_payload(amount=amount))
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_cross_chain_condition_type_rejected(self, client):
        response = await client.post(
            "/api/v1/deals",
            json=deal_payload(conditions=[{"description": "bridge ok", "type": "cross_chain"}]),
        )
        assert response.status_code == 422
