"""Deal lifecycle endpoints."""

from decimal import Decimal, InvalidOperation
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field, field_validator

from escrowbridge.ledger.models import ConditionType, DealStatus
from escrowbridge.services.deal_machine import ConditionSpec, PartyInfo, execution_to_dict
from escrowbridge.services.factory import EscrowServices
from escrowbridge.services.scheduler import run_scheduler_sweep

router = APIRouter()


def get_services(request: Request) -> EscrowServices:
    return request.app.state.services


def _validate_amount(v: str) -> str:
    try:
        amount = Decimal(v)
    except InvalidOperation:
        raise ValueError(f"Invalid amount format: {v}")
    if not amount.is_finite() or amount <= 0:
        raise ValueError("Amount must be positive")
    return str(amount)


class PartyPayload(BaseModel):
    """One side of a deal."""

    ref: str = Field(..., min_length=1, max_length=255, description="User reference")
    network: str = Field(..., min_length=2, max_length=30)
    address: str = Field(..., min_length=10, max_length=255)


class ConditionPayload(BaseModel):
    description: str = Field(..., min_length=1)
    type: str = Field(default=ConditionType.CUSTOM.value)
    key: Optional[str] = Field(None, max_length=100)

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        value = v.upper().strip()
        allowed = {t.value for t in ConditionType if t != ConditionType.CROSS_CHAIN}
        if value not in allowed:
            raise ValueError(f"Unknown condition type: {v}")
        return value


class CreateDealRequest(BaseModel):
    """Request to create a deal."""

    buyer: PartyPayload
    seller: PartyPayload
    amount: str = Field(..., description="Amount as a decimal string")
    asset: Optional[str] = Field(None, max_length=20, description="Asset symbol (omit for native)")
    payout_asset: Optional[str] = Field(None, max_length=20)
    conditions: list[ConditionPayload] = Field(default_factory=list)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: str) -> str:
        return _validate_amount(v)


class DepositRequest(BaseModel):
    proof: str = Field(..., min_length=1, max_length=255, description="Ledger deposit reference")
    amount: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Optional[str]) -> Optional[str]:
        return _validate_amount(v) if v is not None else None


class FulfillRequest(BaseModel):
    fulfilled_by: Optional[str] = None


class DisputeRequest(BaseModel):
    reason: str = ""
    raised_by: Optional[str] = None


class ResolveRequest(BaseModel):
    outcome: str = Field(..., description="release or refund")


class CancelRequest(BaseModel):
    reason: str = ""


class AmendAmountRequest(BaseModel):
    amount: str

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: str) -> str:
        return _validate_amount(v)


async def _view(services: EscrowServices, deal_id: str) -> dict:
    view = await services.deals.get_deal_status(deal_id)
    return view.to_dict()


@router.post("/deals", status_code=201)
async def create_deal(
    payload: CreateDealRequest, services: EscrowServices = Depends(get_services)
):
    """Create a deal awaiting the counterparty."""
    deal = await services.deals.create_deal(
        buyer=PartyInfo(payload.buyer.ref, payload.buyer.network, payload.buyer.address),
        seller=PartyInfo(payload.seller.ref, payload.seller.network, payload.seller.address),
        amount=Decimal(payload.amount),
        asset=payload.asset,
        conditions=[
            ConditionSpec(description=c.description, condition_type=c.type, key=c.key)
            for c in payload.conditions
        ],
        payout_asset=payload.payout_asset,
    )
    return await _view(services, deal.id)


@router.get("/deals")
async def list_deals(
    status: Optional[str] = None,
    party: Optional[str] = None,
    limit: int = 100,
    services: EscrowServices = Depends(get_services),
):
    """List deals, newest first."""
    deal_status = None
    if status is not None:
        try:
            deal_status = DealStatus(status.upper())
        except ValueError:
            raise HTTPException(status_code=422, detail=f"Unknown status: {status}")

    deals = await services.deals.list_deals(deal_status, party, min(max(limit, 1), 500))
    return {
        "deals": [
            {
                "deal_id": d.id,
                "status": d.status,
                "amount": str(d.amount),
                "asset": d.asset,
                "buyer_ref": d.buyer_ref,
                "seller_ref": d.seller_ref,
                "transaction_type": d.transaction_type,
                "created_at": d.created_at.isoformat() if d.created_at else None,
            }
            for d in deals
        ]
    }


@router.get("/deals/{deal_id}")
async def get_deal(deal_id: str, services: EscrowServices = Depends(get_services)):
    """Deal status with progress, route, execution and timeline."""
    return await _view(services, deal_id)


@router.post("/deals/{deal_id}/accept")
async def accept_deal(deal_id: str, services: EscrowServices = Depends(get_services)):
    await services.deals.accept_deal(deal_id)
    return await _view(services, deal_id)


@router.post("/deals/{deal_id}/deposit")
async def record_deposit(
    deal_id: str, payload: DepositRequest, services: EscrowServices = Depends(get_services)
):
    """Record the escrow ledger's deposit confirmation."""
    await services.deals.record_deposit(
        deal_id,
        payload.proof,
        amount=Decimal(payload.amount) if payload.amount is not None else None,
    )
    return await _view(services, deal_id)


@router.post("/deals/{deal_id}/conditions/{condition_id}/fulfill")
async def fulfill_condition(
    deal_id: str,
    condition_id: str,
    payload: Optional[FulfillRequest] = None,
    services: EscrowServices = Depends(get_services),
):
    await services.deals.fulfill_condition(
        deal_id, condition_id, fulfilled_by=payload.fulfilled_by if payload else None
    )
    return await _view(services, deal_id)


@router.post("/deals/{deal_id}/approval/start")
async def start_approval(deal_id: str, services: EscrowServices = Depends(get_services)):
    await services.deals.start_approval(deal_id)
    return await _view(services, deal_id)


@router.post("/deals/{deal_id}/approval/confirm")
async def confirm_approval(deal_id: str, services: EscrowServices = Depends(get_services)):
    await services.deals.confirm_approval(deal_id)
    return await _view(services, deal_id)


@router.post("/deals/{deal_id}/dispute")
async def raise_dispute(
    deal_id: str, payload: DisputeRequest, services: EscrowServices = Depends(get_services)
):
    await services.deals.raise_dispute(deal_id, payload.reason, raised_by=payload.raised_by)
    return await _view(services, deal_id)


@router.post("/deals/{deal_id}/dispute/resolve")
async def resolve_dispute(
    deal_id: str, payload: ResolveRequest, services: EscrowServices = Depends(get_services)
):
    await services.deals.resolve_dispute(deal_id, payload.outcome)
    return await _view(services, deal_id)


@router.post("/deals/{deal_id}/cancel")
async def cancel_deal(
    deal_id: str, payload: CancelRequest, services: EscrowServices = Depends(get_services)
):
    await services.deals.cancel_deal(deal_id, payload.reason)
    return await _view(services, deal_id)


@router.patch("/deals/{deal_id}/amount")
async def amend_amount(
    deal_id: str, payload: AmendAmountRequest, services: EscrowServices = Depends(get_services)
):
    await services.deals.amend_amount(deal_id, Decimal(payload.amount))
    return await _view(services, deal_id)


@router.post("/deals/{deal_id}/route/reselect")
async def reselect_route(deal_id: str, services: EscrowServices = Depends(get_services)):
    """Pick a new route after a permanent failure or a placeholder-only selection."""
    await services.deals.reselect_route(deal_id)
    return await _view(services, deal_id)


@router.get("/deals/{deal_id}/executions")
async def list_deal_executions(deal_id: str, services: EscrowServices = Depends(get_services)):
    """Every execution attempt for the deal, failed ones included."""
    executions = await services.deals.get_deal_executions(deal_id)
    return {"deal_id": deal_id, "executions": [execution_to_dict(e) for e in executions]}


@router.get("/deals/{deal_id}/fees")
async def estimate_deal_fees(deal_id: str, services: EscrowServices = Depends(get_services)):
    estimate = await services.deals.estimate_fees(deal_id)
    return estimate.to_dict()


@router.post("/scheduler/sweep")
async def sweep(services: EscrowServices = Depends(get_services)):
    """Run one deadline/execution sweep (for an external cron trigger)."""
    report = await run_scheduler_sweep(services.deals, services.driver)
    return report.to_dict()
