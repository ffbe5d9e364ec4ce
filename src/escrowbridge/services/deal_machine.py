"""Deal state machine.

Owns the per-deal lifecycle:

    AWAITING_OTHER_PARTY
        -> AWAITING_DEPOSIT | AWAITING_CROSS_CHAIN_DEPOSIT
        -> AWAITING_FULFILLMENT -> READY_FOR_APPROVAL -> IN_APPROVAL
        -> AWAITING_RELEASE_EXECUTION | IN_DISPUTE
        -> COMPLETED | CANCELLED

Every write is compare-and-swap on the deal's version column. Interactive
transitions that lose a race surface StateConflict; bookkeeping driven by
execution updates re-reads and re-applies a bounded number of times.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import AsyncGenerator, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from escrowbridge.chains import (
    are_evm_compatible,
    classify,
    escrow_asset_for,
    get_network,
    is_valid_address,
    normalize_network,
    validate_token_for_network,
)
from escrowbridge.config import Settings, get_settings
from escrowbridge.errors import (
    ConditionNotFound,
    DealNotFound,
    ExecutionNotFound,
    NoRouteFound,
    StateConflict,
    ValidationError,
)
from escrowbridge.escrow.base import EscrowLedger
from escrowbridge.ledger.database import get_session_factory
from escrowbridge.ledger.models import (
    ConditionType,
    Deal,
    DealStatus,
    Execution,
    ExecutionSide,
    ExecutionStatus,
    new_id,
)
from escrowbridge.ledger.repository import EscrowRepository
from escrowbridge.routing.base import RouteAggregator
from escrowbridge.routing.estimates import FeeEstimate, estimate_fees
from escrowbridge.routing.selector import ScoringWeights, select_route
from escrowbridge.services.execution_driver import ExecutionDriver, ExecutionUpdate
from escrowbridge.utils.timeutil import ensure_utc, utcnow

logger = logging.getLogger(__name__)

NETWORK_CONDITION_KEY = "cross_chain_network_validation"
SYSTEM_ACTOR = "system"

# Bounded re-read/re-apply for system bookkeeping that loses a CAS race
BOOKKEEPING_ATTEMPTS = 3

# A cross-chain deal left without a deposit route this long is re-planned
ROUTE_PLANNING_GRACE = timedelta(minutes=5)

TRANSITIONS: dict[DealStatus, set[DealStatus]] = {
    DealStatus.AWAITING_OTHER_PARTY: {
        DealStatus.AWAITING_DEPOSIT,
        DealStatus.AWAITING_CROSS_CHAIN_DEPOSIT,
        DealStatus.CANCELLED,
    },
    DealStatus.AWAITING_DEPOSIT: {DealStatus.AWAITING_FULFILLMENT, DealStatus.CANCELLED},
    DealStatus.AWAITING_CROSS_CHAIN_DEPOSIT: {
        DealStatus.AWAITING_FULFILLMENT,
        DealStatus.CANCELLED,
    },
    DealStatus.AWAITING_FULFILLMENT: {DealStatus.READY_FOR_APPROVAL},
    DealStatus.READY_FOR_APPROVAL: {DealStatus.IN_APPROVAL},
    DealStatus.IN_APPROVAL: {DealStatus.AWAITING_RELEASE_EXECUTION, DealStatus.IN_DISPUTE},
    DealStatus.IN_DISPUTE: {DealStatus.AWAITING_RELEASE_EXECUTION, DealStatus.CANCELLED},
    DealStatus.AWAITING_RELEASE_EXECUTION: {DealStatus.COMPLETED},
    DealStatus.COMPLETED: set(),
    DealStatus.CANCELLED: set(),
}

# Funds are not yet locked in these states
PRE_DEPOSIT_STATES = {
    DealStatus.AWAITING_OTHER_PARTY,
    DealStatus.AWAITING_DEPOSIT,
    DealStatus.AWAITING_CROSS_CHAIN_DEPOSIT,
}

# Conditions may be fulfilled while the deal is in one of these
CONDITION_PHASES = {
    DealStatus.AWAITING_DEPOSIT,
    DealStatus.AWAITING_CROSS_CHAIN_DEPOSIT,
    DealStatus.AWAITING_FULFILLMENT,
}

PROGRESS: dict[DealStatus, int] = {
    DealStatus.AWAITING_OTHER_PARTY: 0,
    DealStatus.AWAITING_DEPOSIT: 10,
    DealStatus.AWAITING_CROSS_CHAIN_DEPOSIT: 10,
    DealStatus.AWAITING_FULFILLMENT: 30,
    DealStatus.READY_FOR_APPROVAL: 60,
    DealStatus.IN_APPROVAL: 70,
    DealStatus.IN_DISPUTE: 70,
    DealStatus.AWAITING_RELEASE_EXECUTION: 85,
    DealStatus.COMPLETED: 100,
    DealStatus.CANCELLED: 100,
}

DISPUTE_OUTCOMES = ("release", "refund")


# ======================
# Inputs and projections
# ======================


@dataclass(frozen=True)
class PartyInfo:
    """One side of a deal."""

    ref: str  # opaque user reference
    network: str
    address: str


@dataclass(frozen=True)
class ConditionSpec:
    """A condition supplied at deal creation."""

    description: str
    condition_type: str = ConditionType.CUSTOM.value
    key: Optional[str] = None


@dataclass
class DealStatusView:
    """Read-only projection of a deal for callers."""

    deal_id: str
    status: DealStatus
    version: int
    transaction_type: str
    is_cross_chain: bool
    buyer: PartyInfo
    seller: PartyInfo
    amount: Decimal
    asset: Optional[str]
    payout_asset: Optional[str]
    conditions: list[dict]
    selected_route: Optional[dict]
    route_score: Optional[Decimal]
    awaiting_manual_route: bool
    needs_manual_review: bool
    manual_review_reason: Optional[str]
    execution: Optional[dict]
    approval_deadline: Optional[datetime]
    dispute_deadline: Optional[datetime]
    progress_percentage: int
    next_action: str
    timeline: list[dict] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "deal_id": self.deal_id,
            "status": self.status.value,
            "version": self.version,
            "transaction_type": self.transaction_type,
            "is_cross_chain": self.is_cross_chain,
            "buyer": {
                "ref": self.buyer.ref,
                "network": self.buyer.network,
                "address": self.buyer.address,
            },
            "seller": {
                "ref": self.seller.ref,
                "network": self.seller.network,
                "address": self.seller.address,
            },
            "amount": str(self.amount),
            "asset": self.asset,
            "payout_asset": self.payout_asset,
            "conditions": self.conditions,
            "selected_route": self.selected_route,
            "route_score": str(self.route_score) if self.route_score is not None else None,
            "awaiting_manual_route": self.awaiting_manual_route,
            "needs_manual_review": self.needs_manual_review,
            "manual_review_reason": self.manual_review_reason,
            "execution": self.execution,
            "approval_deadline": _iso(self.approval_deadline),
            "dispute_deadline": _iso(self.dispute_deadline),
            "progress_percentage": self.progress_percentage,
            "next_action": self.next_action,
            "timeline": self.timeline,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def execution_to_dict(execution: Execution) -> dict:
    """Execution summary with its status history."""
    return {
        "execution_id": execution.id,
        "side": execution.side,
        "route_id": execution.route_id,
        "provider": execution.provider,
        "status": execution.reported_status.value,
        "retry_count": execution.retry_count,
        "retryable": execution.retryable,
        "outcome_unknown": execution.outcome_unknown,
        "last_error": execution.last_error,
        "next_retry_at": _iso(execution.next_retry_at),
        "started_at": _iso(execution.started_at),
        "completed_at": _iso(execution.completed_at),
        "history": [
            {
                "status": u.status,
                "attempt": u.attempt,
                "detail": u.detail,
                "at": _iso(u.created_at),
            }
            for u in execution.status_history
        ],
    }


def parse_amount(amount: Union[Decimal, str, int]) -> Decimal:
    if isinstance(amount, float):
        raise ValidationError("Amount must be given as a decimal string, not a float")
    try:
        value = Decimal(str(amount))
    except InvalidOperation as e:
        raise ValidationError(f"Invalid amount: {amount}") from e
    if not value.is_finite() or value <= 0:
        raise ValidationError(f"Amount must be positive: {amount}")
    return value


class DealService:
    """Deal lifecycle controller."""

    def __init__(
        self,
        aggregator: RouteAggregator,
        driver: ExecutionDriver,
        ledger: EscrowLedger,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        weights: Optional[ScoringWeights] = None,
    ):
        self.aggregator = aggregator
        self.driver = driver
        self.ledger = ledger
        self.session_factory = session_factory or get_session_factory()
        self.settings = settings or get_settings()
        self.weights = weights or ScoringWeights.from_settings(self.settings)

    # ======================
    # Persistence helpers
    # ======================

    @asynccontextmanager
    async def _deal_scope(
        self, deal_id: str, requested: str
    ) -> AsyncGenerator[tuple[Deal, EscrowRepository], None]:
        """Load a deal, yield it for mutation and commit with a version check."""
        async with self.session_factory() as session:
            repo = EscrowRepository(session)
            deal = await repo.get_deal(deal_id)
            if deal is None:
                raise DealNotFound(deal_id)
            loaded_status = deal.status
            yield deal, repo
            try:
                await session.commit()
            except (StaleDataError, IntegrityError) as e:
                await session.rollback()
                raise StateConflict(
                    deal_id, loaded_status, requested, "deal was modified concurrently"
                ) from e

    async def _load(self, deal_id: str) -> Deal:
        async with self.session_factory() as session:
            deal = await EscrowRepository(session).get_deal(deal_id)
            if deal is None:
                raise DealNotFound(deal_id)
            return deal

    def _transition(
        self,
        deal: Deal,
        target: DealStatus,
        requested: str,
        message: str,
        now: datetime,
        data: Optional[dict] = None,
    ) -> None:
        current = deal.deal_status
        if target not in TRANSITIONS[current]:
            raise StateConflict(deal.id, current.value, requested)
        deal.status = target.value
        deal.record_event(
            "status_changed",
            message,
            from_status=current.value,
            to_status=target.value,
            data=data,
            now=now,
        )
        logger.info(f"Deal {deal.id}: {current.value} -> {target.value} ({requested})")

    def _advance_if_fulfilled(self, deal: Deal, now: datetime) -> None:
        if deal.deal_status == DealStatus.AWAITING_FULFILLMENT and deal.all_conditions_fulfilled:
            self._transition(
                deal,
                DealStatus.READY_FOR_APPROVAL,
                "conditions_fulfilled",
                "All conditions fulfilled",
                now,
            )

    @staticmethod
    def _now(now: Optional[datetime]) -> datetime:
        return ensure_utc(now) if now else utcnow()

    @staticmethod
    def _escrow_symbol(deal: Deal) -> Optional[str]:
        """Asset the escrowed funds sit in on the seller's network."""
        return escrow_asset_for(deal.asset, deal.buyer_network, deal.seller_network)

    def _needs_release_route(self, deal: Deal) -> bool:
        if deal.payout_asset is None:
            return False
        seller = get_network(deal.seller_network)
        escrowed = self._escrow_symbol(deal) or seller.native_asset
        return deal.payout_asset.upper() != escrowed.upper()

    # ======================
    # Creation and acceptance
    # ======================

    async def create_deal(
        self,
        buyer: PartyInfo,
        seller: PartyInfo,
        amount: Union[Decimal, str, int],
        asset: Optional[str] = None,
        conditions: Optional[list[ConditionSpec]] = None,
        payout_asset: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Deal:
        """Create a deal awaiting the counterparty.

        Raises:
            ValidationError: bad parties, amount or assets
        """
        now = self._now(now)
        value = parse_amount(amount)

        for role, party in (("buyer", buyer), ("seller", seller)):
            network = get_network(party.network)
            if network is None:
                raise ValidationError(f"Unsupported {role} network: {party.network}")
            if not party.ref:
                raise ValidationError(f"Missing {role} reference")
            if not is_valid_address(network.name, party.address):
                raise ValidationError(f"Invalid {role} address for {network.name}: {party.address}")

        buyer_network = normalize_network(buyer.network)
        seller_network = normalize_network(seller.network)
        if asset is not None:
            asset = asset.upper()
            if not validate_token_for_network(buyer_network, asset):
                raise ValidationError(f"{asset} is not available on {buyer_network}")
        if payout_asset is not None:
            payout_asset = payout_asset.upper()
            if not validate_token_for_network(seller_network, payout_asset):
                raise ValidationError(f"{payout_asset} is not available on {seller_network}")

        transaction_type = classify(buyer_network, seller_network, asset, payout_asset)

        deal = Deal(
            id=new_id("deal"),
            status=DealStatus.AWAITING_OTHER_PARTY.value,
            buyer_ref=buyer.ref,
            buyer_network=buyer_network,
            buyer_address=buyer.address,
            seller_ref=seller.ref,
            seller_network=seller_network,
            seller_address=seller.address,
            amount=value,
            asset=asset,
            payout_asset=payout_asset,
            transaction_type=transaction_type.value,
            is_cross_chain=buyer_network != seller_network,
            event_seq=0,
            route_attempts=0,
            awaiting_manual_route=False,
            needs_manual_review=False,
            created_at=now,
            updated_at=now,
        )
        for spec in conditions or []:
            if not spec.description:
                raise ValidationError("Condition description is required")
            deal.add_condition(spec.condition_type, spec.description, key=spec.key)

        deal.record_event(
            "deal_created",
            f"Deal created: {value} {asset or 'native'} ({transaction_type.value})",
            to_status=DealStatus.AWAITING_OTHER_PARTY.value,
            now=now,
        )

        async with self.session_factory() as session:
            await EscrowRepository(session).add_deal(deal)
            await session.commit()

        logger.info(f"Deal {deal.id} created ({transaction_type.value})")
        return deal

    async def accept_deal(self, deal_id: str, now: Optional[datetime] = None) -> Deal:
        """Counterparty accepts; branch into the deposit-awaiting state.

        Cross-chain deals gain the network-compatibility condition and get a
        deposit-side route selected (and started when executable).
        """
        now = self._now(now)
        async with self._deal_scope(deal_id, "accept") as (deal, _):
            status = deal.deal_status
            if status in (DealStatus.AWAITING_DEPOSIT, DealStatus.AWAITING_CROSS_CHAIN_DEPOSIT):
                return deal
            if not deal.is_cross_chain:
                self._transition(
                    deal, DealStatus.AWAITING_DEPOSIT, "accept", "Counterparty accepted", now
                )
            else:
                bridge = (
                    "EVM bridge"
                    if are_evm_compatible(deal.buyer_network, deal.seller_network)
                    else "cross-ecosystem bridge"
                )
                deal.add_condition(
                    ConditionType.CROSS_CHAIN.value,
                    f"Network compatibility verified: {deal.buyer_network} -> "
                    f"{deal.seller_network} ({bridge})",
                    key=NETWORK_CONDITION_KEY,
                )
                self._transition(
                    deal,
                    DealStatus.AWAITING_CROSS_CHAIN_DEPOSIT,
                    "accept",
                    "Counterparty accepted (cross-chain)",
                    now,
                )

        if deal.is_cross_chain:
            await self._plan_route(deal_id, ExecutionSide.DEPOSIT, now)
            return await self._load(deal_id)
        return deal

    # ======================
    # Routing
    # ======================

    def _route_params(self, deal: Deal, side: ExecutionSide) -> dict:
        if side == ExecutionSide.DEPOSIT:
            return {
                "source": deal.buyer_network,
                "destination": deal.seller_network,
                "asset": deal.asset,
                "amount": deal.amount,
                "from_address": deal.buyer_address,
                "to_address": deal.seller_address,
                "destination_asset": self._escrow_symbol(deal),
                "deal_id": deal.id,
            }
        return {
            "source": deal.seller_network,
            "destination": deal.seller_network,
            "asset": self._escrow_symbol(deal),
            "amount": deal.amount,
            "from_address": deal.seller_address,
            "to_address": deal.seller_address,
            "destination_asset": deal.payout_asset,
            "deal_id": deal.id,
        }

    @staticmethod
    def _waiting_status(side: ExecutionSide) -> DealStatus:
        if side == ExecutionSide.DEPOSIT:
            return DealStatus.AWAITING_CROSS_CHAIN_DEPOSIT
        return DealStatus.AWAITING_RELEASE_EXECUTION

    async def _current_execution(self, deal: Deal) -> Optional[Execution]:
        if deal.execution_id is None:
            return None
        async with self.session_factory() as session:
            return await EscrowRepository(session).get_execution(deal.execution_id)

    async def _plan_route(self, deal_id: str, side: ExecutionSide, now: datetime) -> None:
        """Find, select and commit a route for one side, then start it."""
        deal = await self._load(deal_id)
        params = self._route_params(deal, side)

        try:
            routes = await self.aggregator.find_routes_or_estimate(**params)
        except NoRouteFound as e:
            logger.warning(f"Deal {deal_id}: no {side.value} route: {e}")
            async with self._deal_scope(deal_id, "select_route") as (deal, _):
                deal.awaiting_manual_route = True
                deal.record_event(
                    "route_unavailable",
                    f"No {side.value} route available: {e}",
                    data={"side": side.value},
                    now=now,
                )
            return

        selection = select_route(routes, self.weights)
        route = selection.route

        async with self._deal_scope(deal_id, "select_route") as (deal, _):
            if deal.deal_status != self._waiting_status(side):
                return
            previous = deal.selected_route
            if previous is not None:
                deal.record_event(
                    "route_reselected",
                    f"Replacing route {previous.get('route_id')}",
                    data={"previous_route": previous},
                    now=now,
                )
            deal.selected_route = route.to_dict()
            deal.route_score = selection.score
            deal.route_attempts = (deal.route_attempts or 0) + 1
            deal.awaiting_manual_route = selection.awaiting_manual_route
            deal.execution_id = None
            deal.needs_manual_review = False
            deal.manual_review_reason = None
            deal.record_event(
                "route_selected",
                f"Selected {side.value} route {route.route_id} via {route.provider} "
                f"(score {selection.score:.4f}, fees ${route.estimated_fees}, "
                f"~{route.estimated_duration_seconds}s)",
                data={
                    "side": side.value,
                    "route_id": route.route_id,
                    "executable": route.is_executable,
                    "candidates": len(routes),
                },
                now=now,
            )
            if selection.awaiting_manual_route:
                deal.record_event(
                    "awaiting_manual_route",
                    "Only estimate-only routes available; manual route selection required",
                    now=now,
                )

        if not route.is_executable:
            logger.warning(f"Deal {deal_id}: only placeholder routes, awaiting manual route")
            return

        execution_id = await self.driver.start(route, deal_id, side, now=now)
        await self._attach_execution(deal_id, execution_id, side, now)

    async def _attach_execution(
        self, deal_id: str, execution_id: str, side: ExecutionSide, now: datetime
    ) -> None:
        for attempt in range(BOOKKEEPING_ATTEMPTS):
            try:
                async with self._deal_scope(deal_id, "attach_execution") as (deal, _):
                    if deal.execution_id == execution_id:
                        return
                    deal.execution_id = execution_id
                    deal.record_event(
                        "execution_started",
                        f"{side.value.capitalize()} execution {execution_id} started",
                        data={"execution_id": execution_id, "side": side.value},
                        dedup_key=f"exec:{execution_id}:attached",
                        now=now,
                    )
                return
            except StateConflict:
                if attempt == BOOKKEEPING_ATTEMPTS - 1:
                    raise

    async def reselect_route(self, deal_id: str, now: Optional[datetime] = None) -> Deal:
        """Select a fresh route after a permanent failure or a placeholder-only selection.

        Raises:
            StateConflict: deal is not waiting on a route, or an execution is
                still in flight or needs reconciliation
        """
        now = self._now(now)
        deal = await self._load(deal_id)
        status = deal.deal_status

        if status == DealStatus.AWAITING_CROSS_CHAIN_DEPOSIT:
            side = ExecutionSide.DEPOSIT
        elif status == DealStatus.AWAITING_RELEASE_EXECUTION and self._needs_release_route(deal):
            side = ExecutionSide.RELEASE
        else:
            raise StateConflict(deal_id, status.value, "reselect_route", "no route is required")

        execution = await self._current_execution(deal)
        if execution is not None:
            if execution.status != ExecutionStatus.FAILED.value or execution.retryable:
                raise StateConflict(
                    deal_id, status.value, "reselect_route", "an execution is still in flight"
                )
            if execution.outcome_unknown:
                raise StateConflict(
                    deal_id,
                    status.value,
                    "reselect_route",
                    "previous execution needs manual reconciliation",
                )

        await self._plan_route(deal_id, side, now)
        return await self._load(deal_id)

    async def estimate_fees(self, deal_id: str) -> FeeEstimate:
        """Fee estimate for the deal's deposit-side transfer."""
        deal = await self._load(deal_id)
        params = self._route_params(deal, ExecutionSide.DEPOSIT)
        params.pop("deal_id")
        return await estimate_fees(self.aggregator, **params)

    # ======================
    # Deposit and conditions
    # ======================

    async def record_deposit(
        self,
        deal_id: str,
        proof: str,
        amount: Optional[Union[Decimal, str]] = None,
        now: Optional[datetime] = None,
    ) -> Deal:
        """Record the escrow ledger's deposit confirmation.

        Repeating the call with the same proof is a no-op.
        """
        now = self._now(now)
        if not proof:
            raise ValidationError("Deposit proof is required")

        async with self._deal_scope(deal_id, "record_deposit") as (deal, _):
            if deal.deposit_reference == proof:
                return deal
            if deal.deposit_reference is not None:
                raise StateConflict(
                    deal_id, deal.status, "record_deposit", "a different deposit is already recorded"
                )
            if amount is not None and parse_amount(amount) != deal.amount:
                raise ValidationError(f"Deposit amount {amount} does not match deal amount {deal.amount}")
            if deal.deal_status != DealStatus.AWAITING_DEPOSIT:
                raise StateConflict(deal_id, deal.status, "record_deposit")

            deal.deposit_reference = proof
            deal.deposit_confirmed_at = now
            self._transition(
                deal,
                DealStatus.AWAITING_FULFILLMENT,
                "record_deposit",
                f"Deposit confirmed ({proof})",
                now,
                data={"proof": proof},
            )
            self._advance_if_fulfilled(deal, now)
        return deal

    async def fulfill_condition(
        self,
        deal_id: str,
        condition_id: str,
        fulfilled_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Deal:
        """Mark a condition fulfilled. Re-marking is a no-op."""
        now = self._now(now)
        async with self._deal_scope(deal_id, "fulfill_condition") as (deal, _):
            condition = deal.get_condition(condition_id)
            if condition is None:
                raise ConditionNotFound(deal_id, condition_id)
            if condition.fulfilled:
                return deal
            if deal.deal_status not in CONDITION_PHASES:
                raise StateConflict(deal_id, deal.status, "fulfill_condition")
            if condition.key == NETWORK_CONDITION_KEY:
                raise ValidationError(
                    "Network compatibility is fulfilled automatically when the cross-chain deposit completes"
                )

            condition.fulfilled = True
            condition.fulfilled_at = now
            condition.fulfilled_by = fulfilled_by
            deal.record_event(
                "condition_fulfilled",
                f"Condition fulfilled: {condition.description}",
                data={"condition_id": condition.id, "by": fulfilled_by},
                now=now,
            )
            self._advance_if_fulfilled(deal, now)
        return deal

    # ======================
    # Approval and dispute
    # ======================

    async def start_approval(self, deal_id: str, now: Optional[datetime] = None) -> Deal:
        """Open the final approval window."""
        now = self._now(now)
        async with self._deal_scope(deal_id, "start_approval") as (deal, _):
            if deal.deal_status == DealStatus.IN_APPROVAL:
                return deal
            deadline = now + timedelta(hours=self.settings.approval_window_hours)
            self._transition(
                deal,
                DealStatus.IN_APPROVAL,
                "start_approval",
                f"Final approval period started, ends {deadline.isoformat()}",
                now,
            )
            deal.approval_deadline = deadline
        return deal

    async def confirm_approval(self, deal_id: str, now: Optional[datetime] = None) -> Deal:
        """Buyer confirms before the deadline; release begins."""
        now = self._now(now)
        async with self._deal_scope(deal_id, "confirm_approval") as (deal, _):
            if deal.deal_status in (DealStatus.AWAITING_RELEASE_EXECUTION, DealStatus.COMPLETED):
                if deal.resolution is None:
                    return deal
            self._transition(
                deal,
                DealStatus.AWAITING_RELEASE_EXECUTION,
                "confirm_approval",
                "Buyer approved release",
                now,
            )
        return await self._begin_release(deal_id, now)

    async def raise_dispute(
        self,
        deal_id: str,
        reason: str = "",
        raised_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Deal:
        """Dispute during the approval window. A second dispute is a conflict."""
        now = self._now(now)
        async with self._deal_scope(deal_id, "raise_dispute") as (deal, _):
            if deal.deal_status == DealStatus.IN_DISPUTE:
                raise StateConflict(deal_id, deal.status, "raise_dispute", "already in dispute")
            deadline = now + timedelta(days=self.settings.dispute_window_days)
            self._transition(
                deal,
                DealStatus.IN_DISPUTE,
                "raise_dispute",
                f"Dispute raised{f' by {raised_by}' if raised_by else ''}: {reason or 'no reason given'}",
                now,
                data={"reason": reason, "raised_by": raised_by},
            )
            deal.dispute_reason = reason
            deal.dispute_deadline = deadline
        return deal

    async def resolve_dispute(
        self, deal_id: str, outcome: str, now: Optional[datetime] = None
    ) -> Deal:
        """Resolve a dispute in favour of release or refund."""
        now = self._now(now)
        outcome = (outcome or "").lower()
        if outcome not in DISPUTE_OUTCOMES:
            raise ValidationError(f"Outcome must be one of {', '.join(DISPUTE_OUTCOMES)}")

        target = (
            DealStatus.AWAITING_RELEASE_EXECUTION if outcome == "release" else DealStatus.CANCELLED
        )
        async with self._deal_scope(deal_id, f"resolve_dispute:{outcome}") as (deal, _):
            if deal.resolution == outcome and deal.deal_status in (target, DealStatus.COMPLETED):
                return deal
            if deal.deal_status != DealStatus.IN_DISPUTE:
                raise StateConflict(deal_id, deal.status, f"resolve_dispute:{outcome}")
            self._transition(
                deal,
                target,
                f"resolve_dispute:{outcome}",
                f"Dispute resolved: {outcome}",
                now,
            )
            deal.resolution = outcome
            if outcome == "refund":
                deal.cancellation_reason = "Dispute resolved in favour of refund"

        if outcome == "release":
            return await self._begin_release(deal_id, now)
        return await self._request_refund(deal_id, now)

    # ======================
    # Cancellation and amendments
    # ======================

    async def cancel_deal(
        self, deal_id: str, reason: str = "", now: Optional[datetime] = None
    ) -> Deal:
        """Cancel before funds are locked."""
        now = self._now(now)
        deal = await self._load(deal_id)
        if deal.deal_status == DealStatus.CANCELLED:
            return deal
        if deal.deal_status not in PRE_DEPOSIT_STATES:
            raise StateConflict(deal_id, deal.status, "cancel", "funds are already locked")

        execution = await self._current_execution(deal)
        if execution is not None and not (
            execution.status == ExecutionStatus.FAILED.value
            and not execution.retryable
            and not execution.outcome_unknown
        ):
            raise StateConflict(deal_id, deal.status, "cancel", "a cross-chain deposit is in flight")

        async with self._deal_scope(deal_id, "cancel") as (deal, _):
            if deal.execution_id != (execution.id if execution else None):
                raise StateConflict(deal_id, deal.status, "cancel", "execution changed")
            if deal.deal_status not in PRE_DEPOSIT_STATES:
                raise StateConflict(deal_id, deal.status, "cancel")
            self._transition(
                deal,
                DealStatus.CANCELLED,
                "cancel",
                f"Deal cancelled: {reason or 'no reason given'}",
                now,
            )
            deal.cancellation_reason = reason
        return deal

    async def amend_amount(
        self,
        deal_id: str,
        amount: Union[Decimal, str, int],
        now: Optional[datetime] = None,
    ) -> Deal:
        """Change the amount; only allowed before the deposit is confirmed."""
        now = self._now(now)
        value = parse_amount(amount)
        async with self._deal_scope(deal_id, "amend_amount") as (deal, _):
            if deal.amount == value:
                return deal
            if deal.deposit_reference is not None or deal.deal_status not in (
                DealStatus.AWAITING_OTHER_PARTY,
                DealStatus.AWAITING_DEPOSIT,
            ):
                raise StateConflict(
                    deal_id, deal.status, "amend_amount", "amount is fixed once a deposit is in progress"
                )
            previous = deal.amount
            deal.amount = value
            deal.record_event(
                "amount_amended",
                f"Amount changed from {previous} to {value}",
                data={"previous": str(previous), "amount": str(value)},
                now=now,
            )
        return deal

    # ======================
    # Release and refund
    # ======================

    async def _begin_release(self, deal_id: str, now: datetime) -> Deal:
        """Release escrow: immediately, or through a release-side swap route."""
        deal = await self._load(deal_id)
        if deal.deal_status != DealStatus.AWAITING_RELEASE_EXECUTION:
            return deal
        if self._needs_release_route(deal):
            if deal.execution_id is None and not deal.awaiting_manual_route:
                await self._plan_route(deal_id, ExecutionSide.RELEASE, now)
            return await self._load(deal_id)
        return await self._complete_release(deal_id, now)

    async def _complete_release(self, deal_id: str, now: datetime) -> Deal:
        deal = await self._load(deal_id)
        if deal.deal_status != DealStatus.AWAITING_RELEASE_EXECUTION:
            return deal

        event = await self.ledger.release(deal_id, deal.seller_address)
        async with self._deal_scope(deal_id, "complete_release") as (deal, _):
            if deal.deal_status != DealStatus.AWAITING_RELEASE_EXECUTION:
                return deal
            deal.release_reference = event.reference
            deal.record_event(
                "funds_released",
                f"Funds released to {deal.seller_address}",
                data=event.to_dict(),
                dedup_key="release",
                now=now,
            )
            self._transition(
                deal, DealStatus.COMPLETED, "complete_release", "Transaction completed", now
            )
        return deal

    async def _request_refund(self, deal_id: str, now: datetime) -> Deal:
        """Ask the escrow ledger to refund a cancelled deal (idempotent)."""
        deal = await self._load(deal_id)
        if deal.deal_status != DealStatus.CANCELLED or deal.refund_reference is not None:
            return deal
        if deal.deposit_confirmed_at is None:
            return deal

        event = await self.ledger.refund(deal_id)
        async with self._deal_scope(deal_id, "request_refund") as (deal, _):
            if deal.refund_reference is None:
                deal.refund_reference = event.reference
                deal.record_event(
                    "refund_requested",
                    "Refund requested from escrow ledger",
                    data=event.to_dict(),
                    dedup_key="refund",
                    now=now,
                )
        logger.info(f"Deal {deal_id}: refund requested ({event.reference})")
        return deal

    # ======================
    # Scheduler-driven transitions
    # ======================

    async def auto_release(self, deal_id: str, now: Optional[datetime] = None) -> Optional[Deal]:
        """Release after the approval window closes without a dispute.

        Returns None when there is nothing to do (already moved, or not due).
        """
        now = self._now(now)
        async with self._deal_scope(deal_id, "auto_release") as (deal, _):
            if deal.deal_status != DealStatus.IN_APPROVAL:
                return None
            if deal.approval_deadline is None or deal.approval_deadline > now:
                return None
            self._transition(
                deal,
                DealStatus.AWAITING_RELEASE_EXECUTION,
                "auto_release",
                "Approval period elapsed without dispute; releasing funds",
                now,
            )
        return await self._begin_release(deal_id, now)

    async def auto_cancel(self, deal_id: str, now: Optional[datetime] = None) -> Optional[Deal]:
        """Cancel and refund after the dispute window closes unresolved.

        Returns None when there is nothing to do.
        """
        now = self._now(now)
        async with self._deal_scope(deal_id, "auto_cancel") as (deal, _):
            if deal.deal_status != DealStatus.IN_DISPUTE:
                return None
            if deal.dispute_deadline is None or deal.dispute_deadline > now:
                return None
            self._transition(
                deal,
                DealStatus.CANCELLED,
                "auto_cancel",
                "Dispute period elapsed without resolution; refunding buyer",
                now,
            )
            deal.resolution = "refund"
            deal.cancellation_reason = "Dispute deadline elapsed"
        return await self._request_refund(deal_id, now)

    # ======================
    # Execution updates
    # ======================

    async def handle_execution_update(self, update: ExecutionUpdate) -> None:
        """Mirror an execution status change onto its deal and react to it.

        Idempotent: each distinct execution status is recorded once, and
        terminal outcomes only act while the deal is still waiting on them.
        """
        current = False
        for attempt in range(BOOKKEEPING_ATTEMPTS):
            try:
                current = await self._apply_execution_update(update)
                break
            except StateConflict:
                if attempt == BOOKKEEPING_ATTEMPTS - 1:
                    raise
                logger.info(
                    f"Deal {update.deal_id}: retrying execution bookkeeping (attempt {attempt + 2})"
                )

        if current and update.status == ExecutionStatus.DONE and update.side == ExecutionSide.RELEASE:
            await self._complete_release(update.deal_id, update.observed_at)

    async def _apply_execution_update(self, update: ExecutionUpdate) -> bool:
        """Record the update on the deal. Returns True if it is the deal's current execution."""
        now = update.observed_at
        try:
            scope = self._deal_scope(update.deal_id, f"execution:{update.status.value}")
            async with scope as (deal, _):
                waiting = self._waiting_status(update.side)
                if deal.execution_id is None and deal.deal_status == waiting:
                    deal.execution_id = update.execution_id
                current = deal.execution_id == update.execution_id

                if update.dedup_key:
                    deal.record_event(
                        "execution_status",
                        f"{update.side.value.capitalize()} execution {update.status.value}"
                        + (f": {update.detail}" if update.detail else ""),
                        data=update.to_dict(),
                        dedup_key=f"exec:{update.execution_id}:{update.dedup_key}",
                        now=now,
                    )

                if not current:
                    return False

                if update.status == ExecutionStatus.DONE:
                    self._on_execution_done(deal, update, now)
                elif update.permanently_failed:
                    self._flag_manual_review(deal, update, now)
            return True
        except DealNotFound:
            logger.warning(
                f"Execution {update.execution_id} reported for missing deal {update.deal_id}"
            )
            return False

    def _on_execution_done(self, deal: Deal, update: ExecutionUpdate, now: datetime) -> None:
        if update.side != ExecutionSide.DEPOSIT:
            return
        if deal.deal_status != DealStatus.AWAITING_CROSS_CHAIN_DEPOSIT:
            return

        condition = deal.get_condition(NETWORK_CONDITION_KEY)
        if condition is not None and not condition.fulfilled:
            condition.fulfilled = True
            condition.fulfilled_at = now
            condition.fulfilled_by = SYSTEM_ACTOR
            deal.record_event(
                "condition_fulfilled",
                f"Condition fulfilled: {condition.description}",
                data={"condition_id": condition.id, "by": SYSTEM_ACTOR},
                now=now,
            )

        deal.deposit_reference = update.destination_tx_hash or update.provider_handle
        deal.deposit_confirmed_at = now
        self._transition(
            deal,
            DealStatus.AWAITING_FULFILLMENT,
            "cross_chain_deposit_done",
            "Cross-chain deposit completed",
            now,
            data={"execution_id": update.execution_id},
        )
        self._advance_if_fulfilled(deal, now)

    def _flag_manual_review(self, deal: Deal, update: ExecutionUpdate, now: datetime) -> None:
        if update.outcome_unknown:
            reason = (
                f"{update.side.value.capitalize()} execution {update.execution_id} failed after "
                f"funds may have left the source; outcome unknown, reconcile manually"
            )
        else:
            reason = (
                f"{update.side.value.capitalize()} execution {update.execution_id} failed "
                f"permanently; no funds moved"
            )
        deal.needs_manual_review = True
        deal.manual_review_reason = reason
        deal.record_event(
            "manual_review_required",
            reason,
            data={"execution_id": update.execution_id, "outcome_unknown": update.outcome_unknown},
            dedup_key=f"review:{update.execution_id}",
            now=now,
        )
        logger.error(f"Deal {deal.id} flagged for manual review: {reason}")

    async def reconcile(self, deal_id: str, now: Optional[datetime] = None) -> bool:
        """Re-apply anything a crash or lost callback left undone.

        Returns True if the deal was waiting on a follow-up that was re-driven.
        """
        now = self._now(now)
        deal = await self._load(deal_id)
        status = deal.deal_status

        if status == DealStatus.CANCELLED:
            if deal.deposit_confirmed_at is not None and deal.refund_reference is None:
                await self._request_refund(deal_id, now)
                return True
            return False

        if status not in (
            DealStatus.AWAITING_CROSS_CHAIN_DEPOSIT,
            DealStatus.AWAITING_RELEASE_EXECUTION,
        ):
            return False

        if deal.execution_id is not None:
            try:
                update = await self.driver.get_update(deal.execution_id)
            except ExecutionNotFound:
                logger.warning(f"Deal {deal_id} references missing execution {deal.execution_id}")
                return False
            if not update.is_terminal:
                return False
            if update.permanently_failed and deal.needs_manual_review:
                return False
            update.observed_at = now
            await self.handle_execution_update(update)
            return True

        if deal.awaiting_manual_route:
            return False

        side = (
            ExecutionSide.DEPOSIT
            if status == DealStatus.AWAITING_CROSS_CHAIN_DEPOSIT
            else ExecutionSide.RELEASE
        )
        if await self._adopt_unattached_execution(deal, side, now):
            return True

        if status == DealStatus.AWAITING_RELEASE_EXECUTION:
            await self._begin_release(deal_id, now)
            return True

        if now - ensure_utc(deal.updated_at) < ROUTE_PLANNING_GRACE:
            return False
        logger.warning(f"Deal {deal_id} has no deposit route, planning it again")
        await self._plan_route(deal_id, ExecutionSide.DEPOSIT, now)
        return True

    async def _adopt_unattached_execution(
        self, deal: Deal, side: ExecutionSide, now: datetime
    ) -> bool:
        """Attach a live execution that was started but never linked to the deal."""
        for execution in reversed(await self.list_executions(deal.id)):
            if execution.side == side.value and not execution.is_terminal:
                logger.warning(f"Deal {deal.id}: adopting unattached execution {execution.id}")
                await self._attach_execution(deal.id, execution.id, side, now)
                return True
        return False

    # ======================
    # Queries
    # ======================

    async def get_deal(self, deal_id: str) -> Deal:
        return await self._load(deal_id)

    async def list_executions(self, deal_id: str) -> list[Execution]:
        """Every execution the deal spawned, failed attempts included, oldest first."""
        async with self.session_factory() as session:
            return await EscrowRepository(session).get_executions_for_deal(deal_id)

    async def get_deal_executions(self, deal_id: str) -> list[Execution]:
        """Execution history for an existing deal.

        Raises:
            DealNotFound: no such deal
        """
        await self._load(deal_id)
        return await self.list_executions(deal_id)

    async def list_deals(
        self,
        status: Optional[DealStatus] = None,
        party_ref: Optional[str] = None,
        limit: int = 100,
    ) -> list[Deal]:
        async with self.session_factory() as session:
            return await EscrowRepository(session).list_deals(status, party_ref, limit)

    async def get_deal_status(self, deal_id: str) -> DealStatusView:
        """Read-only projection with progress and next action."""
        deal = await self._load(deal_id)
        execution = await self._current_execution(deal)
        return self._build_view(deal, execution)

    def _build_view(self, deal: Deal, execution: Optional[Execution]) -> DealStatusView:
        status = deal.deal_status
        execution_view = execution_to_dict(execution) if execution is not None else None

        return DealStatusView(
            deal_id=deal.id,
            status=status,
            version=deal.version,
            transaction_type=deal.transaction_type,
            is_cross_chain=deal.is_cross_chain,
            buyer=PartyInfo(deal.buyer_ref, deal.buyer_network, deal.buyer_address),
            seller=PartyInfo(deal.seller_ref, deal.seller_network, deal.seller_address),
            amount=deal.amount,
            asset=deal.asset,
            payout_asset=deal.payout_asset,
            conditions=[
                {
                    "id": c.id,
                    "key": c.key,
                    "type": c.condition_type,
                    "description": c.description,
                    "fulfilled": c.fulfilled,
                    "fulfilled_at": _iso(c.fulfilled_at),
                }
                for c in deal.conditions
            ],
            selected_route=deal.selected_route,
            route_score=deal.route_score,
            awaiting_manual_route=deal.awaiting_manual_route,
            needs_manual_review=deal.needs_manual_review,
            manual_review_reason=deal.manual_review_reason,
            execution=execution_view,
            approval_deadline=deal.approval_deadline,
            dispute_deadline=deal.dispute_deadline,
            progress_percentage=self._progress(deal, execution),
            next_action=self._next_action(deal, execution),
            timeline=[
                {
                    "sequence": e.sequence,
                    "type": e.event_type,
                    "message": e.message,
                    "from_status": e.from_status,
                    "to_status": e.to_status,
                    "at": _iso(e.created_at),
                }
                for e in deal.timeline
            ],
            created_at=deal.created_at,
            updated_at=deal.updated_at,
        )

    @staticmethod
    def _progress(deal: Deal, execution: Optional[Execution]) -> int:
        status = deal.deal_status
        progress = PROGRESS[status]
        if status == DealStatus.AWAITING_FULFILLMENT and deal.conditions:
            done = sum(1 for c in deal.conditions if c.fulfilled)
            progress += (30 * done) // len(deal.conditions)
        elif execution is not None and status in (
            DealStatus.AWAITING_CROSS_CHAIN_DEPOSIT,
            DealStatus.AWAITING_RELEASE_EXECUTION,
        ):
            if execution.status == ExecutionStatus.IN_PROGRESS.value:
                progress += 10
            elif execution.status == ExecutionStatus.DONE.value:
                progress += 15
        return min(progress, 100)

    @staticmethod
    def _next_action(deal: Deal, execution: Optional[Execution]) -> str:
        status = deal.deal_status
        if status == DealStatus.COMPLETED:
            return "Transaction completed"
        if deal.needs_manual_review:
            return f"Manual intervention required: {deal.manual_review_reason}"
        if deal.awaiting_manual_route:
            return "No executable route available - manual route selection required"
        if status == DealStatus.CANCELLED:
            return "Transaction cancelled"

        if execution is not None and status in (
            DealStatus.AWAITING_CROSS_CHAIN_DEPOSIT,
            DealStatus.AWAITING_RELEASE_EXECUTION,
        ):
            reported = execution.reported_status
            if reported == ExecutionStatus.STUCK:
                return "Transfer delayed beyond expected time - retry pending"
            if reported == ExecutionStatus.FAILED:
                return "Transfer failed - retry scheduled"
            if reported in (ExecutionStatus.STARTED, ExecutionStatus.IN_PROGRESS):
                return "Cross-chain transfer in progress"

        if status == DealStatus.AWAITING_OTHER_PARTY:
            return "Waiting for the counterparty to accept"
        if status == DealStatus.AWAITING_DEPOSIT:
            return "Waiting for buyer deposit"
        if status == DealStatus.AWAITING_CROSS_CHAIN_DEPOSIT:
            return "Waiting for cross-chain deposit"
        if status == DealStatus.AWAITING_FULFILLMENT:
            remaining = sum(1 for c in deal.conditions if not c.fulfilled)
            return f"Fulfill remaining conditions ({remaining} open)"
        if status == DealStatus.READY_FOR_APPROVAL:
            return "Start the final approval period"
        if status == DealStatus.IN_APPROVAL:
            return f"Approve or dispute before {_iso(deal.approval_deadline)}"
        if status == DealStatus.IN_DISPUTE:
            return f"Resolve dispute before {_iso(deal.dispute_deadline)}"
        return "Releasing funds to seller"
