"""Repository for deal and execution records."""

from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrowbridge.ledger.models import (
    Deal,
    DealStatus,
    Execution,
    ExecutionStatus,
)


class EscrowRepository:
    """Repository for all deal/execution database operations.

    Writes go through the ORM so every UPDATE is version-checked.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # Deal operations
    async def add_deal(self, deal: Deal) -> Deal:
        self.session.add(deal)
        await self.session.flush()
        return deal

    async def get_deal(self, deal_id: str) -> Optional[Deal]:
        """Get deal by ID."""
        stmt = select(Deal).where(Deal.id == deal_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_deals(
        self,
        status: Optional[DealStatus] = None,
        party_ref: Optional[str] = None,
        limit: int = 100,
    ) -> list[Deal]:
        """List deals, newest first."""
        stmt = select(Deal)
        if status is not None:
            stmt = stmt.where(Deal.status == status.value)
        if party_ref is not None:
            stmt = stmt.where((Deal.buyer_ref == party_ref) | (Deal.seller_ref == party_ref))
        stmt = stmt.order_by(Deal.created_at.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_due_approvals(self, now: datetime) -> list[Deal]:
        """Deals in IN_APPROVAL whose approval deadline has elapsed."""
        stmt = (
            select(Deal)
            .where(
                Deal.status == DealStatus.IN_APPROVAL.value,
                Deal.approval_deadline.is_not(None),
                Deal.approval_deadline <= now,
            )
            .order_by(Deal.approval_deadline)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_due_disputes(self, now: datetime) -> list[Deal]:
        """Deals in IN_DISPUTE whose dispute deadline has elapsed."""
        stmt = (
            select(Deal)
            .where(
                Deal.status == DealStatus.IN_DISPUTE.value,
                Deal.dispute_deadline.is_not(None),
                Deal.dispute_deadline <= now,
            )
            .order_by(Deal.dispute_deadline)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # Execution operations
    async def add_execution(self, execution: Execution) -> Execution:
        self.session.add(execution)
        await self.session.flush()
        return execution

    async def get_execution(self, execution_id: str) -> Optional[Execution]:
        """Get execution by ID."""
        stmt = select(Execution).where(Execution.id == execution_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_executions_for_deal(self, deal_id: str) -> list[Execution]:
        """All executions a deal spawned, oldest first."""
        stmt = (
            select(Execution)
            .where(Execution.deal_id == deal_id)
            .order_by(Execution.created_at, Execution.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_in_progress_executions(self) -> list[Execution]:
        """Executions still being driven by their provider."""
        stmt = (
            select(Execution)
            .where(
                Execution.status.in_(
                    [ExecutionStatus.STARTED.value, ExecutionStatus.IN_PROGRESS.value]
                )
            )
            .order_by(Execution.started_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_retry_due_executions(self, now: datetime) -> list[Execution]:
        """Retryable FAILED executions whose backoff has elapsed."""
        stmt = (
            select(Execution)
            .where(
                Execution.status == ExecutionStatus.FAILED.value,
                Execution.retryable.is_(True),
                Execution.next_retry_at.is_not(None),
                Execution.next_retry_at <= now,
            )
            .order_by(Execution.next_retry_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_deals_awaiting_execution(self) -> list[Deal]:
        """Deals blocked on a deposit-side or release-side execution."""
        stmt = (
            select(Deal)
            .where(
                Deal.status.in_(
                    [
                        DealStatus.AWAITING_CROSS_CHAIN_DEPOSIT.value,
                        DealStatus.AWAITING_RELEASE_EXECUTION.value,
                    ]
                )
            )
            .order_by(Deal.updated_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_refunds_pending(self) -> list[Deal]:
        """Cancelled deals holding a confirmed deposit with no refund issued."""
        stmt = (
            select(Deal)
            .where(
                Deal.status == DealStatus.CANCELLED.value,
                Deal.deposit_confirmed_at.is_not(None),
                Deal.refund_reference.is_(None),
            )
            .order_by(Deal.updated_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
