"""Tests for the deadline and execution sweep."""

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from conftest import BUYER_ADDRESS, SELLER_ADDRESS, buyer, later, seller, two_conditions
from escrowbridge.errors import ProviderUnavailable
from escrowbridge.escrow.base import LedgerEventType
from escrowbridge.ledger.models import DealStatus, ExecutionSide, ExecutionStatus
from escrowbridge.ledger.repository import EscrowRepository
from escrowbridge.routing.base import RouteRequest
from escrowbridge.services.execution_driver import ExecutionDriver
from escrowbridge.services.scheduler import SweepReport, run_scheduler_sweep, sweep_forever
from escrowbridge.utils.timeutil import utcnow


async def approval_started(deals, deal, now):
    await deals.record_deposit(deal.id, "escrow-tx-1")
    for condition in deal.conditions:
        await deals.fulfill_condition(deal.id, condition.id)
    return await deals.start_approval(deal.id, now=now)


class TestSweepReport:
    """Tests for the sweep report."""

    def test_total_actions_ignores_polls(self):
        report = SweepReport(polled=["exec_1"], stuck=["exec_1"], retried=["exec_1"])
        assert report.total_actions == 1

    def test_to_dict(self):
        data = SweepReport(auto_released=["deal_1"]).to_dict()
        assert data["auto_released"] == ["deal_1"]
        assert data["errors"] == []


class TestDeadlines:
    """Tests for time-driven deal transitions."""

    @pytest.mark.asyncio
    async def test_empty_sweep(self, deals, driver):
        report = await run_scheduler_sweep(deals, driver)
        assert report.total_actions == 0
        assert report.errors == []

    @pytest.mark.asyncio
    async def test_approval_not_yet_due(self, deals, driver, same_chain_deal):
        now = utcnow()
        await approval_started(deals, same_chain_deal, now)

        report = await run_scheduler_sweep(deals, driver, now=now + timedelta(hours=47))

        assert report.auto_released == []
        deal = await deals.get_deal(same_chain_deal.id)
        assert deal.deal_status == DealStatus.IN_APPROVAL

    @pytest.mark.asyncio
    async def test_auto_release_after_deadline(self, deals, driver, ledger, same_chain_deal):
        now = utcnow()
        await approval_started(deals, same_chain_deal, now)

        report = await run_scheduler_sweep(deals, driver, now=now + timedelta(hours=48))

        assert report.auto_released == [same_chain_deal.id]
        deal = await deals.get_deal(same_chain_deal.id)
        assert deal.deal_status == DealStatus.COMPLETED
        assert len(ledger.calls(LedgerEventType.RELEASE)) == 1

    @pytest.mark.asyncio
    async def test_second_sweep_changes_nothing(self, deals, driver, ledger, same_chain_deal):
        now = utcnow()
        await approval_started(deals, same_chain_deal, now)
        sweep_at = now + timedelta(hours=49)

        await run_scheduler_sweep(deals, driver, now=sweep_at)
        before = await deals.get_deal(same_chain_deal.id)
        report = await run_scheduler_sweep(deals, driver, now=sweep_at)
        after = await deals.get_deal(same_chain_deal.id)

        assert report.total_actions == 0
        assert after.version == before.version
        assert len(after.timeline) == len(before.timeline)
        assert len(ledger.calls(LedgerEventType.RELEASE)) == 1

    @pytest.mark.asyncio
    async def test_dispute_blocks_auto_release(self, deals, driver, same_chain_deal):
        now = utcnow()
        await approval_started(deals, same_chain_deal, now)
        await deals.raise_dispute(same_chain_deal.id, "late delivery", now=now + timedelta(hours=1))

        report = await run_scheduler_sweep(deals, driver, now=now + timedelta(hours=72))

        assert report.auto_released == []
        assert report.auto_cancelled == []
        deal = await deals.get_deal(same_chain_deal.id)
        assert deal.deal_status == DealStatus.IN_DISPUTE

    @pytest.mark.asyncio
    async def test_auto_cancel_after_dispute_deadline(self, deals, driver, ledger, same_chain_deal):
        now = utcnow()
        await approval_started(deals, same_chain_deal, now)
        await deals.raise_dispute(same_chain_deal.id, "late delivery", now=now)

        report = await run_scheduler_sweep(deals, driver, now=now + timedelta(days=7))

        assert report.auto_cancelled == [same_chain_deal.id]
        deal = await deals.get_deal(same_chain_deal.id)
        assert deal.deal_status == DealStatus.CANCELLED
        assert deal.resolution == "refund"
        assert [e.deal_id for e in ledger.calls(LedgerEventType.REFUND)] == [deal.id]


class TestExecutions:
    """Tests for polling and retrying executions."""

    @pytest.mark.asyncio
    async def test_poll_completes_deposit(self, deals, driver, cross_chain_deal):
        first = await run_scheduler_sweep(deals, driver)
        assert first.polled == [cross_chain_deal.execution_id]

        await run_scheduler_sweep(deals, driver)

        deal = await deals.get_deal(cross_chain_deal.id)
        assert deal.deal_status == DealStatus.READY_FOR_APPROVAL
        assert deal.deposit_confirmed_at is not None
        assert deal.needs_manual_review is False

    @pytest.mark.asyncio
    async def test_retry_due_failure(self, deals, driver, provider):
        provider.queue_start_error(ProviderUnavailable("busy"))
        deal = await deals.create_deal(
            buyer("ethereum"), seller("optimism"), Decimal("250"), asset="USDC"
        )
        deal = await deals.accept_deal(deal.id)
        update = await driver.get_update(deal.execution_id)
        assert update.status == ExecutionStatus.FAILED

        early = await run_scheduler_sweep(deals, driver, now=later(seconds=10))
        assert early.retried == []

        report = await run_scheduler_sweep(deals, driver, now=later(minutes=5))

        assert report.retried == [deal.execution_id]
        update = await driver.get_update(deal.execution_id)
        assert update.status == ExecutionStatus.IN_PROGRESS
        assert update.retry_count == 1


class TestReconcile:
    """Tests for re-driving follow-ups left behind by a crash."""

    @pytest.mark.asyncio
    async def test_lost_completion_callback(
        self, deals, driver, services, session_factory, cross_chain_deal
    ):
        # A driver with no callback stands in for a process that died mid-update
        silent = ExecutionDriver(
            services.aggregator, session_factory=session_factory, policy=driver.policy
        )
        await silent.poll(cross_chain_deal.execution_id)
        done = await silent.poll(cross_chain_deal.execution_id)
        assert done.status == ExecutionStatus.DONE
        deal = await deals.get_deal(cross_chain_deal.id)
        assert deal.deal_status == DealStatus.AWAITING_CROSS_CHAIN_DEPOSIT

        report = await run_scheduler_sweep(deals, driver)

        assert report.reconciled == [cross_chain_deal.id]
        deal = await deals.get_deal(cross_chain_deal.id)
        assert deal.deal_status == DealStatus.READY_FOR_APPROVAL

        again = await run_scheduler_sweep(deals, driver)
        assert again.reconciled == []

    @pytest.mark.asyncio
    async def test_missing_refund_is_requested(
        self, deals, driver, ledger, session_factory, same_chain_deal
    ):
        await deals.record_deposit(same_chain_deal.id, "escrow-tx-1")
        # Cancelled with funds held but the refund call never made
        async with session_factory() as session:
            deal = await EscrowRepository(session).get_deal(same_chain_deal.id)
            deal.status = DealStatus.CANCELLED.value
            await session.commit()

        report = await run_scheduler_sweep(deals, driver)

        assert report.reconciled == [same_chain_deal.id]
        assert len(ledger.calls(LedgerEventType.REFUND)) == 1
        deal = await deals.get_deal(same_chain_deal.id)
        assert deal.refund_reference is not None

        again = await run_scheduler_sweep(deals, driver)
        assert again.reconciled == []
        assert len(ledger.calls(LedgerEventType.REFUND)) == 1

    @pytest.mark.asyncio
    async def test_release_retried_after_ledger_outage(self, deals, driver, ledger, same_chain_deal):
        now = utcnow()
        await approval_started(deals, same_chain_deal, now)

        failing = AsyncMock(side_effect=ProviderUnavailable("ledger node down"))
        with patch.object(ledger, "release", failing):
            with pytest.raises(ProviderUnavailable):
                await deals.confirm_approval(same_chain_deal.id)
        failing.assert_awaited_once()

        deal = await deals.get_deal(same_chain_deal.id)
        assert deal.deal_status == DealStatus.AWAITING_RELEASE_EXECUTION

        report = await run_scheduler_sweep(deals, driver)

        assert report.reconciled == [same_chain_deal.id]
        deal = await deals.get_deal(same_chain_deal.id)
        assert deal.deal_status == DealStatus.COMPLETED
        assert len(ledger.calls(LedgerEventType.RELEASE)) == 1

    @pytest.mark.asyncio
    async def test_interrupted_route_planning_is_resumed(self, deals, driver, provider):
        deal = await deals.create_deal(
            buyer("ethereum"), seller("polygon"), Decimal("1000"), asset="USDC"
        )
        with patch.object(deals, "_plan_route", AsyncMock(side_effect=RuntimeError("crash"))):
            with pytest.raises(RuntimeError):
                await deals.accept_deal(deal.id)

        deal = await deals.accept_deal(deal.id)
        assert deal.deal_status == DealStatus.AWAITING_CROSS_CHAIN_DEPOSIT
        assert deal.execution_id is None

        # Planning may still be in flight elsewhere right after acceptance
        report = await run_scheduler_sweep(deals, driver)
        assert report.reconciled == []
        assert provider.submissions == []

        report = await run_scheduler_sweep(deals, driver, now=later(minutes=10))

        assert report.reconciled == [deal.id]
        deal = await deals.get_deal(deal.id)
        assert deal.selected_route is not None
        assert deal.execution_id is not None
        assert len(provider.submissions) == 1

        again = await run_scheduler_sweep(deals, driver, now=later(minutes=11))
        assert again.reconciled == []
        assert len(provider.submissions) == 1

    @pytest.mark.asyncio
    async def test_unattached_execution_is_adopted(
        self, deals, driver, provider, services, session_factory
    ):
        deal = await deals.create_deal(
            buyer("ethereum"), seller("polygon"), Decimal("1000"), asset="USDC"
        )
        with patch.object(deals, "_plan_route", AsyncMock(side_effect=RuntimeError("crash"))):
            with pytest.raises(RuntimeError):
                await deals.accept_deal(deal.id)

        # Started, but the process died before the deal learned about it
        silent = ExecutionDriver(
            services.aggregator, session_factory=session_factory, policy=driver.policy
        )
        routes = await provider.find_routes(
            RouteRequest(
                source_network="ethereum",
                destination_network="polygon",
                asset="USDC",
                amount=Decimal("1000"),
                from_address=BUYER_ADDRESS,
                to_address=SELLER_ADDRESS,
            )
        )
        execution_id = await silent.start(routes[0], deal.id, ExecutionSide.DEPOSIT)

        report = await run_scheduler_sweep(deals, driver, now=later(minutes=6))

        assert report.reconciled == [deal.id]
        deal = await deals.get_deal(deal.id)
        assert deal.execution_id == execution_id
        assert len(provider.submissions) == 1
        assert [e.id for e in await deals.list_executions(deal.id)] == [execution_id]


class TestSweepIsolation:
    """One broken item never stops the rest of the sweep or the loop."""

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_abort_sweep(
        self, deals, driver, ledger, same_chain_deal
    ):
        now = utcnow()
        await approval_started(deals, same_chain_deal, now)

        other = await deals.create_deal(
            buyer(), seller(), Decimal("1"), conditions=two_conditions()
        )
        other = await deals.accept_deal(other.id)
        await approval_started(deals, other, now)
        await deals.raise_dispute(other.id, "Not delivered", now=now + timedelta(hours=1))

        failing = AsyncMock(side_effect=ConnectionError("rpc down"))
        with patch.object(ledger, "release", failing):
            report = await run_scheduler_sweep(deals, driver, now=now + timedelta(days=8))

        assert report.auto_released == []
        assert report.auto_cancelled == [other.id]
        assert any(e.startswith(same_chain_deal.id) and "rpc down" in e for e in report.errors)
        assert (await deals.get_deal(other.id)).deal_status == DealStatus.CANCELLED
        deal = await deals.get_deal(same_chain_deal.id)
        assert deal.deal_status == DealStatus.AWAITING_RELEASE_EXECUTION

        # The outage is over; the next sweep finishes the release
        report = await run_scheduler_sweep(deals, driver, now=now + timedelta(days=8, minutes=5))
        assert report.reconciled == [same_chain_deal.id]
        assert (await deals.get_deal(same_chain_deal.id)).deal_status == DealStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_loop_survives_failed_sweep(self, deals, driver):
        sweeps = AsyncMock(
            side_effect=[RuntimeError("database locked"), SweepReport(), asyncio.CancelledError()]
        )
        with patch("escrowbridge.services.scheduler.run_scheduler_sweep", sweeps):
            with pytest.raises(asyncio.CancelledError):
                await sweep_forever(deals, driver, interval=0)

        assert sweeps.await_count == 3

    @pytest.mark.asyncio
    async def test_single_sweep_logs_failure(self, deals, driver):
        sweeps = AsyncMock(side_effect=RuntimeError("database locked"))
        with patch("escrowbridge.services.scheduler.run_scheduler_sweep", sweeps):
            await sweep_forever(deals, driver, interval=0, once=True)

        sweeps.assert_awaited_once()
