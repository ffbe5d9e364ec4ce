"""Tests for persistence: compare-and-swap writes, timeline and queries."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.orm.exc import StaleDataError

from escrowbridge.ledger.models import Deal, DealStatus, new_id
from escrowbridge.ledger.repository import EscrowRepository
from escrowbridge.utils.timeutil import utcnow


def make_deal(**overrides) -> Deal:
    now = utcnow()
    fields = dict(
        id=new_id("deal"),
        status=DealStatus.AWAITING_DEPOSIT.value,
        buyer_ref="buyer-1",
        buyer_network="ethereum",
        buyer_address="0x" + "1" * 40,
        seller_ref="seller-1",
        seller_network="ethereum",
        seller_address="0x" + "2" * 40,
        amount=Decimal("2.5"),
        transaction_type="same_chain",
        event_seq=0,
        created_at=now,
        updated_at=now,
    )
    fields.update(overrides)
    return Deal(**fields)


async def store(session_factory, deal: Deal) -> Deal:
    async with session_factory() as session:
        await EscrowRepository(session).add_deal(deal)
        await session.commit()
    return deal


class TestCompareAndSwap:
    """Tests for version-checked writes."""

    @pytest.mark.asyncio
    async def test_version_increments(self, session_factory):
        deal = await store(session_factory, make_deal())
        assert deal.version == 1

        async with session_factory() as session:
            loaded = await EscrowRepository(session).get_deal(deal.id)
            loaded.status = DealStatus.AWAITING_FULFILLMENT.value
            await session.commit()
            assert loaded.version == 2

    @pytest.mark.asyncio
    async def test_stale_write_is_rejected(self, session_factory):
        deal = await store(session_factory, make_deal())

        async with session_factory() as first, session_factory() as second:
            a = await EscrowRepository(first).get_deal(deal.id)
            b = await EscrowRepository(second).get_deal(deal.id)

            a.status = DealStatus.AWAITING_FULFILLMENT.value
            await first.commit()

            b.status = DealStatus.CANCELLED.value
            with pytest.raises(StaleDataError):
                await second.commit()
            await second.rollback()

        async with session_factory() as session:
            stored = await EscrowRepository(session).get_deal(deal.id)
            assert stored.status == DealStatus.AWAITING_FULFILLMENT.value


class TestStorageTypes:
    """Tests for decimal and timestamp columns."""

    @pytest.mark.asyncio
    async def test_decimal_round_trip_is_exact(self, session_factory):
        deal = await store(session_factory, make_deal(amount=Decimal("0.000000000000000001")))

        async with session_factory() as session:
            stored = await EscrowRepository(session).get_deal(deal.id)
        assert stored.amount == Decimal("0.000000000000000001")
        assert isinstance(stored.amount, Decimal)

    @pytest.mark.asyncio
    async def test_timestamps_are_utc_aware(self, session_factory):
        deal = await store(session_factory, make_deal())

        async with session_factory() as session:
            stored = await EscrowRepository(session).get_deal(deal.id)
        assert stored.created_at.tzinfo is not None
        assert stored.created_at.utcoffset() == timedelta(0)


class TestTimeline:
    """Tests for ordered, de-duplicated timeline events."""

    @pytest.mark.asyncio
    async def test_sequence_and_dedup(self, session_factory):
        deal = make_deal()
        deal.record_event("one", "first")
        deal.record_event("two", "second", dedup_key="once")
        assert deal.record_event("two", "again", dedup_key="once") is None
        await store(session_factory, deal)

        async with session_factory() as session:
            stored = await EscrowRepository(session).get_deal(deal.id)
            stored.record_event("three", "third")
            await session.commit()

        async with session_factory() as session:
            stored = await EscrowRepository(session).get_deal(deal.id)
        assert [e.sequence for e in stored.timeline] == [1, 2, 3]
        assert [e.event_type for e in stored.timeline] == ["one", "two", "three"]

    @pytest.mark.asyncio
    async def test_conditions_by_id_or_key(self, session_factory):
        deal = make_deal()
        deal.add_condition("CUSTOM", "Keys handed over", key="keys")
        await store(session_factory, deal)

        async with session_factory() as session:
            stored = await EscrowRepository(session).get_deal(deal.id)
        condition = stored.get_condition("keys")
        assert condition is not None
        assert stored.get_condition(condition.id) is condition
        assert not stored.all_conditions_fulfilled


class TestQueries:
    """Tests for scheduler queries."""

    @pytest.mark.asyncio
    async def test_due_approvals_and_disputes(self, session_factory):
        now = utcnow()
        due = await store(
            session_factory,
            make_deal(status=DealStatus.IN_APPROVAL.value, approval_deadline=now - timedelta(minutes=1)),
        )
        await store(
            session_factory,
            make_deal(status=DealStatus.IN_APPROVAL.value, approval_deadline=now + timedelta(hours=1)),
        )
        disputed = await store(
            session_factory,
            make_deal(status=DealStatus.IN_DISPUTE.value, dispute_deadline=now - timedelta(days=1)),
        )

        async with session_factory() as session:
            repo = EscrowRepository(session)
            assert [d.id for d in await repo.get_due_approvals(now)] == [due.id]
            assert [d.id for d in await repo.get_due_disputes(now)] == [disputed.id]

    @pytest.mark.asyncio
    async def test_refunds_pending(self, session_factory):
        now = utcnow()
        pending = await store(
            session_factory,
            make_deal(status=DealStatus.CANCELLED.value, deposit_confirmed_at=now),
        )
        await store(
            session_factory,
            make_deal(
                status=DealStatus.CANCELLED.value,
                deposit_confirmed_at=now,
                refund_reference="sim:refund:x",
            ),
        )
        await store(session_factory, make_deal(status=DealStatus.CANCELLED.value))

        async with session_factory() as session:
            refunds = await EscrowRepository(session).get_refunds_pending()
        assert [d.id for d in refunds] == [pending.id]

    @pytest.mark.asyncio
    async def test_list_deals_by_party(self, session_factory):
        await store(session_factory, make_deal(buyer_ref="alice"))
        await store(session_factory, make_deal(seller_ref="alice"))
        await store(session_factory, make_deal())

        async with session_factory() as session:
            repo = EscrowRepository(session)
            assert len(await repo.list_deals(party_ref="alice")) == 2
            assert len(await repo.list_deals(status=DealStatus.AWAITING_DEPOSIT)) == 3
