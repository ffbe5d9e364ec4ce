"""Pytest configuration and fixtures."""

import os
from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "false"
os.environ["DRY_RUN"] = "true"

from escrowbridge.config import build_settings
from escrowbridge.escrow.dry_run import DryRunEscrowLedger
from escrowbridge.ledger.database import create_engine_for, create_session_factory, create_tables
from escrowbridge.routing.dry_run import DryRunRouteProvider
from escrowbridge.services.deal_machine import ConditionSpec, PartyInfo
from escrowbridge.services.factory import create_services
from escrowbridge.utils.timeutil import utcnow

BUYER_ADDRESS = "0x" + "1" * 40
SELLER_ADDRESS = "0x" + "2" * 40


def buyer(network: str = "ethereum") -> PartyInfo:
    return PartyInfo(ref="buyer-1", network=network, address=BUYER_ADDRESS)


def seller(network: str = "ethereum") -> PartyInfo:
    return PartyInfo(ref="seller-1", network=network, address=SELLER_ADDRESS)


def two_conditions() -> list[ConditionSpec]:
    return [
        ConditionSpec(description="Home inspection passed", condition_type="INSPECTION"),
        ConditionSpec(description="Title documents delivered", condition_type="DOCUMENTS"),
    ]


def later(**kwargs):
    """A time offset from now."""
    return utcnow() + timedelta(**kwargs)


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a temporary SQLite file."""
    return build_settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}",
        debug=False,
        dry_run=True,
        execution_max_retries=1,
        execution_backoff_base_seconds=60,
        provider_timeout_seconds=5.0,
        execution_poll_interval_seconds=0.01,
    )


@pytest_asyncio.fixture
async def db_engine(settings):
    """Create a file-backed database engine with all tables."""
    engine = create_engine_for(settings.database_url)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def provider():
    """Simulated route provider: one PENDING poll, then DONE."""
    return DryRunRouteProvider(polls_to_complete=1)


@pytest.fixture
def ledger():
    return DryRunEscrowLedger()


@pytest.fixture
def services(settings, session_factory, provider, ledger):
    """Fully wired services over the test database."""
    return create_services(
        settings=settings,
        session_factory=session_factory,
        providers=[provider],
        ledger=ledger,
    )


@pytest.fixture
def deals(services):
    return services.deals


@pytest.fixture
def driver(services):
    return services.driver


@pytest_asyncio.fixture
async def same_chain_deal(deals):
    """Accepted same-chain deal for 2.5 ETH with two conditions."""
    deal = await deals.create_deal(
        buyer(), seller(), Decimal("2.5"), conditions=two_conditions()
    )
    return await deals.accept_deal(deal.id)


@pytest_asyncio.fixture
async def cross_chain_deal(deals):
    """Accepted ethereum -> polygon USDC deal with a deposit execution started."""
    deal = await deals.create_deal(
        buyer("ethereum"), seller("polygon"), Decimal("1000"), asset="USDC"
    )
    return await deals.accept_deal(deal.id)
