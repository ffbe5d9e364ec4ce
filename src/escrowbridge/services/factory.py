"""Wiring for the escrow services."""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escrowbridge.config import Settings, get_settings
from escrowbridge.escrow.base import EscrowLedger
from escrowbridge.ledger.database import get_session_factory
from escrowbridge.routing.base import RouteAggregator, RouteProvider
from escrowbridge.routing.factory import create_aggregator
from escrowbridge.services.deal_machine import DealService
from escrowbridge.services.execution_driver import ExecutionDriver, ExecutionPolicy

logger = logging.getLogger(__name__)


@dataclass
class EscrowServices:
    """Everything a caller needs to drive deals."""

    settings: Settings
    aggregator: RouteAggregator
    driver: ExecutionDriver
    deals: DealService
    ledger: EscrowLedger
    session_factory: async_sessionmaker[AsyncSession]


def create_ledger(settings: Optional[Settings] = None) -> EscrowLedger:
    """Create the escrow ledger.

    Only the simulated ledger ships; an on-chain ledger is injected by the
    deployment through ``create_services(ledger=...)``.
    """
    settings = settings or get_settings()
    from escrowbridge.escrow.dry_run import DryRunEscrowLedger

    if not settings.dry_run:
        logger.warning("No on-chain escrow ledger configured, using dry-run ledger")
    return DryRunEscrowLedger()


def create_services(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    providers: Optional[list[RouteProvider]] = None,
    ledger: Optional[EscrowLedger] = None,
) -> EscrowServices:
    """Build the aggregator, driver and deal service and connect them.

    Args:
        settings: Settings to use (defaults to cached settings)
        session_factory: Session factory (defaults to the global one)
        providers: Explicit route providers
        ledger: Escrow ledger (defaults to the dry-run ledger)

    Returns:
        EscrowServices with the driver reporting into the deal service
    """
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    aggregator = create_aggregator(settings, providers)
    ledger = ledger or create_ledger(settings)

    driver = ExecutionDriver(
        aggregator,
        session_factory=session_factory,
        policy=ExecutionPolicy.from_settings(settings),
    )
    deals = DealService(
        aggregator,
        driver,
        ledger,
        session_factory=session_factory,
        settings=settings,
    )
    driver.set_status_callback(deals.handle_execution_update)

    return EscrowServices(
        settings=settings,
        aggregator=aggregator,
        driver=driver,
        deals=deals,
        ledger=ledger,
        session_factory=session_factory,
    )
