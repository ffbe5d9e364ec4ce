"""Deadline and execution sweep.

Runs the time-driven side of the system: auto-release after the approval
window, auto-cancel after the dispute window, polling and retrying
executions, and re-driving follow-ups a crash or lost callback left behind.
Every step is idempotent, so running the sweep twice is harmless.

Usage:
    python -m escrowbridge.services.scheduler --once
    python -m escrowbridge.services.scheduler --interval 300
"""

import argparse
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escrowbridge.errors import EscrowError
from escrowbridge.ledger.database import close_db, get_session_factory, init_db
from escrowbridge.ledger.models import ExecutionStatus
from escrowbridge.ledger.repository import EscrowRepository
from escrowbridge.services.deal_machine import DealService
from escrowbridge.services.execution_driver import ExecutionDriver
from escrowbridge.utils.timeutil import ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """What one sweep did."""

    auto_released: list[str] = field(default_factory=list)
    auto_cancelled: list[str] = field(default_factory=list)
    polled: list[str] = field(default_factory=list)
    stuck: list[str] = field(default_factory=list)
    retried: list[str] = field(default_factory=list)
    failed_permanently: list[str] = field(default_factory=list)
    reconciled: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def total_actions(self) -> int:
        return (
            len(self.auto_released)
            + len(self.auto_cancelled)
            + len(self.retried)
            + len(self.failed_permanently)
            + len(self.reconciled)
        )

    def to_dict(self) -> dict:
        return {
            "auto_released": self.auto_released,
            "auto_cancelled": self.auto_cancelled,
            "polled": self.polled,
            "stuck": self.stuck,
            "retried": self.retried,
            "failed_permanently": self.failed_permanently,
            "reconciled": self.reconciled,
            "errors": self.errors,
        }


async def _drive_execution(
    driver: ExecutionDriver, execution_id: str, now: datetime, report: SweepReport
) -> None:
    update = await driver.poll(execution_id, now=now)
    report.polled.append(execution_id)
    if update.status == ExecutionStatus.STUCK:
        report.stuck.append(execution_id)
    elif not (update.status == ExecutionStatus.FAILED and update.retryable):
        if update.permanently_failed and update.changed:
            report.failed_permanently.append(execution_id)
        return
    elif update.next_retry_at and update.next_retry_at > now:
        return

    update = await driver.cancel_or_retry(execution_id, now=now)
    if update.permanently_failed:
        report.failed_permanently.append(execution_id)
    elif update.changed:
        report.retried.append(execution_id)


async def run_scheduler_sweep(
    deal_service: DealService,
    driver: ExecutionDriver,
    now: Optional[datetime] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> SweepReport:
    """Run one sweep over every deal and execution that is due.

    Args:
        deal_service: Deal lifecycle controller
        driver: Execution driver
        now: Sweep time (default: current UTC time)
        session_factory: Session factory (default: the service's)

    Returns:
        SweepReport listing the affected deal and execution ids
    """
    now = ensure_utc(now) if now else utcnow()
    session_factory = session_factory or deal_service.session_factory
    report = SweepReport()

    async with session_factory() as session:
        repo = EscrowRepository(session)
        due_approvals = [d.id for d in await repo.get_due_approvals(now)]
        due_disputes = [d.id for d in await repo.get_due_disputes(now)]

    for deal_id in due_approvals:
        try:
            if await deal_service.auto_release(deal_id, now=now) is not None:
                report.auto_released.append(deal_id)
        except EscrowError as e:
            logger.warning(f"Auto-release failed for deal {deal_id}: {e}")
            report.errors.append(f"{deal_id}: {e}")
        except Exception as e:
            logger.error(f"Error auto-releasing deal {deal_id}: {e}")
            report.errors.append(f"{deal_id}: {e}")

    for deal_id in due_disputes:
        try:
            if await deal_service.auto_cancel(deal_id, now=now) is not None:
                report.auto_cancelled.append(deal_id)
        except EscrowError as e:
            logger.warning(f"Auto-cancel failed for deal {deal_id}: {e}")
            report.errors.append(f"{deal_id}: {e}")
        except Exception as e:
            logger.error(f"Error auto-cancelling deal {deal_id}: {e}")
            report.errors.append(f"{deal_id}: {e}")

    async with session_factory() as session:
        repo = EscrowRepository(session)
        in_progress = [e.id for e in await repo.get_in_progress_executions()]
        retry_due = [e.id for e in await repo.get_retry_due_executions(now)]

    for execution_id in in_progress:
        try:
            await _drive_execution(driver, execution_id, now, report)
        except EscrowError as e:
            logger.warning(f"Polling execution {execution_id} failed: {e}")
            report.errors.append(f"{execution_id}: {e}")
        except Exception as e:
            logger.error(f"Error polling execution {execution_id}: {e}")
            report.errors.append(f"{execution_id}: {e}")

    for execution_id in retry_due:
        if execution_id in report.retried or execution_id in report.failed_permanently:
            continue
        try:
            update = await driver.cancel_or_retry(execution_id, now=now)
            if update.permanently_failed:
                report.failed_permanently.append(execution_id)
            elif update.changed:
                report.retried.append(execution_id)
        except EscrowError as e:
            logger.warning(f"Retrying execution {execution_id} failed: {e}")
            report.errors.append(f"{execution_id}: {e}")
        except Exception as e:
            logger.error(f"Error retrying execution {execution_id}: {e}")
            report.errors.append(f"{execution_id}: {e}")

    async with session_factory() as session:
        repo = EscrowRepository(session)
        follow_ups = [d.id for d in await repo.get_deals_awaiting_execution()]
        follow_ups.extend(d.id for d in await repo.get_refunds_pending())

    for deal_id in follow_ups:
        try:
            if await deal_service.reconcile(deal_id, now=now):
                report.reconciled.append(deal_id)
        except EscrowError as e:
            logger.warning(f"Reconciling deal {deal_id} failed: {e}")
            report.errors.append(f"{deal_id}: {e}")
        except Exception as e:
            logger.error(f"Error reconciling deal {deal_id}: {e}")
            report.errors.append(f"{deal_id}: {e}")

    if report.total_actions or report.errors:
        logger.info(
            f"Sweep at {now.isoformat()}: released={len(report.auto_released)} "
            f"cancelled={len(report.auto_cancelled)} retried={len(report.retried)} "
            f"failed={len(report.failed_permanently)} reconciled={len(report.reconciled)} "
            f"errors={len(report.errors)}"
        )
    return report


async def sweep_forever(
    deal_service: DealService, driver: ExecutionDriver, interval: float, once: bool = False
) -> None:
    """Sweep at a fixed interval. A failing sweep is logged and the loop goes on."""
    while True:
        try:
            report = await run_scheduler_sweep(deal_service, driver)
            if once:
                logger.info(f"Sweep result: {report.to_dict()}")
        except Exception as e:
            logger.error(f"Scheduler sweep error: {e}")

        if once:
            return
        await asyncio.sleep(interval)


async def run_forever(interval: int, once: bool = False) -> None:
    """Run sweeps until cancelled."""
    from escrowbridge.services.factory import create_services

    await init_db()
    services = create_services(session_factory=get_session_factory())
    logger.info(f"Scheduler started (interval {interval}s, dry_run={services.settings.dry_run})")

    try:
        await sweep_forever(services.deals, services.driver, interval, once=once)
    finally:
        await close_db()


def main() -> None:
    from escrowbridge.config import get_settings

    settings = get_settings()
    parser = argparse.ArgumentParser(description="Escrow deadline and execution sweeper")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    parser.add_argument(
        "--interval",
        type=int,
        default=settings.scheduler_interval_seconds,
        help="Seconds between sweeps",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(run_forever(args.interval, once=args.once))
    except KeyboardInterrupt:
        logger.info("Scheduler stopped")


if __name__ == "__main__":
    main()
