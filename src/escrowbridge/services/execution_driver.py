"""Execution driver.

Drives a selected route to completion:

    STARTED -> IN_PROGRESS -> DONE | FAILED

An IN_PROGRESS execution that outlives ``expected duration x multiplier``
is reported as STUCK (stored as ``stuck_at``, status stays IN_PROGRESS).

Every provider call happens outside a database transaction. Its result is
applied afterwards only if the execution record is still at the version
that was read before the call, so an abandoned or duplicated call never
advances state by itself.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from escrowbridge.config import Settings, get_settings
from escrowbridge.errors import (
    EscrowError,
    ExecutionFailed,
    ExecutionNotFound,
    ExecutionRejected,
    ProviderUnavailable,
)
from escrowbridge.ledger.database import get_session_factory
from escrowbridge.ledger.models import (
    Execution,
    ExecutionSide,
    ExecutionStatus,
    new_id,
)
from escrowbridge.ledger.repository import EscrowRepository
from escrowbridge.routing.base import (
    LiveRoute,
    ProviderStatus,
    Route,
    RouteAggregator,
    RouteProvider,
)
from escrowbridge.utils.timeutil import ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionPolicy:
    """Retry, backoff and timeout policy for executions."""

    max_retries: int = 3
    backoff_base_seconds: int = 30
    backoff_max_seconds: int = 1800
    timeout_multiplier: Decimal = Decimal("2.0")
    poll_interval_seconds: float = 15.0
    call_timeout_seconds: float = 30.0

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ExecutionPolicy":
        settings = settings or get_settings()
        return cls(
            max_retries=settings.execution_max_retries,
            backoff_base_seconds=settings.execution_backoff_base_seconds,
            backoff_max_seconds=settings.execution_backoff_max_seconds,
            timeout_multiplier=settings.execution_timeout_multiplier,
            poll_interval_seconds=settings.execution_poll_interval_seconds,
            call_timeout_seconds=settings.provider_timeout_seconds,
        )

    def backoff(self, retry_count: int) -> timedelta:
        """Exponential backoff before the next attempt."""
        seconds = min(self.backoff_base_seconds * (2**retry_count), self.backoff_max_seconds)
        return timedelta(seconds=seconds)

    def stuck_after(self, expected_duration_seconds: int) -> timedelta:
        seconds = Decimal(max(expected_duration_seconds, 1)) * self.timeout_multiplier
        return timedelta(seconds=float(seconds))


@dataclass
class ExecutionUpdate:
    """Snapshot of an execution after a driver operation."""

    execution_id: str
    deal_id: str
    side: ExecutionSide
    status: ExecutionStatus
    retry_count: int
    retryable: bool
    outcome_unknown: bool
    detail: str = ""
    changed: bool = False
    # Key of the status update recorded by this operation (None if unchanged)
    dedup_key: Optional[str] = None
    provider_handle: Optional[str] = None
    destination_tx_hash: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    observed_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status == ExecutionStatus.DONE or (
            self.status == ExecutionStatus.FAILED and not self.retryable
        )

    @property
    def permanently_failed(self) -> bool:
        return self.status == ExecutionStatus.FAILED and not self.retryable

    def to_dict(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "deal_id": self.deal_id,
            "side": self.side.value,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "retryable": self.retryable,
            "outcome_unknown": self.outcome_unknown,
            "detail": self.detail,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
        }


StatusCallback = Callable[[ExecutionUpdate], Awaitable[Any]]


def _snapshot(
    execution: Execution, changed: bool = False, dedup_key: Optional[str] = None
) -> ExecutionUpdate:
    return ExecutionUpdate(
        execution_id=execution.id,
        deal_id=execution.deal_id,
        side=ExecutionSide(execution.side),
        status=execution.reported_status,
        retry_count=execution.retry_count,
        retryable=execution.retryable,
        outcome_unknown=execution.outcome_unknown,
        detail=execution.last_error or execution.substatus or "",
        changed=changed,
        dedup_key=dedup_key,
        provider_handle=execution.provider_handle,
        destination_tx_hash=execution.destination_tx_hash,
        next_retry_at=execution.next_retry_at,
    )


class ExecutionDriver:
    """Starts, polls and retries route executions."""

    def __init__(
        self,
        aggregator: RouteAggregator,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        policy: Optional[ExecutionPolicy] = None,
    ):
        self.aggregator = aggregator
        self.session_factory = session_factory or get_session_factory()
        self.policy = policy or ExecutionPolicy.from_settings()
        self._on_status_change: Optional[StatusCallback] = None

    def set_status_callback(self, callback: StatusCallback) -> None:
        """Set callback invoked after every committed status change."""
        self._on_status_change = callback

    async def _emit(self, update: ExecutionUpdate) -> None:
        if update.changed and self._on_status_change is not None:
            await self._on_status_change(update)

    def _provider_for(self, provider_name: str) -> RouteProvider:
        provider = self.aggregator.get_provider(provider_name)
        if provider is None:
            raise ExecutionRejected(f"No route provider named '{provider_name}' is configured")
        return provider

    async def _load(self, execution_id: str) -> Execution:
        async with self.session_factory() as session:
            execution = await EscrowRepository(session).get_execution(execution_id)
            if execution is None:
                raise ExecutionNotFound(execution_id)
            return execution

    async def get_update(self, execution_id: str) -> ExecutionUpdate:
        """Current snapshot without contacting the provider."""
        return _snapshot(await self._load(execution_id))

    # ======================
    # State helpers (mutate a loaded record)
    # ======================

    def _mark_failed(
        self,
        execution: Execution,
        error: str,
        retryable: bool,
        now: datetime,
        substatus: Optional[str] = None,
    ) -> str:
        """Move to FAILED. Returns the dedup key of the recorded update."""
        if retryable and execution.retry_count >= self.policy.max_retries:
            retryable = False
            error = f"{error} (retries exhausted after {execution.retry_count})"

        execution.status = ExecutionStatus.FAILED.value
        execution.substatus = substatus
        execution.last_error = error
        execution.retryable = retryable
        execution.stuck_at = None

        if retryable:
            execution.next_retry_at = now + self.policy.backoff(execution.retry_count)
            key = f"{execution.retry_count}:{ExecutionStatus.FAILED.value}"
            execution.record_update(ExecutionStatus.FAILED, error, substatus, now=now)
            logger.warning(
                f"Execution {execution.id} failed (attempt {execution.retry_count}), "
                f"retry at {execution.next_retry_at.isoformat()}: {error}"
            )
            return key

        execution.next_retry_at = None
        execution.completed_at = now
        # Funds may have left the source once any attempt reached the provider
        execution.outcome_unknown = bool(
            execution.ever_submitted or execution.provider_handle is not None
        )
        key = f"{execution.retry_count}:{ExecutionStatus.FAILED.value}:final"
        execution.record_update(
            ExecutionStatus.FAILED, error, substatus, now=now, dedup_key=key
        )
        logger.error(
            f"Execution {execution.id} failed permanently "
            f"(outcome_unknown={execution.outcome_unknown}): {error}"
        )
        return key

    def _mark_stuck_if_overdue(self, execution: Execution, now: datetime) -> Optional[str]:
        if execution.status != ExecutionStatus.IN_PROGRESS.value or execution.stuck_at:
            return None
        if now - execution.started_at <= self.policy.stuck_after(
            execution.expected_duration_seconds
        ):
            return None

        execution.stuck_at = now
        detail = (
            f"No completion after {int((now - execution.started_at).total_seconds())}s "
            f"(expected {execution.expected_duration_seconds}s)"
        )
        execution.record_update(ExecutionStatus.STUCK, detail, now=now)
        logger.warning(f"Execution {execution.id} is stuck: {detail}")
        return f"{execution.retry_count}:{ExecutionStatus.STUCK.value}"

    async def _commit(self, session: AsyncSession, execution_id: str) -> bool:
        """Commit; False if another writer got there first."""
        try:
            await session.commit()
            return True
        except StaleDataError:
            await session.rollback()
            logger.info(f"Execution {execution_id} changed concurrently, keeping stored state")
            return False

    # ======================
    # Operations
    # ======================

    async def start(
        self,
        route: Route,
        deal_id: str,
        side: ExecutionSide = ExecutionSide.DEPOSIT,
        now: Optional[datetime] = None,
    ) -> str:
        """Begin executing a route.

        Returns:
            The new execution id

        Raises:
            ExecutionRejected: route is an estimate-only placeholder or its
                provider is not configured
        """
        if not isinstance(route, LiveRoute) or not route.is_executable:
            raise ExecutionRejected(
                f"Route {route.route_id} is an estimate-only placeholder and cannot be executed"
            )
        self._provider_for(route.provider)
        now = ensure_utc(now) if now else utcnow()

        execution = Execution(
            id=new_id("exec"),
            deal_id=deal_id,
            side=side.value,
            route_id=route.route_id,
            route_json=json.dumps(route.to_dict()),
            provider=route.provider,
            status=ExecutionStatus.STARTED.value,
            expected_duration_seconds=route.estimated_duration_seconds,
            retry_count=0,
            retryable=True,
            outcome_unknown=False,
            ever_submitted=False,
            update_seq=0,
            started_at=now,
            created_at=now,
            updated_at=now,
        )
        execution.record_update(ExecutionStatus.STARTED, f"Route {route.route_id}", now=now)

        async with self.session_factory() as session:
            await EscrowRepository(session).add_execution(execution)
            await session.commit()
        logger.info(f"Execution {execution.id} created for deal {deal_id} ({side.value})")

        await self._emit(_snapshot(execution, changed=True, dedup_key="0:STARTED"))
        await self._submit(execution.id, now)
        return execution.id

    async def _submit(self, execution_id: str, now: datetime) -> ExecutionUpdate:
        """Hand the route to its provider and record the outcome."""
        execution = await self._load(execution_id)
        seen_version = execution.version
        route = Route.from_dict(execution.route)
        provider = self._provider_for(execution.provider)

        submission = None
        error: Optional[str] = None
        retryable = True
        timed_out = False
        try:
            submission = await asyncio.wait_for(
                provider.start_execution(route), timeout=self.policy.call_timeout_seconds
            )
        except asyncio.TimeoutError:
            # The provider may have broadcast before the deadline hit
            timed_out = True
            error = f"Provider start timed out after {self.policy.call_timeout_seconds}s"
        except ProviderUnavailable as e:
            error = f"Provider unavailable on start: {e}"
        except EscrowError as e:
            error = f"Provider rejected route: {e}"
            retryable = False

        async with self.session_factory() as session:
            execution = await EscrowRepository(session).get_execution(execution_id)
            if execution is None:
                raise ExecutionNotFound(execution_id)
            if execution.version != seen_version:
                return _snapshot(execution)

            if submission is not None or timed_out:
                execution.ever_submitted = True

            if submission is not None:
                execution.provider_handle = submission.handle
                execution.source_tx_hash = submission.source_tx_hash
                execution.status = ExecutionStatus.IN_PROGRESS.value
                execution.last_error = None
                key = f"{execution.retry_count}:{ExecutionStatus.IN_PROGRESS.value}"
                execution.record_update(
                    ExecutionStatus.IN_PROGRESS, f"Submitted as {submission.handle}", now=now
                )
            else:
                key = self._mark_failed(execution, error or "start failed", retryable, now)

            if not await self._commit(session, execution_id):
                return await self.get_update(execution_id)

        if submission is not None:
            logger.info(f"Execution {execution_id} in progress: {submission.handle}")
        update = _snapshot(execution, changed=True, dedup_key=key)
        await self._emit(update)
        return update

    async def poll(self, execution_id: str, now: Optional[datetime] = None) -> ExecutionUpdate:
        """Query the provider and record any status change.

        Safe to call repeatedly. On transient provider errors the last known
        status is returned.
        """
        now = ensure_utc(now) if now else utcnow()
        execution = await self._load(execution_id)
        seen_version = execution.version

        if execution.status == ExecutionStatus.STARTED.value:
            return await self._check_interrupted_start(execution, now)
        if execution.status != ExecutionStatus.IN_PROGRESS.value:
            return _snapshot(execution)

        route = Route.from_dict(execution.route)
        provider = self._provider_for(execution.provider)

        report = None
        try:
            report = await asyncio.wait_for(
                provider.get_status(execution.provider_handle, route),
                timeout=self.policy.call_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Status check for {execution_id} timed out")
        except ProviderUnavailable as e:
            logger.warning(f"Status check for {execution_id} failed: {e}")

        async with self.session_factory() as session:
            execution = await EscrowRepository(session).get_execution(execution_id)
            if execution is None:
                raise ExecutionNotFound(execution_id)
            if execution.version != seen_version:
                return _snapshot(execution)

            key = None
            if report is not None:
                execution.substatus = report.substatus or execution.substatus
                if report.source_tx_hash:
                    execution.source_tx_hash = report.source_tx_hash
                if report.destination_tx_hash:
                    execution.destination_tx_hash = report.destination_tx_hash

                if report.status == ProviderStatus.DONE:
                    key = self._mark_done(execution, report.detail(), now)
                elif report.status == ProviderStatus.FAILED:
                    key = self._mark_failed(
                        execution,
                        report.detail() or "Provider reported failure",
                        report.retryable,
                        now,
                        substatus=report.substatus,
                    )

            if key is None:
                key = self._mark_stuck_if_overdue(execution, now)
            if key is None:
                return _snapshot(execution)

            if not await self._commit(session, execution_id):
                return await self.get_update(execution_id)

        update = _snapshot(execution, changed=True, dedup_key=key)
        await self._emit(update)
        return update

    def _mark_done(self, execution: Execution, detail: str, now: datetime) -> str:
        execution.status = ExecutionStatus.DONE.value
        execution.stuck_at = None
        execution.completed_at = now
        execution.next_retry_at = None
        execution.last_error = None
        execution.record_update(ExecutionStatus.DONE, detail or "Completed", now=now)
        logger.info(f"Execution {execution.id} completed")
        return f"{execution.retry_count}:{ExecutionStatus.DONE.value}"

    async def _check_interrupted_start(self, execution: Execution, now: datetime) -> ExecutionUpdate:
        """A STARTED record with no handle past its threshold was interrupted mid-submit."""
        if execution.provider_handle or now - execution.started_at <= self.policy.stuck_after(
            execution.expected_duration_seconds
        ):
            return _snapshot(execution)

        async with self.session_factory() as session:
            current = await EscrowRepository(session).get_execution(execution.id)
            if current is None:
                raise ExecutionNotFound(execution.id)
            if current.version != execution.version:
                return _snapshot(current)
            # The provider call may have completed before the interruption
            current.ever_submitted = True
            key = self._mark_failed(current, "Start was interrupted before submission", True, now)
            if not await self._commit(session, execution.id):
                return await self.get_update(execution.id)

        update = _snapshot(current, changed=True, dedup_key=key)
        await self._emit(update)
        return update

    async def cancel_or_retry(
        self, execution_id: str, now: Optional[datetime] = None
    ) -> ExecutionUpdate:
        """Retry a failed or stuck execution, or fail it permanently.

        Retries re-submit the same route, at most ``max_retries`` times, each
        after exponential backoff (stuck executions retry immediately). Once
        the bound is reached the execution becomes permanently FAILED and
        funds already in flight are left alone.
        """
        now = ensure_utc(now) if now else utcnow()
        execution = await self._load(execution_id)

        is_stuck = execution.reported_status == ExecutionStatus.STUCK
        is_retryable_failure = (
            execution.status == ExecutionStatus.FAILED.value and execution.retryable
        )
        if not (is_stuck or is_retryable_failure):
            return _snapshot(execution)
        if is_retryable_failure and execution.next_retry_at and execution.next_retry_at > now:
            return _snapshot(execution)

        async with self.session_factory() as session:
            current = await EscrowRepository(session).get_execution(execution_id)
            if current is None:
                raise ExecutionNotFound(execution_id)
            if current.version != execution.version:
                return _snapshot(current)

            if current.retry_count >= self.policy.max_retries:
                reason = "Stuck" if is_stuck else "Failed"
                key = self._mark_failed(
                    current,
                    f"{reason} after {current.retry_count} retries",
                    retryable=False,
                    now=now,
                )
                if not await self._commit(session, execution_id):
                    return await self.get_update(execution_id)
                update = _snapshot(current, changed=True, dedup_key=key)
                await self._emit(update)
                return update

            previous_handle = current.provider_handle
            current.retry_count += 1
            current.status = ExecutionStatus.STARTED.value
            current.stuck_at = None
            current.next_retry_at = None
            current.provider_handle = None
            current.started_at = now
            detail = f"Retry {current.retry_count}/{self.policy.max_retries}"
            if previous_handle:
                detail = f"{detail} (previous handle {previous_handle})"
            current.record_update(ExecutionStatus.STARTED, detail, now=now)
            key = f"{current.retry_count}:{ExecutionStatus.STARTED.value}"
            if not await self._commit(session, execution_id):
                return await self.get_update(execution_id)

        logger.info(f"Execution {execution_id}: {detail}")
        await self._emit(_snapshot(current, changed=True, dedup_key=key))
        return await self._submit(execution_id, now)

    async def wait_for_completion(
        self,
        execution_id: str,
        max_polls: Optional[int] = None,
    ) -> ExecutionUpdate:
        """Cooperatively drive an execution until it is terminal.

        Cancelling the awaiting task is safe at any poll boundary; state is
        always reloaded from the stored record.

        Raises:
            ExecutionFailed: the execution failed permanently
        """
        polls = 0
        while True:
            update = await self.poll(execution_id)
            if update.status == ExecutionStatus.STUCK or (
                update.status == ExecutionStatus.FAILED and update.retryable
            ):
                update = await self.cancel_or_retry(execution_id)

            if update.status == ExecutionStatus.DONE:
                return update
            if update.permanently_failed:
                raise ExecutionFailed(execution_id, update.detail, update.outcome_unknown)

            polls += 1
            if max_polls is not None and polls >= max_polls:
                return update
            await asyncio.sleep(self.policy.poll_interval_seconds)
