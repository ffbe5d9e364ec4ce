"""SQLAlchemy models for deals and executions."""

import json
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from escrowbridge.utils.timeutil import ensure_utc, utcnow


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


# ======================
# Column types
# ======================


class DecimalString(TypeDecorator):
    """Exact decimal stored as text. Floats are rejected."""

    impl = String(80)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, float):
            raise TypeError("Amounts must be Decimal, not float")
        return str(Decimal(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


class UTCDateTime(TypeDecorator):
    """Datetime stored as naive UTC, always returned timezone-aware."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        return ensure_utc(value)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


# ======================
# Enums
# ======================


class DealStatus(str, Enum):
    """Status of a deal."""

    AWAITING_OTHER_PARTY = "AWAITING_OTHER_PARTY"
    AWAITING_DEPOSIT = "AWAITING_DEPOSIT"
    AWAITING_CROSS_CHAIN_DEPOSIT = "AWAITING_CROSS_CHAIN_DEPOSIT"
    AWAITING_FULFILLMENT = "AWAITING_FULFILLMENT"
    READY_FOR_APPROVAL = "READY_FOR_APPROVAL"
    IN_APPROVAL = "IN_APPROVAL"
    IN_DISPUTE = "IN_DISPUTE"
    AWAITING_RELEASE_EXECUTION = "AWAITING_RELEASE_EXECUTION"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ConditionType(str, Enum):
    """Kinds of release conditions."""

    INSPECTION = "INSPECTION"
    APPRAISAL = "APPRAISAL"
    TITLE = "TITLE"
    FINANCING = "FINANCING"
    DOCUMENTS = "DOCUMENTS"
    CROSS_CHAIN = "CROSS_CHAIN"
    CUSTOM = "CUSTOM"


class ExecutionSide(str, Enum):
    """Which leg of the deal an execution moves."""

    DEPOSIT = "deposit"  # buyer network -> escrow network
    RELEASE = "release"  # escrowed asset -> seller payout asset


class ExecutionStatus(str, Enum):
    """Status of an execution.

    STUCK is reported for IN_PROGRESS executions past their threshold; it is
    an annotation, the stored status stays IN_PROGRESS.
    """

    STARTED = "STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    FAILED = "FAILED"
    STUCK = "STUCK"


# ======================
# Deals
# ======================


class Deal(Base):
    """One escrow transaction between a buyer and a seller."""

    __tablename__ = "deals"

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=lambda: new_id("deal"))
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(40), default=DealStatus.AWAITING_OTHER_PARTY.value, index=True
    )

    # Parties
    buyer_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    buyer_network: Mapped[str] = mapped_column(String(30), nullable=False)
    buyer_address: Mapped[str] = mapped_column(String(255), nullable=False)
    seller_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    seller_network: Mapped[str] = mapped_column(String(30), nullable=False)
    seller_address: Mapped[str] = mapped_column(String(255), nullable=False)

    # Value
    amount: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    asset: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # None = native
    payout_asset: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    transaction_type: Mapped[str] = mapped_column(String(40), nullable=False)
    is_cross_chain: Mapped[bool] = mapped_column(Boolean, default=False)

    # Routing
    selected_route_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    route_score: Mapped[Optional[Decimal]] = mapped_column(DecimalString, nullable=True)
    route_attempts: Mapped[int] = mapped_column(Integer, default=0)
    execution_id: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    awaiting_manual_route: Mapped[bool] = mapped_column(Boolean, default=False)
    needs_manual_review: Mapped[bool] = mapped_column(Boolean, default=False)
    manual_review_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Escrow ledger
    deposit_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    deposit_confirmed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    release_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    refund_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Time-boxed phases
    approval_deadline: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    dispute_deadline: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    dispute_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolution: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Next timeline sequence number
    event_seq: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    # Relationships
    conditions: Mapped[list["DealCondition"]] = relationship(
        back_populates="deal",
        lazy="selectin",
        order_by="DealCondition.position",
        cascade="all, delete-orphan",
    )
    timeline: Mapped[list["DealEvent"]] = relationship(
        back_populates="deal",
        lazy="selectin",
        order_by="DealEvent.sequence",
        cascade="all, delete-orphan",
    )

    # Compare-and-swap: every UPDATE carries "WHERE version = <loaded version>"
    __mapper_args__ = {"version_id_col": version}

    @property
    def deal_status(self) -> DealStatus:
        return DealStatus(self.status)

    @property
    def selected_route(self) -> Optional[dict]:
        if not self.selected_route_json:
            return None
        return json.loads(self.selected_route_json)

    @selected_route.setter
    def selected_route(self, value: Optional[dict]) -> None:
        self.selected_route_json = json.dumps(value) if value is not None else None

    @property
    def all_conditions_fulfilled(self) -> bool:
        return all(c.fulfilled for c in self.conditions)

    def get_condition(self, condition_id: str) -> Optional["DealCondition"]:
        for condition in self.conditions:
            if condition.id == condition_id or condition.key == condition_id:
                return condition
        return None

    def add_condition(
        self,
        condition_type: str,
        description: str,
        key: Optional[str] = None,
    ) -> "DealCondition":
        condition = DealCondition(
            condition_type=condition_type,
            description=description,
            key=key,
            position=len(self.conditions),
            fulfilled=False,
        )
        self.conditions.append(condition)
        return condition

    def has_event(self, dedup_key: str) -> bool:
        return any(e.dedup_key == dedup_key for e in self.timeline)

    def touch(self, now: Optional[datetime] = None) -> None:
        self.updated_at = now or utcnow()

    def record_event(
        self,
        event_type: str,
        message: str,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
        data: Optional[dict[str, Any]] = None,
        dedup_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional["DealEvent"]:
        """Append a timeline event with the next sequence number.

        Returns None without appending if ``dedup_key`` was already recorded.
        """
        if dedup_key is not None and self.has_event(dedup_key):
            return None

        self.event_seq = (self.event_seq or 0) + 1
        event = DealEvent(
            sequence=self.event_seq,
            event_type=event_type,
            message=message,
            from_status=from_status,
            to_status=to_status,
            data_json=json.dumps(data) if data else None,
            dedup_key=dedup_key,
            created_at=now or utcnow(),
        )
        self.timeline.append(event)
        self.touch(now)
        return event


class DealCondition(Base):
    """A named requirement gating release. Never deleted."""

    __tablename__ = "deal_conditions"
    __table_args__ = (Index("ix_deal_conditions_deal_key", "deal_id", "key", unique=True),)

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=lambda: new_id("cond"))
    deal_id: Mapped[str] = mapped_column(ForeignKey("deals.id"), nullable=False, index=True)
    key: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    condition_type: Mapped[str] = mapped_column(String(30), default=ConditionType.CUSTOM.value)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    fulfilled: Mapped[bool] = mapped_column(Boolean, default=False)
    fulfilled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    fulfilled_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    deal: Mapped["Deal"] = relationship(back_populates="conditions")


class DealEvent(Base):
    """Append-only timeline entry."""

    __tablename__ = "deal_timeline"
    __table_args__ = (
        Index("ix_deal_timeline_deal_sequence", "deal_id", "sequence", unique=True),
        Index("ix_deal_timeline_deal_dedup", "deal_id", "dedup_key", unique=True),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    deal_id: Mapped[str] = mapped_column(ForeignKey("deals.id"), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    from_status: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    to_status: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    data_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    dedup_key: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    deal: Mapped["Deal"] = relationship(back_populates="timeline")

    @property
    def data(self) -> dict:
        return json.loads(self.data_json) if self.data_json else {}


# ======================
# Executions
# ======================


class Execution(Base):
    """Runtime record of driving a route to completion.

    References its deal by id only so monitoring never depends on the deal
    row being readable.
    """

    __tablename__ = "executions"

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=lambda: new_id("exec"))
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    deal_id: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    side: Mapped[str] = mapped_column(String(10), default=ExecutionSide.DEPOSIT.value)
    route_id: Mapped[str] = mapped_column(String(200), nullable=False)
    route_json: Mapped[str] = mapped_column(Text, nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_handle: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    source_tx_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    destination_tx_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), default=ExecutionStatus.STARTED.value, index=True
    )
    substatus: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    expected_duration_seconds: Mapped[int] = mapped_column(Integer, default=0)
    stuck_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    retryable: Mapped[bool] = mapped_column(Boolean, default=True)
    outcome_unknown: Mapped[bool] = mapped_column(Boolean, default=False)
    # Set once any attempt may have reached the provider; never cleared
    ever_submitted: Mapped[bool] = mapped_column(Boolean, default=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    update_seq: Mapped[int] = mapped_column(Integer, default=0)

    started_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    status_history: Mapped[list["ExecutionStatusUpdate"]] = relationship(
        back_populates="execution",
        lazy="selectin",
        order_by="ExecutionStatusUpdate.sequence",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def execution_status(self) -> ExecutionStatus:
        return ExecutionStatus(self.status)

    @property
    def reported_status(self) -> ExecutionStatus:
        """Status as surfaced to callers (STUCK overlays IN_PROGRESS)."""
        if self.status == ExecutionStatus.IN_PROGRESS.value and self.stuck_at is not None:
            return ExecutionStatus.STUCK
        return ExecutionStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.status == ExecutionStatus.DONE.value or (
            self.status == ExecutionStatus.FAILED.value and not self.retryable
        )

    @property
    def route(self) -> dict:
        return json.loads(self.route_json)

    def has_update(self, dedup_key: str) -> bool:
        return any(u.dedup_key == dedup_key for u in self.status_history)

    def record_update(
        self,
        status: ExecutionStatus,
        detail: str = "",
        substatus: Optional[str] = None,
        now: Optional[datetime] = None,
        dedup_key: Optional[str] = None,
    ) -> Optional["ExecutionStatusUpdate"]:
        """Append a status update once per (attempt, status).

        Returns None if this status was already recorded for the attempt.
        """
        dedup_key = dedup_key or f"{self.retry_count}:{status.value}"
        if self.has_update(dedup_key):
            return None

        self.update_seq = (self.update_seq or 0) + 1
        update = ExecutionStatusUpdate(
            sequence=self.update_seq,
            attempt=self.retry_count,
            status=status.value,
            substatus=substatus,
            detail=detail,
            dedup_key=dedup_key,
            created_at=now or utcnow(),
        )
        self.status_history.append(update)
        self.updated_at = now or utcnow()
        return update


class ExecutionStatusUpdate(Base):
    """One distinct status observed for an execution attempt."""

    __tablename__ = "execution_status_updates"
    __table_args__ = (
        Index("ix_execution_updates_exec_dedup", "execution_id", "dedup_key", unique=True),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    execution_id: Mapped[str] = mapped_column(ForeignKey("executions.id"), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    substatus: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    dedup_key: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    execution: Mapped["Execution"] = relationship(back_populates="status_history")
