"""Persistence for deals and executions."""

from escrowbridge.ledger.database import close_db, get_session_factory, init_db
from escrowbridge.ledger.models import (
    ConditionType,
    Deal,
    DealCondition,
    DealEvent,
    DealStatus,
    Execution,
    ExecutionSide,
    ExecutionStatus,
    ExecutionStatusUpdate,
)
from escrowbridge.ledger.repository import EscrowRepository

__all__ = [
    "ConditionType",
    "Deal",
    "DealCondition",
    "DealEvent",
    "DealStatus",
    "EscrowRepository",
    "Execution",
    "ExecutionSide",
    "ExecutionStatus",
    "ExecutionStatusUpdate",
    "close_db",
    "get_session_factory",
    "init_db",
]
