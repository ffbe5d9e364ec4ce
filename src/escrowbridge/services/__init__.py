"""Deal lifecycle, execution driving and scheduling."""

from escrowbridge.services.deal_machine import (
    ConditionSpec,
    DealService,
    DealStatusView,
    PartyInfo,
)
from escrowbridge.services.execution_driver import (
    ExecutionDriver,
    ExecutionPolicy,
    ExecutionUpdate,
)
from escrowbridge.services.factory import EscrowServices, create_services
from escrowbridge.services.scheduler import SweepReport, run_scheduler_sweep

__all__ = [
    "ConditionSpec",
    "DealService",
    "DealStatusView",
    "EscrowServices",
    "ExecutionDriver",
    "ExecutionPolicy",
    "ExecutionUpdate",
    "PartyInfo",
    "SweepReport",
    "create_services",
    "run_scheduler_sweep",
]
