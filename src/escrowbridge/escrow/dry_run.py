"""Dry-run escrow ledger for testing (no funds move)."""

import logging
from decimal import Decimal

from escrowbridge.escrow.base import EscrowLedger, LedgerEvent, LedgerEventType

logger = logging.getLogger(__name__)


class DryRunEscrowLedger(EscrowLedger):
    """Simulated ledger that records every call.

    Calls are idempotent per (event type, deal): repeating one returns the
    original event instead of emitting a new one.
    """

    def __init__(self):
        self.events: list[LedgerEvent] = []
        self._by_key: dict[tuple[LedgerEventType, str], LedgerEvent] = {}

    @property
    def name(self) -> str:
        return "dry_run"

    def _emit(self, event_type: LedgerEventType, deal_id: str, **kwargs) -> LedgerEvent:
        key = (event_type, deal_id)
        if key in self._by_key:
            return self._by_key[key]

        event = LedgerEvent(
            event_type=event_type,
            deal_id=deal_id,
            reference=f"sim:{event_type.value}:{deal_id}",
            **kwargs,
        )
        self._by_key[key] = event
        self.events.append(event)
        logger.info(f"[DRY RUN] Escrow {event_type.value} for deal {deal_id}")
        return event

    def calls(self, event_type: LedgerEventType) -> list[LedgerEvent]:
        """Events of one type, in emission order."""
        return [e for e in self.events if e.event_type == event_type]

    async def deposit(self, deal_id: str, amount: Decimal) -> LedgerEvent:
        return self._emit(LedgerEventType.DEPOSIT, deal_id, amount=amount)

    async def release(self, deal_id: str, to: str) -> LedgerEvent:
        return self._emit(LedgerEventType.RELEASE, deal_id, recipient=to)

    async def refund(self, deal_id: str) -> LedgerEvent:
        return self._emit(LedgerEventType.REFUND, deal_id)
