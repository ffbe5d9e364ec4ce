"""Escrow ledger collaborator interface.

The ledger holds the escrowed funds (an on-chain contract in production).
It is treated as an eventually-consistent event source: each call returns
the event it emitted, but confirmation may arrive later.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from escrowbridge.utils.timeutil import utcnow


class LedgerEventType(str, Enum):
    DEPOSIT = "deposit"
    RELEASE = "release"
    REFUND = "refund"


@dataclass
class LedgerEvent:
    """Confirmation event emitted by the escrow ledger."""

    event_type: LedgerEventType
    deal_id: str
    reference: str  # tx hash or ledger-specific id
    amount: Optional[Decimal] = None
    recipient: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type.value,
            "deal_id": self.deal_id,
            "reference": self.reference,
            "amount": str(self.amount) if self.amount is not None else None,
            "recipient": self.recipient,
            "created_at": self.created_at.isoformat(),
        }


class EscrowLedger(ABC):
    """Abstract base class for escrow ledgers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Ledger name."""
        raise NotImplementedError()

    @abstractmethod
    async def deposit(self, deal_id: str, amount: Decimal) -> LedgerEvent:
        """Lock funds for a deal.

        Args:
            deal_id: Deal identifier
            amount: Amount to lock

        Returns:
            Deposit confirmation event
        """
        raise NotImplementedError()

    @abstractmethod
    async def release(self, deal_id: str, to: str) -> LedgerEvent:
        """Release escrowed funds to the recipient address."""
        raise NotImplementedError()

    @abstractmethod
    async def refund(self, deal_id: str) -> LedgerEvent:
        """Return escrowed funds to the depositor."""
        raise NotImplementedError()
