"""Escrow ledger collaborators."""

from escrowbridge.escrow.base import EscrowLedger, LedgerEvent, LedgerEventType

__all__ = ["EscrowLedger", "LedgerEvent", "LedgerEventType"]
