"""EscrowBridge - cross-chain escrow deals."""

__version__ = "0.1.0"
