"""HTTP API for escrow deals."""
