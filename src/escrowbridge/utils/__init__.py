"""Utility modules for escrowbridge."""

from escrowbridge.utils.timeutil import ensure_utc, utcnow

__all__ = ["ensure_utc", "utcnow"]
