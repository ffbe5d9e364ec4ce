"""Exception taxonomy for the escrow core.

Validation errors are surfaced to the caller and never retried.
Transient provider errors feed the retry/backoff path.
Permanent provider errors are surfaced immediately.
"""

from typing import Optional


class EscrowError(Exception):
    """Base class for all escrow core errors."""


# ======================
# Validation
# ======================


class ValidationError(EscrowError):
    """Bad input supplied by the caller."""


class DealNotFound(EscrowError):
    """Raised when a deal id does not exist."""

    def __init__(self, deal_id: str):
        self.deal_id = deal_id
        super().__init__(f"Deal {deal_id} not found")


class ConditionNotFound(EscrowError):
    """Raised when a condition id does not belong to the deal."""

    def __init__(self, deal_id: str, condition_id: str):
        self.deal_id = deal_id
        self.condition_id = condition_id
        super().__init__(f"Condition {condition_id} not found on deal {deal_id}")


class ExecutionNotFound(EscrowError):
    """Raised when an execution id does not exist."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution {execution_id} not found")


class StateConflict(EscrowError):
    """A transition was requested that the persisted state does not allow.

    The caller must re-fetch the deal before trying again.
    """

    def __init__(self, deal_id: str, current: Optional[str], requested: str, reason: str = ""):
        self.deal_id = deal_id
        self.current = current
        self.requested = requested
        self.reason = reason
        message = f"Deal {deal_id}: cannot apply '{requested}' while in '{current}'"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


# ======================
# Routing
# ======================


class ProviderUnavailable(EscrowError):
    """The routing provider could not be reached (timeout, 5xx, rate limit)."""

    transient = True


class NoRouteFound(EscrowError):
    """The provider answered but has no route for the request."""

    transient = False


class UnsupportedAssetPair(NoRouteFound):
    """The asset cannot be moved between the requested networks."""


class NoExecutableRoute(EscrowError):
    """The selector was given no candidate routes."""


# ======================
# Execution
# ======================


class ExecutionRejected(EscrowError):
    """The driver refused to start a route (estimate-only placeholder)."""


class ExecutionFailed(EscrowError):
    """An execution reached terminal FAILED.

    ``outcome_unknown`` is True when funds may already have left the source
    network and the transfer needs manual reconciliation.
    """

    def __init__(self, execution_id: str, message: str, outcome_unknown: bool = False):
        self.execution_id = execution_id
        self.outcome_unknown = outcome_unknown
        super().__init__(f"Execution {execution_id} failed: {message}")
