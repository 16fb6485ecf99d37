"""Failure taxonomy for promotion boundaries.

Boundary adapters raise these; the canary controller converts them into
terminal outcomes so that none escapes a promotion unhandled. An SLO breach
is a policy decision and deliberately has no exception type here.
"""
from typing import Optional


class PromotionError(Exception):
    """Base class for promotion failures."""

    def __init__(self, message: str, release: Optional[str] = None):
        super().__init__(message)
        self.release = release


class ApplyFailed(PromotionError):
    """The deployment target rejected a spec."""


class RolloutTimeout(PromotionError):
    """Replicas did not become ready within the allotted time."""

    def __init__(self, message: str, release: Optional[str] = None, timeout: float = 0.0):
        super().__init__(message, release)
        self.timeout = timeout


class HistoryUnavailable(PromotionError):
    """Revision history could not be read."""


class RollbackFailed(PromotionError):
    """Rolling back to a prior revision failed. Not remediated automatically."""


class MissingPriorRevision(PromotionError):
    """A rollback was requested for a release with no earlier revision."""


class MetricsQueryFailed(PromotionError):
    """A metrics backend query failed or returned no series."""


class ApprovalCancelled(PromotionError):
    """A manual gate was cancelled, rejected or expired."""
