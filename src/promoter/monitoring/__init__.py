"""Monitoring components for the promotion service."""

from .metrics import (
    PROMOTION_DECISIONS,
    CANARY_STATE_TRANSITIONS,
    SLO_GATE_EVALUATIONS,
    METRICS_QUERY_FAILURES,
    PROBE_RESULTS,
    CANARY_CYCLE_DURATION,
    PIPELINE_RUNS,
    PENDING_APPROVALS,
    metrics_endpoint,
)

__all__ = [
    "PROMOTION_DECISIONS",
    "CANARY_STATE_TRANSITIONS",
    "SLO_GATE_EVALUATIONS",
    "METRICS_QUERY_FAILURES",
    "PROBE_RESULTS",
    "CANARY_CYCLE_DURATION",
    "PIPELINE_RUNS",
    "PENDING_APPROVALS",
    "metrics_endpoint",
]
