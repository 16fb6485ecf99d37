from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Define Metrics
PROMOTION_DECISIONS = Counter(
    "promotion_decisions_total",
    "Terminal canary cycle decisions",
    ["environment", "decision"]
)

CANARY_STATE_TRANSITIONS = Counter(
    "canary_state_transitions_total",
    "Canary controller state entries",
    ["environment", "state"]
)

SLO_GATE_EVALUATIONS = Counter(
    "slo_gate_evaluations_total",
    "SLO gate verdicts per sample",
    ["environment", "verdict"]
)

METRICS_QUERY_FAILURES = Counter(
    "metrics_query_failures_total",
    "Watch samples whose metrics query failed",
    ["environment"]
)

PROBE_RESULTS = Counter(
    "health_probe_results_total",
    "Health probe outcomes",
    ["environment", "reason"]
)

CANARY_CYCLE_DURATION = Histogram(
    "canary_cycle_duration_seconds",
    "Wall time of one canary cycle",
    ["environment", "decision"],
    buckets=(30, 60, 120, 300, 600, 900, 1200, 1800, 3600),
)

PIPELINE_RUNS = Counter(
    "promotion_pipeline_runs_total",
    "Completed promotion pipeline runs",
    ["status"]
)

PENDING_APPROVALS = Gauge(
    "pending_approvals",
    "Approval requests waiting for a decision"
)


def metrics_endpoint(request=None):
    """Endpoint for Prometheus scraping."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
