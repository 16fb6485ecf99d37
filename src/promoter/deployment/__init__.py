"""Deployment automation components for canary promotion."""

from .models import (
    ApprovalRecord,
    CanaryOutcome,
    CanaryPlan,
    CanaryState,
    DeploymentSpec,
    MetricSample,
    ProbeReason,
    ProbeResult,
    PromotionDecision,
    Revision,
    SLOThresholds,
    WatchWindow,
)

from .errors import (
    PromotionError,
    ApplyFailed,
    RolloutTimeout,
    HistoryUnavailable,
    RollbackFailed,
    MissingPriorRevision,
    MetricsQueryFailed,
    ApprovalCancelled,
)

from .target import DeploymentTarget, HelmDeploymentTarget
from .health_probe import HealthProbe
from .metrics_source import MetricsSource, PrometheusMetricsSource, QueryResult
from .slo_gate import SLOGate, GateResult, GateVerdict
from .canary_controller import CanaryController, Clock
from .approval import ApprovalGate, StaticApprovalGate, PendingApprovalGate
from .coordinator import (
    BuildInfo,
    EnvironmentConfig,
    PipelineResult,
    PromotionConfig,
    PromotionCoordinator,
    StageResult,
    StageStatus,
)

__all__ = [
    # Data model
    "ApprovalRecord",
    "CanaryOutcome",
    "CanaryPlan",
    "CanaryState",
    "DeploymentSpec",
    "MetricSample",
    "ProbeReason",
    "ProbeResult",
    "PromotionDecision",
    "Revision",
    "SLOThresholds",
    "WatchWindow",
    # Errors
    "PromotionError",
    "ApplyFailed",
    "RolloutTimeout",
    "HistoryUnavailable",
    "RollbackFailed",
    "MissingPriorRevision",
    "MetricsQueryFailed",
    "ApprovalCancelled",
    # Boundaries
    "DeploymentTarget",
    "HelmDeploymentTarget",
    "HealthProbe",
    "MetricsSource",
    "PrometheusMetricsSource",
    "QueryResult",
    "ApprovalGate",
    "StaticApprovalGate",
    "PendingApprovalGate",
    # Core
    "SLOGate",
    "GateResult",
    "GateVerdict",
    "CanaryController",
    "Clock",
    "BuildInfo",
    "EnvironmentConfig",
    "PipelineResult",
    "PromotionConfig",
    "PromotionCoordinator",
    "StageResult",
    "StageStatus",
]
