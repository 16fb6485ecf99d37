"""Data model shared by the promotion controller and its collaborators.

Specs and revisions are immutable records; samples and probe results are
transient values that only live for one controller step. Everything that
ends up in a terminal outcome can be serialized with ``to_dict`` so that a
decision can be explained without re-querying the cluster.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

# Metric series sampled for every canary check
ERROR_RATE = "error_rate"
P95_LATENCY = "p95_latency"
SERIES = (ERROR_RATE, P95_LATENCY)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DeploymentSpec:
    """Versioned release spec submitted to a deployment target.

    A new spec is built for every transition (canary, final scale); specs
    are never mutated once submitted.
    """
    environment: str
    release_name: str
    image_repository: str
    image_tag: str
    replica_count: int
    values_override: str = ""  # Path to an extra values file, empty for none
    namespace: str = ""
    chart: str = ""
    image_digest: str = ""  # Digest approved for this release, empty when unknown

    def __post_init__(self):
        if self.replica_count < 0:
            raise ValueError("Replica count cannot be negative")
        if not self.release_name:
            raise ValueError("Release name is required")

    @property
    def image(self) -> str:
        return f"{self.image_repository}:{self.image_tag}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "environment": self.environment,
            "release_name": self.release_name,
            "image": self.image,
            "replica_count": self.replica_count,
            "values_override": self.values_override,
            "namespace": self.namespace,
            "image_digest": self.image_digest,
        }


@dataclass(frozen=True)
class Revision:
    """One applied deployment spec for a release.

    ``spec`` is only known for revisions this process applied itself;
    revisions read back from cluster history carry the description instead.
    """
    release_name: str
    number: int
    spec: Optional[DeploymentSpec] = None
    timestamp: datetime = field(default_factory=_utcnow)
    status: str = "deployed"
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "release_name": self.release_name,
            "number": self.number,
            "spec": self.spec.to_dict() if self.spec else None,
            "timestamp": self.timestamp.isoformat(),
            "status": self.status,
            "description": self.description,
        }


@dataclass(frozen=True)
class SLOThresholds:
    """Service-level limits a canary must stay within."""
    max_error_rate_percent: float = 2.0
    max_p95_seconds: float = 0.5

    def __post_init__(self):
        if not 0 <= self.max_error_rate_percent <= 100:
            raise ValueError("Error rate threshold must be between 0 and 100")
        if self.max_p95_seconds <= 0:
            raise ValueError("P95 latency threshold must be > 0")


@dataclass(frozen=True)
class WatchWindow:
    """Bounded sequence of SLO evaluations."""
    total_checks: int = 10
    poll_interval: float = 60.0  # Seconds slept before each check

    def __post_init__(self):
        if self.total_checks < 1:
            raise ValueError("Watch window needs at least one check")
        if self.poll_interval < 0:
            raise ValueError("Poll interval cannot be negative")

    @property
    def max_duration(self) -> float:
        return self.total_checks * self.poll_interval


@dataclass(frozen=True)
class MetricSample:
    """Point-in-time error rate and latency reading for a canary.

    A sample with ``query_ok=False`` and no ``failed_series`` is one where
    no series answered.
    """
    error_rate_percent: float = 0.0
    p95_seconds: float = 0.0
    timestamp: datetime = field(default_factory=_utcnow)
    query_ok: bool = True
    failed_series: Tuple[str, ...] = ()

    @property
    def answered_series(self) -> Tuple[str, ...]:
        if self.query_ok:
            return SERIES
        return tuple(name for name in SERIES if self.failed_series and name not in self.failed_series)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "error_rate_percent": self.error_rate_percent,
            "p95_seconds": self.p95_seconds,
            "timestamp": self.timestamp.isoformat(),
            "query_ok": self.query_ok,
            "failed_series": list(self.failed_series),
        }


class PromotionDecision(Enum):
    """Terminal decision of one canary cycle."""
    PROMOTE = "promote"
    ROLLBACK = "rollback"
    ABORT = "abort"  # No decision could be reached; hard stop


class CanaryState(Enum):
    DEPLOYING = "deploying"
    PROBING = "probing"
    WATCHING = "watching"
    PROMOTING = "promoting"
    ROLLING_BACK = "rolling_back"
    ABORTED = "aborted"
    DONE = "done"


class ProbeReason(Enum):
    OK = "ok"
    MARKER_MISSING = "marker_missing"
    CONNECTION_ERROR = "connection_error"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of a single health probe."""
    healthy: bool
    reason: ProbeReason
    diagnostics: str = ""
    status_code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "healthy": self.healthy,
            "reason": self.reason.value,
            "diagnostics": self.diagnostics,
            "status_code": self.status_code,
        }


@dataclass(frozen=True)
class ApprovalRecord:
    """Fields captured when a manual gate is crossed."""
    approver: str
    target_replicas: int
    change_summary: str
    image_digest: str

    @classmethod
    def from_fields(cls, fields: Dict[str, str]) -> "ApprovalRecord":
        """Create from the filled fields returned by an approval gate.

        Raises:
            ValueError: If a field is missing or target_replicas is not a
                positive integer
        """
        try:
            target_replicas = int(fields["target_replicas"])
            record = cls(
                approver=fields["approver"],
                target_replicas=target_replicas,
                change_summary=fields["change_summary"],
                image_digest=fields["image_digest"],
            )
        except KeyError as e:
            raise ValueError(f"Approval is missing field {e}") from e
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid target_replicas: {fields.get('target_replicas')!r}") from e

        if record.target_replicas < 1:
            raise ValueError("target_replicas must be at least 1")
        return record

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "approver": self.approver,
            "target_replicas": self.target_replicas,
            "change_summary": self.change_summary,
            "image_digest": self.image_digest,
        }


@dataclass(frozen=True)
class CanaryPlan:
    """Everything one canary cycle needs to know about its environment.

    ``watch=None`` turns the cycle into a probe-only gate: the canary is
    promoted as soon as the probe passes.
    """
    environment: str
    canary_spec: DeploymentSpec
    target_replicas: int
    probe_url: str
    probe_marker: str
    job_pattern: str
    ready_timeout: float = 180.0
    promote_timeout: float = 240.0
    probe_timeout: float = 10.0
    watch: Optional[WatchWindow] = None

    @property
    def final_spec(self) -> DeploymentSpec:
        return DeploymentSpec(
            environment=self.canary_spec.environment,
            release_name=self.canary_spec.release_name,
            image_repository=self.canary_spec.image_repository,
            image_tag=self.canary_spec.image_tag,
            replica_count=self.target_replicas,
            values_override=self.canary_spec.values_override,
            namespace=self.canary_spec.namespace,
            chart=self.canary_spec.chart,
            image_digest=self.canary_spec.image_digest,
        )


@dataclass
class CanaryOutcome:
    """Terminal result of one canary cycle with its diagnostics."""
    environment: str
    decision: PromotionDecision
    reason: str
    states: List[CanaryState] = field(default_factory=list)
    canary_revision: Optional[Revision] = None
    final_revision: Optional[Revision] = None
    rollback_target: Optional[int] = None
    probe: Optional[ProbeResult] = None
    last_sample: Optional[MetricSample] = None
    last_breach: Optional[MetricSample] = None
    breach_reasons: List[str] = field(default_factory=list)
    checks_completed: int = 0
    samples_taken: int = 0
    consecutive_query_failures: int = 0
    error: str = ""
    fatal: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "environment": self.environment,
            "decision": self.decision.value,
            "reason": self.reason,
            "states": [s.value for s in self.states],
            "canary_revision": self.canary_revision.to_dict() if self.canary_revision else None,
            "final_revision": self.final_revision.to_dict() if self.final_revision else None,
            "rollback_target": self.rollback_target,
            "probe": self.probe.to_dict() if self.probe else None,
            "last_sample": self.last_sample.to_dict() if self.last_sample else None,
            "last_breach": self.last_breach.to_dict() if self.last_breach else None,
            "breach_reasons": list(self.breach_reasons),
            "checks_completed": self.checks_completed,
            "samples_taken": self.samples_taken,
            "consecutive_query_failures": self.consecutive_query_failures,
            "error": self.error,
            "fatal": self.fatal,
        }
