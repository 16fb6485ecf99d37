"""Promotion coordinator: dev -> stage -> prod.

Sequences canary cycles across environments and interleaves the manual
approval gates:

1. Dev: probe-only auto-promotion, no SLO watch.
2. Stage: approval (digest, change summary, approver, replicas), then a
   full canary cycle scaled to the approved replica count.
3. Prod: only for tag builds (or when forced), only when the upstream
   result is clean (or explicitly overridden), and only after a second
   approval. Released at full scale behind the probe gate.

Environments are independent: a stage rollback leaves dev alone, and a
skipped prod release does not undo a successful stage promotion.
"""
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from loguru import logger

from src.promoter.core.config import EnvironmentSettings, Settings
from src.promoter.core.logging import promotion_id as promotion_id_var
from src.promoter.monitoring.metrics import PIPELINE_RUNS
from src.promoter.monitoring.tracing import set_span_attributes, tracer

from .approval import ApprovalGate
from .canary_controller import CanaryController, Clock
from .errors import ApprovalCancelled
from .health_probe import HealthProbe
from .metrics_source import MetricsSource
from .models import (
    ApprovalRecord,
    CanaryOutcome,
    CanaryPlan,
    DeploymentSpec,
    PromotionDecision,
    SLOThresholds,
    WatchWindow,
)
from .slo_gate import SLOGate
from .target import DeploymentTarget

ENVIRONMENTS = ("dev", "stage", "prod")
_CONFIRM_VALUES = {"yes", "y", "true", "confirm", "confirmed"}


@dataclass(frozen=True)
class EnvironmentConfig:
    name: str
    namespace: str
    release_name: str
    canary_replicas: int
    target_replicas: int
    probe_url: str
    job_pattern: str
    values_file: str = ""
    ready_timeout: float = 180.0
    promote_timeout: float = 240.0

    @classmethod
    def from_settings(cls, name: str, env: EnvironmentSettings) -> "EnvironmentConfig":
        return cls(
            name=name,
            namespace=env.NAMESPACE,
            release_name=env.RELEASE_NAME,
            canary_replicas=env.CANARY_REPLICAS,
            target_replicas=env.TARGET_REPLICAS,
            probe_url=env.PROBE_URL,
            job_pattern=env.JOB_PATTERN,
            values_file=env.VALUES_FILE,
            ready_timeout=env.READY_TIMEOUT_SECONDS,
            promote_timeout=env.PROMOTE_TIMEOUT_SECONDS,
        )


@dataclass(frozen=True)
class PromotionConfig:
    """Immutable inputs of one promotion, injected into the coordinator."""
    image_repository: str
    chart: str
    dev: EnvironmentConfig
    stage: EnvironmentConfig
    prod: EnvironmentConfig
    thresholds: SLOThresholds = field(default_factory=SLOThresholds)
    watch: WatchWindow = field(default_factory=WatchWindow)
    probe_marker: str = "<!DOCTYPE HTML>"
    probe_timeout: float = 10.0
    max_consecutive_query_failures: int = 3
    prod_requires_tag: bool = True
    force_prod: bool = False
    allow_unclean_prod: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "PromotionConfig":
        return cls(
            image_repository=settings.IMAGE_REPOSITORY,
            chart=settings.CHART,
            dev=EnvironmentConfig.from_settings("dev", settings.DEV),
            stage=EnvironmentConfig.from_settings("stage", settings.STAGE),
            prod=EnvironmentConfig.from_settings("prod", settings.PROD),
            thresholds=SLOThresholds(
                max_error_rate_percent=settings.MAX_ERROR_RATE_PERCENT,
                max_p95_seconds=settings.MAX_P95_SECONDS,
            ),
            watch=WatchWindow(
                total_checks=settings.WATCH_TOTAL_CHECKS,
                poll_interval=settings.WATCH_POLL_INTERVAL_SECONDS,
            ),
            probe_marker=settings.PROBE_MARKER,
            probe_timeout=settings.PROBE_TIMEOUT_SECONDS,
            max_consecutive_query_failures=settings.MAX_CONSECUTIVE_QUERY_FAILURES,
            prod_requires_tag=settings.PROD_REQUIRES_TAG,
            force_prod=settings.FORCE_PROD,
            allow_unclean_prod=settings.ALLOW_UNCLEAN_PROD,
        )

    def environment(self, name: str) -> EnvironmentConfig:
        return {"dev": self.dev, "stage": self.stage, "prod": self.prod}[name]


@dataclass(frozen=True)
class BuildInfo:
    """The artifact being promoted and the state of the pipeline around it."""
    image_tag: str
    image_digest: str = ""
    git_tag: Optional[str] = None
    upstream_status: str = "success"
    change_summary: str = ""

    @property
    def upstream_clean(self) -> bool:
        return self.upstream_status == "success"


class StageStatus(Enum):
    PROMOTED = "promoted"
    ROLLED_BACK = "rolled_back"
    ABORTED = "aborted"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


_DECISION_STATUS = {
    PromotionDecision.PROMOTE: StageStatus.PROMOTED,
    PromotionDecision.ROLLBACK: StageStatus.ROLLED_BACK,
    PromotionDecision.ABORT: StageStatus.ABORTED,
}


@dataclass
class StageResult:
    environment: str
    status: StageStatus
    reason: str = ""
    outcome: Optional[CanaryOutcome] = None
    approval: Dict[str, str] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return self.status not in (StageStatus.PROMOTED, StageStatus.SKIPPED)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "environment": self.environment,
            "status": self.status.value,
            "reason": self.reason,
            "outcome": self.outcome.to_dict() if self.outcome else None,
            "approval": dict(self.approval),
        }


@dataclass
class PipelineResult:
    promotion_id: str
    build: BuildInfo
    stages: List[StageResult] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return bool(self.stages) and not any(stage.failed for stage in self.stages)

    def stage(self, environment: str) -> Optional[StageResult]:
        for result in self.stages:
            if result.environment == environment:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "promotion_id": self.promotion_id,
            "image_tag": self.build.image_tag,
            "image_digest": self.build.image_digest,
            "git_tag": self.build.git_tag,
            "succeeded": self.succeeded,
            "stages": [stage.to_dict() for stage in self.stages],
        }


class PromotionCoordinator:
    """Runs one build through dev, stage and prod."""

    def __init__(
        self,
        config: PromotionConfig,
        targets: Dict[str, DeploymentTarget],
        probe: HealthProbe,
        metrics_source: MetricsSource,
        approval_gate: ApprovalGate,
        clock: Optional[Clock] = None
    ):
        """Initialize coordinator.

        Args:
            config: Promotion configuration
            targets: Deployment target per environment name
            probe: Health probe shared by all environments
            metrics_source: Metrics source shared by all environments
            approval_gate: Gate consulted before stage and prod
            clock: Time source for watch loops
        """
        missing = [name for name in ENVIRONMENTS if name not in targets]
        if missing:
            raise ValueError(f"No deployment target for: {', '.join(missing)}")

        self.config = config
        self.targets = targets
        self.probe = probe
        self.metrics_source = metrics_source
        self.approval_gate = approval_gate
        self.clock = clock
        self.gate = SLOGate(config.thresholds)

    async def close(self):
        """Close the probe and metrics clients."""
        await self.probe.close()
        await self.metrics_source.close()

    def controller(self, environment: str) -> CanaryController:
        return CanaryController(
            target=self.targets[environment],
            probe=self.probe,
            metrics_source=self.metrics_source,
            gate=self.gate,
            clock=self.clock,
            max_consecutive_query_failures=self.config.max_consecutive_query_failures,
        )

    def plan(
        self,
        env: EnvironmentConfig,
        build: BuildInfo,
        target_replicas: int,
        watch: Optional[WatchWindow] = None,
        image_digest: str = ""
    ) -> CanaryPlan:
        spec = DeploymentSpec(
            environment=env.name,
            release_name=env.release_name,
            image_repository=self.config.image_repository,
            image_tag=build.image_tag,
            replica_count=min(env.canary_replicas, target_replicas),
            values_override=env.values_file,
            namespace=env.namespace,
            chart=self.config.chart,
            image_digest=image_digest or build.image_digest,
        )
        return CanaryPlan(
            environment=env.name,
            canary_spec=spec,
            target_replicas=target_replicas,
            probe_url=env.probe_url,
            probe_marker=self.config.probe_marker,
            job_pattern=env.job_pattern,
            ready_timeout=env.ready_timeout,
            promote_timeout=env.promote_timeout,
            probe_timeout=self.config.probe_timeout,
            watch=watch,
        )

    async def run(self, build: BuildInfo, promotion_id: Optional[str] = None) -> PipelineResult:
        """Promote ``build`` as far as its gates allow.

        Never raises for deployment, probe, metrics or approval failures;
        they are reported per stage in the returned PipelineResult.
        """
        result = PipelineResult(promotion_id=promotion_id or uuid.uuid4().hex[:12], build=build)
        token = promotion_id_var.set(result.promotion_id)

        try:
            with tracer.start_as_current_span("promotion_pipeline") as span:
                set_span_attributes(
                    span,
                    promotion_id=result.promotion_id,
                    image_tag=build.image_tag,
                )
                logger.info(f"🚀 Promotion {result.promotion_id} started for {build.image_tag}")

                for step in (self._promote_dev, self._promote_stage, self._release_prod):
                    stage = await step(build)
                    result.stages.append(stage)
                    logger.info(f"[{stage.environment}] {stage.status.value}: {stage.reason}")
                    if stage.failed:
                        break

                set_span_attributes(span, succeeded=result.succeeded)
        finally:
            promotion_id_var.reset(token)

        status = "succeeded" if result.succeeded else "failed"
        PIPELINE_RUNS.labels(status=status).inc()
        if result.succeeded:
            logger.info(f"✅ Promotion {result.promotion_id} succeeded")
        else:
            logger.error(f"❌ Promotion {result.promotion_id} failed")
        return result

    async def _run_cycle(
        self,
        env: EnvironmentConfig,
        build: BuildInfo,
        target_replicas: int,
        watch: Optional[WatchWindow],
        approval: Optional[Dict[str, str]] = None,
        image_digest: str = ""
    ) -> StageResult:
        plan = self.plan(env, build, target_replicas, watch, image_digest=image_digest)
        outcome = await self.controller(env.name).run(plan)
        return StageResult(
            environment=env.name,
            status=_DECISION_STATUS[outcome.decision],
            reason=outcome.reason,
            outcome=outcome,
            approval=approval or {},
        )

    async def _promote_dev(self, build: BuildInfo) -> StageResult:
        env = self.config.dev
        return await self._run_cycle(env, build, env.target_replicas, watch=None)

    async def _promote_stage(self, build: BuildInfo) -> StageResult:
        env = self.config.stage
        fields = {
            "image_digest": build.image_digest or None,
            "change_summary": build.change_summary or None,
            "approver": None,
            "target_replicas": str(env.target_replicas),
        }
        message = f"Promote {build.image_tag} to {env.name}?"

        try:
            filled = await self.approval_gate.request_approval(message, fields)
            record = ApprovalRecord.from_fields(filled)
        except ApprovalCancelled as e:
            return StageResult(env.name, StageStatus.CANCELLED, reason=str(e))
        except ValueError as e:
            return StageResult(env.name, StageStatus.CANCELLED, reason=f"Invalid approval: {e}")

        if build.image_digest and record.image_digest != build.image_digest:
            return StageResult(
                env.name,
                StageStatus.CANCELLED,
                reason=f"Approved digest {record.image_digest} does not match build digest {build.image_digest}",
                approval=filled,
            )

        logger.info(
            f"Stage promotion approved by {record.approver} "
            f"({record.image_digest}, {record.target_replicas} replicas)"
        )
        return await self._run_cycle(
            env,
            build,
            record.target_replicas,
            watch=self.config.watch,
            approval=filled,
            image_digest=record.image_digest,
        )

    async def _release_prod(self, build: BuildInfo) -> StageResult:
        env = self.config.prod

        if self.config.prod_requires_tag and not (build.git_tag or self.config.force_prod):
            return StageResult(env.name, StageStatus.SKIPPED, reason="not a tag build and not forced")

        if not build.upstream_clean and not self.config.allow_unclean_prod:
            return StageResult(
                env.name,
                StageStatus.SKIPPED,
                reason=f"upstream result is {build.upstream_status!r}",
            )

        fields = {"changelog": build.change_summary or None}
        if not build.upstream_clean:
            fields["confirm_unclean_upstream"] = None
        message = f"Release {build.git_tag or build.image_tag} to {env.name}?"

        try:
            filled = await self.approval_gate.request_approval(message, fields)
        except ApprovalCancelled as e:
            return StageResult(env.name, StageStatus.CANCELLED, reason=str(e))

        if not build.upstream_clean:
            confirmation = filled.get("confirm_unclean_upstream", "").strip().lower()
            if confirmation not in _CONFIRM_VALUES:
                return StageResult(
                    env.name,
                    StageStatus.CANCELLED,
                    reason="release over a failed upstream run was not confirmed",
                    approval=filled,
                )

        return await self._run_cycle(env, build, env.target_replicas, watch=None, approval=filled)
