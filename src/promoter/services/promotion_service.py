"""Background promotion runs driven through the API."""
import asyncio
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from loguru import logger

from src.promoter.core.config import Settings, settings
from src.promoter.deployment.approval import ApprovalGate, PendingApprovalGate
from src.promoter.deployment.coordinator import (
    BuildInfo,
    PipelineResult,
    PromotionConfig,
    PromotionCoordinator,
)
from src.promoter.deployment.health_probe import HealthProbe
from src.promoter.deployment.metrics_source import PrometheusMetricsSource
from src.promoter.deployment.target import HelmDeploymentTarget


def build_coordinator(
    approval_gate: ApprovalGate,
    config_settings: Optional[Settings] = None
) -> PromotionCoordinator:
    """Wire the production adapters (helm, HTTP probe, Prometheus)."""
    active = config_settings or settings
    config = PromotionConfig.from_settings(active)
    targets = {
        name: HelmDeploymentTarget(namespace=config.environment(name).namespace)
        for name in ("dev", "stage", "prod")
    }
    return PromotionCoordinator(
        config=config,
        targets=targets,
        probe=HealthProbe(),
        metrics_source=PrometheusMetricsSource(
            active.PROMETHEUS_URL,
            timeout=active.METRICS_QUERY_TIMEOUT_SECONDS,
        ),
        approval_gate=approval_gate,
    )


class PromotionInProgress(Exception):
    """Another promotion is still running."""


@dataclass
class PromotionRun:
    id: str
    build: BuildInfo
    task: Optional["asyncio.Task[None]"] = None
    result: Optional[PipelineResult] = None
    error: Optional[str] = None

    @property
    def status(self) -> str:
        if self.error is not None:
            return "error"
        if self.result is None:
            return "running"
        return "succeeded" if self.result.succeeded else "failed"


class PromotionService:
    """Runs at most one promotion at a time in the background.

    Finished runs are kept for status queries, oldest dropped first once
    more than ``max_finished_runs`` have accumulated.
    """

    def __init__(
        self,
        coordinator_factory: Optional[Callable[[ApprovalGate], PromotionCoordinator]] = None,
        approval_gate: Optional[PendingApprovalGate] = None,
        max_finished_runs: int = 50
    ):
        if max_finished_runs < 1:
            raise ValueError("max_finished_runs must be >= 1")

        self.approval_gate = approval_gate or PendingApprovalGate(settings.APPROVAL_EXPIRY_SECONDS)
        self.coordinator_factory = coordinator_factory or build_coordinator
        self.max_finished_runs = max_finished_runs
        self.runs: Dict[str, PromotionRun] = {}

    @property
    def active(self) -> Optional[PromotionRun]:
        for run in self.runs.values():
            if run.status == "running":
                return run
        return None

    def start(self, build: BuildInfo) -> PromotionRun:
        """Start promoting ``build``; must be called from the event loop.

        Raises:
            PromotionInProgress: If a promotion is already running
        """
        active = self.active
        if active is not None:
            raise PromotionInProgress(f"Promotion {active.id} is still running")

        self._prune()
        run = PromotionRun(id=uuid.uuid4().hex[:12], build=build)
        coordinator = self.coordinator_factory(self.approval_gate)
        run.task = asyncio.create_task(self._drive(run, coordinator))
        self.runs[run.id] = run
        logger.info(f"Promotion {run.id} queued for {build.image_tag}")
        return run

    async def _drive(self, run: PromotionRun, coordinator: PromotionCoordinator) -> None:
        try:
            run.result = await coordinator.run(run.build, promotion_id=run.id)
        except Exception as e:
            logger.exception(f"Promotion {run.id} crashed: {e}")
            run.error = str(e) or type(e).__name__
        finally:
            await coordinator.close()

    def _prune(self) -> None:
        finished = [run_id for run_id, run in self.runs.items() if run.status != "running"]
        # Insertion order is start order
        for run_id in finished[:max(0, len(finished) - self.max_finished_runs + 1)]:
            del self.runs[run_id]

    def get(self, run_id: str) -> PromotionRun:
        """Raises KeyError for unknown runs."""
        return self.runs[run_id]


# Global instance for application use
promotion_service = PromotionService()
