import os
from typing import Dict, List, Optional, Union

import pytest

# Disable OTLP export during tests to prevent connection errors
os.environ["OTEL_EXPORTER_OTLP_ENDPOINT"] = "none"

from src.promoter.deployment.errors import (
    ApplyFailed,
    HistoryUnavailable,
    RollbackFailed,
    RolloutTimeout,
)
from src.promoter.deployment.metrics_source import MetricsSource, QueryResult
from src.promoter.deployment.models import (
    CanaryPlan,
    DeploymentSpec,
    MetricSample,
    ProbeReason,
    ProbeResult,
    Revision,
    WatchWindow,
)
from src.promoter.deployment.target import DeploymentTarget


class FakeDeploymentTarget(DeploymentTarget):
    """In-memory release history with scriptable failures."""

    def __init__(self, existing_revisions: int = 1):
        self.revisions: Dict[str, List[Revision]] = {}
        self.replicas: Dict[str, int] = {}
        self.calls: List[tuple] = []
        self.fail_apply = False
        self.fail_rollback = False
        self.fail_history = False
        # Popped per wait_ready call; True means ready
        self.ready_results: List[bool] = []
        self.existing_revisions = existing_revisions

    def _history_of(self, release: str) -> List[Revision]:
        if release not in self.revisions:
            self.revisions[release] = [
                Revision(release_name=release, number=n, description="seed")
                for n in range(1, self.existing_revisions + 1)
            ]
            if self.existing_revisions:
                self.replicas[release] = 3
        return self.revisions[release]

    async def apply(self, spec: DeploymentSpec) -> Revision:
        self.calls.append(("apply", spec.release_name, spec.replica_count))
        if self.fail_apply:
            raise ApplyFailed("admission webhook denied the request", spec.release_name)
        history = self._history_of(spec.release_name)
        revision = Revision(release_name=spec.release_name, number=len(history) + 1, spec=spec)
        history.append(revision)
        self.replicas[spec.release_name] = spec.replica_count
        return revision

    async def wait_ready(self, release: str, timeout: float) -> None:
        self.calls.append(("wait_ready", release, timeout))
        ready = self.ready_results.pop(0) if self.ready_results else True
        if not ready:
            raise RolloutTimeout(f"{release} not ready", release, timeout)

    async def history(self, release: str, limit: int = 10) -> List[Revision]:
        self.calls.append(("history", release, limit))
        if self.fail_history:
            raise HistoryUnavailable("tiller unreachable", release)
        return list(reversed(self._history_of(release)))[:limit]

    async def rollback_to(self, release: str, revision_number: int) -> Revision:
        self.calls.append(("rollback_to", release, revision_number))
        if self.fail_rollback:
            raise RollbackFailed("rollback hook failed", release)
        history = self._history_of(release)
        previous = next((r for r in history if r.number == revision_number), None)
        if previous is None:
            raise RollbackFailed(f"revision {revision_number} not found", release)
        revision = Revision(
            release_name=release,
            number=len(history) + 1,
            spec=previous.spec,
            description=f"Rollback to {revision_number}",
        )
        history.append(revision)
        if previous.spec:
            self.replicas[release] = previous.spec.replica_count
        return revision

    def count(self, call: str) -> int:
        return sum(1 for c in self.calls if c[0] == call)


class ScriptedMetricsSource(MetricsSource):
    """Returns queued samples in order, then healthy ones.

    A queued exception is raised instead of returned.
    """

    def __init__(self):
        self.samples: List[Union[MetricSample, Exception]] = []
        self.calls = 0

    async def query(self, expression: str) -> QueryResult:
        return QueryResult(value=0.0, ok=True)

    async def sample(self, job_pattern: str) -> MetricSample:
        self.calls += 1
        if self.samples:
            sample = self.samples.pop(0)
            if isinstance(sample, Exception):
                raise sample
            return sample
        return MetricSample(error_rate_percent=0.1, p95_seconds=0.1)


class FakeProbe:
    def __init__(self):
        self.result = ProbeResult(healthy=True, reason=ProbeReason.OK, diagnostics="HTTP 200, marker found")
        self.calls: List[tuple] = []

    async def check(self, endpoint: str, expected_marker: str, timeout: float) -> ProbeResult:
        self.calls.append((endpoint, expected_marker, timeout))
        return self.result

    async def close(self):
        pass


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def monotonic(self) -> float:
        return self.now


@pytest.fixture
def target():
    return FakeDeploymentTarget()


@pytest.fixture
def targets():
    """One independent release history per environment."""
    return {name: FakeDeploymentTarget() for name in ("dev", "stage", "prod")}


@pytest.fixture
def metrics():
    return ScriptedMetricsSource()


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_plan():
    """Factory for stage-like canary plans."""

    def _make(
        total_checks: Optional[int] = 3,
        canary_replicas: int = 1,
        target_replicas: int = 3,
        poll_interval: float = 60.0
    ) -> CanaryPlan:
        spec = DeploymentSpec(
            environment="stage",
            release_name="web",
            image_repository="registry.example.com/web",
            image_tag="1.4.2",
            replica_count=canary_replicas,
            namespace="stage",
            chart="./charts/web",
        )
        watch = WatchWindow(total_checks=total_checks, poll_interval=poll_interval) if total_checks else None
        return CanaryPlan(
            environment="stage",
            canary_spec=spec,
            target_replicas=target_replicas,
            probe_url="http://web.stage.svc.cluster.local/",
            probe_marker="<!DOCTYPE HTML>",
            job_pattern="web-stage.*",
            ready_timeout=180.0,
            promote_timeout=240.0,
            probe_timeout=10.0,
            watch=watch,
        )

    return _make


@pytest.fixture(scope="module")
def client():
    from fastapi.testclient import TestClient
    from src.promoter.main import app

    # Context manager triggers the lifespan events (startup/shutdown)
    with TestClient(app) as c:
        yield c
