"""Unit tests for the dev -> stage -> prod promotion coordinator."""
import pytest

from src.promoter.core.config import Settings
from src.promoter.deployment.approval import StaticApprovalGate
from src.promoter.deployment.coordinator import (
    BuildInfo,
    EnvironmentConfig,
    PromotionConfig,
    PromotionCoordinator,
    StageStatus,
)
from src.promoter.deployment.models import (
    MetricSample,
    ProbeReason,
    ProbeResult,
    PromotionDecision,
    WatchWindow,
)

APPROVALS = {
    "approver": "alice",
    "image_digest": "sha256:abc123",
    "change_summary": "Fix checkout timeout",
    "changelog": "1.4.2: fix checkout timeout",
}


def environment(name: str, canary: int, target: int) -> EnvironmentConfig:
    return EnvironmentConfig(
        name=name,
        namespace=name,
        release_name="web",
        canary_replicas=canary,
        target_replicas=target,
        probe_url=f"http://web.{name}.svc.cluster.local/",
        job_pattern=f"web-{name}.*",
    )


@pytest.fixture
def config():
    return PromotionConfig(
        image_repository="registry.example.com/web",
        chart="./charts/web",
        dev=environment("dev", 1, 1),
        stage=environment("stage", 1, 3),
        prod=environment("prod", 3, 3),
        watch=WatchWindow(total_checks=3, poll_interval=60),
    )


@pytest.fixture
def make_coordinator(config, targets, probe, metrics, clock):
    def _make(answers=None, approve=True, **overrides):
        gate = StaticApprovalGate(APPROVALS if answers is None else answers, approve=approve)
        cfg = PromotionConfig(**{**config.__dict__, **overrides})
        return PromotionCoordinator(cfg, targets, probe, metrics, gate, clock=clock)

    return _make


TAG_BUILD = BuildInfo(
    image_tag="1.4.2",
    image_digest="sha256:abc123",
    git_tag="v1.4.2",
    change_summary="Fix checkout timeout",
)


class TestPipeline:

    @pytest.mark.asyncio
    async def test_tag_build_reaches_prod(self, make_coordinator, targets, metrics):
        coordinator = make_coordinator()

        result = await coordinator.run(TAG_BUILD, promotion_id="p-1")

        assert result.succeeded
        assert [s.environment for s in result.stages] == ["dev", "stage", "prod"]
        assert all(s.status == StageStatus.PROMOTED for s in result.stages)
        # Only stage runs the SLO watch window
        assert metrics.calls == 3
        assert targets["stage"].replicas["web"] == 3
        assert targets["prod"].replicas["web"] == 3
        assert len(coordinator.approval_gate.requests) == 2

    @pytest.mark.asyncio
    async def test_dev_is_probe_only(self, make_coordinator, targets, metrics):
        result = await make_coordinator().run(TAG_BUILD)

        dev = result.stage("dev")
        assert dev.outcome.reason == "probe passed"
        assert dev.outcome.samples_taken == 0
        assert targets["dev"].count("apply") == 1

    @pytest.mark.asyncio
    async def test_stage_uses_approved_replicas(self, make_coordinator, targets):
        coordinator = make_coordinator(answers={**APPROVALS, "target_replicas": "5"})

        result = await coordinator.run(TAG_BUILD)

        assert result.stage("stage").approval["target_replicas"] == "5"
        applies = [c for c in targets["stage"].calls if c[0] == "apply"]
        assert applies == [("apply", "web", 1), ("apply", "web", 5)]

    @pytest.mark.asyncio
    async def test_dev_failure_stops_pipeline(self, make_coordinator, targets):
        targets["dev"].fail_apply = True

        result = await make_coordinator().run(TAG_BUILD)

        assert not result.succeeded
        assert [s.environment for s in result.stages] == ["dev"]
        assert result.stage("dev").status == StageStatus.ABORTED
        assert targets["stage"].calls == []


class TestStageGate:

    @pytest.mark.asyncio
    async def test_declined_approval_cancels_stage(self, make_coordinator, targets):
        result = await make_coordinator(approve=False).run(TAG_BUILD)

        assert result.stage("stage").status == StageStatus.CANCELLED
        assert result.stage("prod") is None
        assert targets["stage"].calls == []

    @pytest.mark.asyncio
    async def test_missing_approver_cancels_stage(self, make_coordinator):
        answers = {k: v for k, v in APPROVALS.items() if k != "approver"}

        result = await make_coordinator(answers=answers).run(TAG_BUILD)

        assert result.stage("stage").status == StageStatus.CANCELLED
        assert "approver" in result.stage("stage").reason

    @pytest.mark.asyncio
    async def test_invalid_replica_count_cancels_stage(self, make_coordinator):
        result = await make_coordinator(answers={**APPROVALS, "target_replicas": "many"}).run(TAG_BUILD)

        assert result.stage("stage").status == StageStatus.CANCELLED
        assert result.stage("stage").reason.startswith("Invalid approval")

    @pytest.mark.asyncio
    async def test_digest_mismatch_cancels_stage(self, make_coordinator, targets):
        coordinator = make_coordinator(answers={**APPROVALS, "image_digest": "sha256:fff999"})

        result = await coordinator.run(TAG_BUILD)

        stage = result.stage("stage")
        assert stage.status == StageStatus.CANCELLED
        assert "sha256:fff999" in stage.reason
        assert "sha256:abc123" in stage.reason
        assert targets["stage"].calls == []
        assert result.stage("prod") is None

    @pytest.mark.asyncio
    async def test_approved_digest_recorded_on_revision(self, make_coordinator):
        result = await make_coordinator().run(TAG_BUILD)

        outcome = result.stage("stage").outcome
        assert outcome.canary_revision.spec.image_digest == "sha256:abc123"
        assert outcome.final_revision.spec.image_digest == "sha256:abc123"

    @pytest.mark.asyncio
    async def test_stage_rollback_leaves_dev_alone(self, make_coordinator, targets, metrics):
        metrics.samples = [MetricSample(error_rate_percent=8.0, p95_seconds=0.1)]

        result = await make_coordinator().run(TAG_BUILD)

        assert result.stage("stage").status == StageStatus.ROLLED_BACK
        assert result.stage("stage").outcome.decision == PromotionDecision.ROLLBACK
        assert result.stage("dev").status == StageStatus.PROMOTED
        assert targets["dev"].count("rollback_to") == 0
        assert targets["stage"].count("rollback_to") == 1
        assert result.stage("prod") is None


class TestProdGate:

    @pytest.mark.asyncio
    async def test_branch_build_skips_prod(self, make_coordinator, targets):
        build = BuildInfo(image_tag="main-abc123", image_digest="sha256:abc123", change_summary="wip")

        result = await make_coordinator().run(build)

        assert result.succeeded
        assert result.stage("prod").status == StageStatus.SKIPPED
        assert result.stage("prod").reason == "not a tag build and not forced"
        assert targets["prod"].calls == []

    @pytest.mark.asyncio
    async def test_forced_branch_build_releases(self, make_coordinator):
        build = BuildInfo(image_tag="main-abc123", image_digest="sha256:abc123", change_summary="hotfix")

        result = await make_coordinator(force_prod=True).run(build)

        assert result.stage("prod").status == StageStatus.PROMOTED

    @pytest.mark.asyncio
    async def test_unclean_upstream_skips_prod(self, make_coordinator, targets):
        build = BuildInfo(**{**TAG_BUILD.__dict__, "upstream_status": "failed"})

        result = await make_coordinator().run(build)

        assert result.stage("prod").status == StageStatus.SKIPPED
        assert "failed" in result.stage("prod").reason
        assert targets["prod"].calls == []

    @pytest.mark.asyncio
    async def test_unclean_override_needs_confirmation(self, make_coordinator, targets):
        build = BuildInfo(**{**TAG_BUILD.__dict__, "upstream_status": "failed"})

        result = await make_coordinator(allow_unclean_prod=True).run(build)

        assert result.stage("prod").status == StageStatus.CANCELLED
        assert targets["prod"].calls == []

    @pytest.mark.asyncio
    async def test_unclean_override_with_confirmation(self, make_coordinator):
        build = BuildInfo(**{**TAG_BUILD.__dict__, "upstream_status": "failed"})
        coordinator = make_coordinator(
            answers={**APPROVALS, "confirm_unclean_upstream": "Yes"},
            allow_unclean_prod=True,
        )

        result = await coordinator.run(build)

        assert result.stage("prod").status == StageStatus.PROMOTED

    @pytest.mark.asyncio
    async def test_unhealthy_prod_probe_rolls_back(self, make_coordinator, targets, probe):
        coordinator = make_coordinator()
        probes = iter([True, True, False])
        original = probe.check

        async def flaky_check(endpoint, marker, timeout):
            await original(endpoint, marker, timeout)
            if next(probes):
                return probe.result
            return ProbeResult(healthy=False, reason=ProbeReason.TIMEOUT, diagnostics="no response")

        probe.check = flaky_check

        result = await coordinator.run(TAG_BUILD)

        assert result.stage("prod").status == StageStatus.ROLLED_BACK
        assert targets["prod"].count("rollback_to") == 1
        assert result.stage("stage").status == StageStatus.PROMOTED


class TestSerialization:

    @pytest.mark.asyncio
    async def test_pipeline_result_to_dict(self, make_coordinator):
        data = (await make_coordinator().run(TAG_BUILD, promotion_id="p-42")).to_dict()

        assert data["promotion_id"] == "p-42"
        assert data["git_tag"] == "v1.4.2"
        assert data["succeeded"] is True
        assert data["stages"][1]["approval"]["approver"] == "alice"
        assert data["stages"][1]["outcome"]["decision"] == "promote"


class TestConfig:

    def test_from_settings(self):
        cfg = PromotionConfig.from_settings(Settings(WATCH_TOTAL_CHECKS=5, MAX_P95_SECONDS=0.8))

        assert cfg.watch.total_checks == 5
        assert cfg.thresholds.max_p95_seconds == 0.8
        assert cfg.environment("prod").canary_replicas == cfg.prod.target_replicas
        assert cfg.environment("stage").name == "stage"

    def test_missing_target_rejected(self, config, probe, metrics):
        with pytest.raises(ValueError, match="prod"):
            PromotionCoordinator(config, {"dev": None, "stage": None}, probe, metrics, StaticApprovalGate())
