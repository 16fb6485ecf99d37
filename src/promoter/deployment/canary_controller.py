"""Canary promotion controller.

Drives one environment through a canary cycle:

    Deploying -> Probing -> Watching -> {Promoting | RollingBack | Aborted} -> Done

Each state runs to a terminal outcome before the next one starts. Boundary
failures are converted into an ABORT or ROLLBACK decision here, so a cycle
always ends with exactly one PromotionDecision and the diagnostics that
explain it. Decisions are never retried; re-running is the caller's call.

Example:
    >>> controller = CanaryController(target, HealthProbe(), PrometheusMetricsSource())
    >>> outcome = await controller.run(plan)
    >>> if outcome.decision == PromotionDecision.ROLLBACK:
    >>>     print(outcome.rollback_target, outcome.breach_reasons)
"""
import asyncio
import time
from typing import Awaitable, Callable, Dict, Optional

from loguru import logger

from src.promoter.monitoring.metrics import (
    CANARY_CYCLE_DURATION,
    CANARY_STATE_TRANSITIONS,
    METRICS_QUERY_FAILURES,
    PROBE_RESULTS,
    PROMOTION_DECISIONS,
    SLO_GATE_EVALUATIONS,
)
from src.promoter.monitoring.tracing import (
    get_current_span,
    record_exception,
    set_span_attributes,
    tracer,
)

from .errors import (
    ApplyFailed,
    HistoryUnavailable,
    MetricsQueryFailed,
    MissingPriorRevision,
    RollbackFailed,
    RolloutTimeout,
)
from .health_probe import HealthProbe
from .metrics_source import MetricsSource
from .models import (
    CanaryOutcome,
    CanaryPlan,
    CanaryState,
    MetricSample,
    PromotionDecision,
    Revision,
)
from .slo_gate import SLOGate
from .target import DeploymentTarget


class Clock:
    """Time source for the watch loop; swapped for a fake in tests."""

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def monotonic(self) -> float:
        return time.monotonic()


class CanaryController:
    """State machine for a single canary cycle.

    Not safe to run concurrently against the same release: the controller
    assumes exclusive ownership of the release's revision history.
    """

    def __init__(
        self,
        target: DeploymentTarget,
        probe: HealthProbe,
        metrics_source: MetricsSource,
        gate: Optional[SLOGate] = None,
        clock: Optional[Clock] = None,
        max_consecutive_query_failures: int = 3,
        history_limit: int = 10
    ):
        """Initialize canary controller.

        Args:
            target: Deployment target for the environment
            probe: Health probe run once after the canary is ready
            metrics_source: Source of error rate and latency samples
            gate: SLO gate; default thresholds if omitted
            clock: Time source for the watch loop
            max_consecutive_query_failures: Failed samples in a row that abort
            history_limit: Revisions inspected when looking for a rollback target
        """
        if max_consecutive_query_failures < 1:
            raise ValueError("max_consecutive_query_failures must be >= 1")

        self.target = target
        self.probe = probe
        self.metrics_source = metrics_source
        self.gate = gate or SLOGate()
        self.clock = clock or Clock()
        self.max_consecutive_query_failures = max_consecutive_query_failures
        self.history_limit = history_limit

        self._handlers: Dict[
            CanaryState, Callable[[CanaryPlan, CanaryOutcome], Awaitable[CanaryState]]
        ] = {
            CanaryState.DEPLOYING: self._deploy,
            CanaryState.PROBING: self._probe,
            CanaryState.WATCHING: self._watch,
            CanaryState.PROMOTING: self._promote,
            CanaryState.ROLLING_BACK: self._roll_back,
            CanaryState.ABORTED: self._abort,
        }

    async def run(self, plan: CanaryPlan) -> CanaryOutcome:
        """Run one canary cycle to its terminal decision.

        Args:
            plan: Canary spec, probe and watch settings for the environment

        Returns:
            CanaryOutcome with the decision and its diagnostics

        Raises:
            MissingPriorRevision: If a rollback is reached without a prior
                revision, which the probe and watch guards rule out
        """
        release = plan.canary_spec.release_name
        outcome = CanaryOutcome(
            environment=plan.environment,
            decision=PromotionDecision.ABORT,
            reason="cycle did not complete",
        )
        started = self.clock.monotonic()

        logger.info(
            f"🐤 Starting canary cycle for {release} in {plan.environment}: "
            f"{plan.canary_spec.image}, {plan.canary_spec.replica_count} -> {plan.target_replicas} replicas"
        )

        with tracer.start_as_current_span("canary_cycle") as span:
            set_span_attributes(
                span,
                environment=plan.environment,
                release=release,
                image=plan.canary_spec.image,
            )

            state = CanaryState.DEPLOYING
            while state is not CanaryState.DONE:
                self._enter(outcome, state)
                state = await self._handlers[state](plan, outcome)
            self._enter(outcome, CanaryState.DONE)

            set_span_attributes(span, decision=outcome.decision.value, reason=outcome.reason)

        PROMOTION_DECISIONS.labels(
            environment=plan.environment,
            decision=outcome.decision.value,
        ).inc()
        CANARY_CYCLE_DURATION.labels(
            environment=plan.environment,
            decision=outcome.decision.value,
        ).observe(self.clock.monotonic() - started)

        log = logger.info if outcome.decision is PromotionDecision.PROMOTE else logger.error
        log(f"Canary cycle for {release} in {plan.environment} ended: "
            f"{outcome.decision.value.upper()} ({outcome.reason})")
        return outcome

    def _enter(self, outcome: CanaryOutcome, state: CanaryState) -> None:
        outcome.states.append(state)
        CANARY_STATE_TRANSITIONS.labels(environment=outcome.environment, state=state.value).inc()
        logger.debug(f"[{outcome.environment}] -> {state.value}")

    def _record_error(self, outcome: CanaryOutcome, error: Exception) -> None:
        outcome.error = str(error)
        record_exception(get_current_span(), error)

    async def _deploy(self, plan: CanaryPlan, outcome: CanaryOutcome) -> CanaryState:
        spec = plan.canary_spec
        try:
            outcome.canary_revision = await self.target.apply(spec)
        except ApplyFailed as e:
            self._record_error(outcome, e)
            outcome.reason = "canary apply failed"
            return CanaryState.ABORTED

        logger.info(f"Canary {spec.release_name} applied as revision {outcome.canary_revision.number}")

        try:
            await self.target.wait_ready(spec.release_name, plan.ready_timeout)
        except RolloutTimeout as e:
            self._record_error(outcome, e)
            outcome.reason = f"canary not ready within {plan.ready_timeout:.0f}s"
            return CanaryState.ABORTED

        return CanaryState.PROBING

    async def _probe(self, plan: CanaryPlan, outcome: CanaryOutcome) -> CanaryState:
        result = await self.probe.check(plan.probe_url, plan.probe_marker, plan.probe_timeout)
        outcome.probe = result
        PROBE_RESULTS.labels(environment=plan.environment, reason=result.reason.value).inc()

        if result.healthy:
            return CanaryState.WATCHING if plan.watch else CanaryState.PROMOTING

        outcome.reason = f"probe unhealthy ({result.reason.value})"
        return await self._rollback_or_abort(plan, outcome)

    async def _watch(self, plan: CanaryPlan, outcome: CanaryOutcome) -> CanaryState:
        window = plan.watch
        consecutive_failures = 0

        for check in range(1, window.total_checks + 1):
            await self.clock.sleep(window.poll_interval)

            sample = await self._take_sample(plan.job_pattern)
            outcome.samples_taken += 1
            outcome.last_sample = sample
            outcome.checks_completed = check

            result = self.gate.evaluate(sample)

            if result.breached:
                SLO_GATE_EVALUATIONS.labels(environment=plan.environment, verdict=result.verdict.value).inc()
                outcome.last_breach = sample
                outcome.breach_reasons = list(result.reasons)
                outcome.reason = (
                    f"SLO breach at check {check}/{window.total_checks}: {'; '.join(result.reasons)}"
                )
                return await self._rollback_or_abort(plan, outcome)

            if result.query_failed:
                consecutive_failures += 1
                outcome.consecutive_query_failures = consecutive_failures
                SLO_GATE_EVALUATIONS.labels(environment=plan.environment, verdict="query_failed").inc()
                METRICS_QUERY_FAILURES.labels(environment=plan.environment).inc()

                if consecutive_failures >= self.max_consecutive_query_failures:
                    outcome.reason = (
                        f"{consecutive_failures} consecutive metrics query failures "
                        f"at check {check}/{window.total_checks}"
                    )
                    return CanaryState.ABORTED
                continue

            consecutive_failures = 0
            outcome.consecutive_query_failures = 0
            SLO_GATE_EVALUATIONS.labels(environment=plan.environment, verdict=result.verdict.value).inc()

            logger.info(
                f"[{plan.environment}] check {check}/{window.total_checks} healthy: "
                f"error rate {sample.error_rate_percent:.2f}%, p95 {sample.p95_seconds:.3f}s"
            )

        return CanaryState.PROMOTING

    async def _take_sample(self, job_pattern: str) -> MetricSample:
        try:
            return await self.metrics_source.sample(job_pattern)
        except MetricsQueryFailed as e:
            logger.warning(f"Metrics sample failed: {e}")
            return MetricSample(query_ok=False)

    async def _rollback_or_abort(self, plan: CanaryPlan, outcome: CanaryOutcome) -> CanaryState:
        """Pick the rollback target, or abort when there is nothing to go back to."""
        release = plan.canary_spec.release_name
        try:
            prior = await self._prior_revision(release, outcome.canary_revision)
        except HistoryUnavailable as e:
            self._record_error(outcome, e)
            outcome.reason += "; revision history unavailable"
            return CanaryState.ABORTED

        if prior is None:
            logger.warning(f"No revision of {release} precedes the canary; cannot roll back")
            outcome.reason += "; no prior revision to roll back to"
            return CanaryState.ABORTED

        outcome.rollback_target = prior.number
        return CanaryState.ROLLING_BACK

    async def _prior_revision(self, release: str, canary: Optional[Revision]) -> Optional[Revision]:
        if canary is None:
            return None
        for revision in await self.target.history(release, self.history_limit):
            if revision.number < canary.number:
                return revision
        return None

    async def _roll_back(self, plan: CanaryPlan, outcome: CanaryOutcome) -> CanaryState:
        release = plan.canary_spec.release_name
        canary = outcome.canary_revision
        if outcome.rollback_target is None or canary is None or outcome.rollback_target >= canary.number:
            raise MissingPriorRevision(
                f"Rollback of {release} requested without a revision older than the canary",
                release,
            )

        logger.warning(
            f"⏪ Rolling back {release} from revision {canary.number} to {outcome.rollback_target}"
        )
        try:
            outcome.final_revision = await self.target.rollback_to(release, outcome.rollback_target)
        except RollbackFailed as e:
            logger.critical(f"Rollback of {release} failed; manual intervention required: {e}")
            self._record_error(outcome, e)
            outcome.fatal = True
            outcome.reason += "; rollback failed"
            return CanaryState.ABORTED

        outcome.decision = PromotionDecision.ROLLBACK
        return CanaryState.DONE

    async def _promote(self, plan: CanaryPlan, outcome: CanaryOutcome) -> CanaryState:
        if plan.watch:
            outcome.reason = f"all {plan.watch.total_checks} checks within SLO"
        else:
            outcome.reason = "probe passed"

        if plan.target_replicas == plan.canary_spec.replica_count:
            outcome.final_revision = outcome.canary_revision
            outcome.decision = PromotionDecision.PROMOTE
            return CanaryState.DONE

        spec = plan.final_spec
        logger.info(f"⬆️  Scaling {spec.release_name} to {spec.replica_count} replicas")
        try:
            outcome.final_revision = await self.target.apply(spec)
            await self.target.wait_ready(spec.release_name, plan.promote_timeout)
        except (ApplyFailed, RolloutTimeout) as e:
            self._record_error(outcome, e)
            outcome.reason = f"scale-up to {spec.replica_count} replicas failed"
            return CanaryState.ABORTED

        outcome.decision = PromotionDecision.PROMOTE
        return CanaryState.DONE

    async def _abort(self, plan: CanaryPlan, outcome: CanaryOutcome) -> CanaryState:
        outcome.decision = PromotionDecision.ABORT
        return CanaryState.DONE
