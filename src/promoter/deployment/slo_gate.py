"""SLO gate evaluation for canary metric samples.

Classifies a single sample against absolute thresholds. Only the series
that answered are judged: a breach in one of them is still a breach, while
a sample with nothing breaching and a failed query is treated as healthy
(fail-open) so that one flaky scrape cannot trigger a rollback. Sustained
telemetry loss is handled by the controller, which counts consecutive
failed samples.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from loguru import logger

from .models import ERROR_RATE, P95_LATENCY, MetricSample, SLOThresholds


class GateVerdict(Enum):
    HEALTHY = "healthy"
    BREACH = "breach"


@dataclass(frozen=True)
class GateResult:
    """Verdict for one sample, with the conditions that triggered it."""
    verdict: GateVerdict
    reasons: List[str] = field(default_factory=list)
    query_failed: bool = False

    @property
    def breached(self) -> bool:
        return self.verdict is GateVerdict.BREACH

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "verdict": self.verdict.value,
            "reasons": list(self.reasons),
            "query_failed": self.query_failed,
        }


class SLOGate:
    """Evaluates metric samples against SLO thresholds."""

    def __init__(self, thresholds: Optional[SLOThresholds] = None):
        self.thresholds = thresholds or SLOThresholds()

    def evaluate(
        self,
        sample: MetricSample,
        thresholds: Optional[SLOThresholds] = None
    ) -> GateResult:
        """Classify ``sample`` as healthy or breaching.

        Args:
            sample: Metric reading to classify
            thresholds: Overrides the gate's configured thresholds

        Returns:
            GateResult; BREACH when either limit is strictly exceeded
        """
        limits = thresholds or self.thresholds
        answered = sample.answered_series
        query_failed = not sample.query_ok

        reasons = []
        if ERROR_RATE in answered and sample.error_rate_percent > limits.max_error_rate_percent:
            reasons.append(
                f"Error rate {sample.error_rate_percent:.2f}% exceeds "
                f"{limits.max_error_rate_percent:.2f}%"
            )
        if P95_LATENCY in answered and sample.p95_seconds > limits.max_p95_seconds:
            reasons.append(
                f"P95 latency {sample.p95_seconds:.3f}s exceeds {limits.max_p95_seconds:.3f}s"
            )

        # A series that answered can still breach when its sibling failed
        if reasons:
            logger.warning(f"SLO breach: {'; '.join(reasons)}")
            return GateResult(verdict=GateVerdict.BREACH, reasons=reasons, query_failed=query_failed)

        if query_failed:
            logger.warning("Metrics query failed for this sample; treating as healthy")
            return GateResult(
                verdict=GateVerdict.HEALTHY,
                reasons=["metrics query failed"],
                query_failed=True,
            )

        logger.debug(
            f"SLO healthy: error rate {sample.error_rate_percent:.2f}%, "
            f"p95 {sample.p95_seconds:.3f}s"
        )
        return GateResult(verdict=GateVerdict.HEALTHY)
