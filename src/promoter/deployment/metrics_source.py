"""Canary metrics queries against Prometheus.

Only two scalar series matter for promotion: the 5xx error rate and the
p95 request latency, both over a 5 minute window and scoped to the canary's
job. A missing series is reported as a failed query, never as zero, so the
gate cannot mistake an idle or unscraped canary for a healthy one.

Example:
    >>> source = PrometheusMetricsSource("http://prometheus:9090")
    >>> sample = await source.sample("web-stage.*")
    >>> if not sample.query_ok:
    >>>     ...  # telemetry gap, not a verdict
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import httpx
from loguru import logger

from .errors import MetricsQueryFailed
from .models import ERROR_RATE, P95_LATENCY, MetricSample

ERROR_RATE_QUERY = (
    '100 * sum(rate(http_requests_total{{job=~"{job}",status_code=~"5.."}}[5m]))'
    ' / sum(rate(http_requests_total{{job=~"{job}"}}[5m]))'
)
P95_LATENCY_QUERY = (
    'histogram_quantile(0.95, sum(rate(http_request_duration_seconds_bucket{{job=~"{job}"}}[5m])) by (le))'
)


@dataclass(frozen=True)
class QueryResult:
    """Scalar answer to one metrics query."""
    value: float = 0.0
    ok: bool = False
    error: str = ""


class MetricsSource(ABC):
    """Answers point-in-time scalar queries for canary health."""

    @abstractmethod
    async def query(self, expression: str) -> QueryResult:
        """Evaluate ``expression``; failures are reported, not raised."""
        pass

    async def sample(self, job_pattern: str) -> MetricSample:
        """Take one error-rate and latency reading for ``job_pattern``.

        The sample is only ``query_ok`` when both series answered; otherwise
        ``failed_series`` names the ones that did not.
        """
        results = {
            ERROR_RATE: await self.query(ERROR_RATE_QUERY.format(job=job_pattern)),
            P95_LATENCY: await self.query(P95_LATENCY_QUERY.format(job=job_pattern)),
        }

        failed = tuple(name for name, result in results.items() if not result.ok)
        if failed:
            errors = [results[name].error for name in failed]
            logger.warning(f"Metrics query failed for {job_pattern}: {'; '.join(errors)}")

        return MetricSample(
            error_rate_percent=results[ERROR_RATE].value,
            p95_seconds=results[P95_LATENCY].value,
            timestamp=datetime.now(timezone.utc),
            query_ok=not failed,
            failed_series=failed,
        )

    async def close(self):
        """Release any client resources."""
        pass


class PrometheusMetricsSource(MetricsSource):
    """Queries the Prometheus HTTP API for instant vectors."""

    def __init__(
        self,
        prometheus_url: str = "http://prometheus:9090",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        """Initialize Prometheus source.

        Args:
            prometheus_url: Prometheus server URL
            timeout: Request timeout in seconds
            client: Shared HTTP client; a private one is created if omitted
        """
        self.prometheus_url = prometheus_url.rstrip("/")
        self.timeout = timeout
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def query(self, expression: str) -> QueryResult:
        try:
            value = await self._fetch(expression)
        except MetricsQueryFailed as e:
            return QueryResult(error=str(e))

        logger.debug(f"{expression} = {value}")
        return QueryResult(value=value, ok=True)

    async def _fetch(self, expression: str) -> float:
        """Evaluate ``expression`` as an instant vector with one sample.

        Raises:
            MetricsQueryFailed: On transport errors, error status, a missing
                series, a non-vector answer or a non-numeric value
        """
        url = f"{self.prometheus_url}/api/v1/query"

        try:
            response = await self.client.get(url, params={"query": expression})
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise MetricsQueryFailed(f"Prometheus request failed: {e!r}") from e

        if not isinstance(data, dict) or data.get("status") != "success":
            error = data.get("error", data) if isinstance(data, dict) else data
            raise MetricsQueryFailed(f"Prometheus query failed: {error}")

        try:
            result = data["data"]["result"]
            if not result:
                raise MetricsQueryFailed(f"No series returned for query: {expression}")
            value_str = result[0]["value"][1]
        except (KeyError, IndexError, TypeError) as e:
            raise MetricsQueryFailed(f"Unexpected Prometheus response for {expression}: {e!r}") from e

        try:
            value = float(value_str)
        except (ValueError, TypeError) as e:
            raise MetricsQueryFailed(f"Invalid metric value: {value_str!r}") from e

        # NaN comes back when the denominator has no traffic
        if value != value:
            raise MetricsQueryFailed(f"NaN returned for query: {expression}")
        return value

    async def close(self):
        """Close HTTP client if this source created it."""
        if self._owns_client:
            await self.client.aclose()
