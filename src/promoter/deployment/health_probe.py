"""Single-shot functional check against a freshly deployed endpoint.

The probe never retries: one request, one verdict. Retry policy belongs to
whoever drives it.
"""
from typing import Optional

import httpx
from loguru import logger

from .models import ProbeReason, ProbeResult

# Keep diagnostics readable in logs and reports
_SNIPPET_CHARS = 200


class HealthProbe:
    """Fetches a URL and looks for a literal marker in the response body."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        """Initialize health probe.

        Args:
            client: Shared HTTP client; a private one is created if omitted
        """
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(follow_redirects=True)

    async def check(self, endpoint: str, expected_marker: str, timeout: float) -> ProbeResult:
        """Probe ``endpoint`` once.

        Args:
            endpoint: URL of the freshly deployed service
            expected_marker: String the body must contain exactly
            timeout: Total request timeout in seconds

        Returns:
            ProbeResult; never raises for network or content failures
        """
        logger.info(f"Probing {endpoint} for marker {expected_marker!r} (timeout {timeout}s)")

        try:
            response = await self.client.get(endpoint, timeout=timeout)
        except httpx.TimeoutException as e:
            return self._unhealthy(
                ProbeReason.TIMEOUT,
                f"No response from {endpoint} within {timeout}s: {e!r}",
            )
        except httpx.HTTPError as e:
            return self._unhealthy(
                ProbeReason.CONNECTION_ERROR,
                f"Request to {endpoint} failed: {e!r}",
            )

        body = response.text
        if expected_marker not in body:
            snippet = body[:_SNIPPET_CHARS].replace("\n", " ")
            return self._unhealthy(
                ProbeReason.MARKER_MISSING,
                f"Marker {expected_marker!r} not found in response "
                f"(HTTP {response.status_code}, {len(body)} bytes): {snippet}",
                response.status_code,
            )

        logger.info(f"Probe healthy: {endpoint} returned HTTP {response.status_code} with marker")
        return ProbeResult(
            healthy=True,
            reason=ProbeReason.OK,
            diagnostics=f"HTTP {response.status_code}, marker found",
            status_code=response.status_code,
        )

    def _unhealthy(
        self,
        reason: ProbeReason,
        diagnostics: str,
        status_code: Optional[int] = None
    ) -> ProbeResult:
        logger.warning(f"Probe unhealthy ({reason.value}): {diagnostics}")
        return ProbeResult(
            healthy=False,
            reason=reason,
            diagnostics=diagnostics,
            status_code=status_code,
        )

    async def close(self):
        """Close HTTP client if this probe created it."""
        if self._owns_client:
            await self.client.aclose()
