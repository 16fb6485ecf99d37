"""Unit tests for the HTTP health probe."""
import httpx
import pytest

from src.promoter.deployment.health_probe import HealthProbe
from src.promoter.deployment.models import ProbeReason

MARKER = "<!DOCTYPE HTML>"
URL = "http://web.stage.svc.cluster.local/"


def probe_for(handler) -> HealthProbe:
    return HealthProbe(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestHealthProbe:

    @pytest.mark.asyncio
    async def test_marker_found(self):
        probe = probe_for(lambda r: httpx.Response(200, text=f"{MARKER}<html><body>ok</body></html>"))

        result = await probe.check(URL, MARKER, timeout=5)

        assert result.healthy is True
        assert result.reason == ProbeReason.OK
        assert result.status_code == 200

    @pytest.mark.asyncio
    async def test_marker_missing(self):
        probe = probe_for(lambda r: httpx.Response(200, text="<html>maintenance</html>"))

        result = await probe.check(URL, MARKER, timeout=5)

        assert result.healthy is False
        assert result.reason == ProbeReason.MARKER_MISSING
        assert "maintenance" in result.diagnostics

    @pytest.mark.asyncio
    async def test_marker_match_is_exact(self):
        probe = probe_for(lambda r: httpx.Response(200, text="<!doctype html><html></html>"))

        result = await probe.check(URL, MARKER, timeout=5)

        assert result.reason == ProbeReason.MARKER_MISSING

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = await probe_for(handler).check(URL, MARKER, timeout=5)

        assert result.healthy is False
        assert result.reason == ProbeReason.CONNECTION_ERROR
        assert "connection refused" in result.diagnostics

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        result = await probe_for(handler).check(URL, MARKER, timeout=5)

        assert result.healthy is False
        assert result.reason == ProbeReason.TIMEOUT

    @pytest.mark.asyncio
    async def test_single_request_no_retry(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(502, text="bad gateway")

        result = await probe_for(handler).check(URL, MARKER, timeout=5)

        assert len(calls) == 1
        assert result.status_code == 502
