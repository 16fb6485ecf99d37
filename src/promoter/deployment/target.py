"""Deployment target boundary and its Helm implementation.

The controller assumes it owns a release's revision stream for the whole
promotion. Running two promotions against the same release concurrently is
an operational error that is not detected here.
"""
import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Sequence, Tuple

from loguru import logger

from .errors import ApplyFailed, HistoryUnavailable, RollbackFailed, RolloutTimeout
from .models import DeploymentSpec, Revision


class DeploymentTarget(ABC):
    @abstractmethod
    async def apply(self, spec: DeploymentSpec) -> Revision:
        """Apply a spec and return the new revision it produced."""
        pass

    @abstractmethod
    async def wait_ready(self, release: str, timeout: float) -> None:
        """Block until the release's replicas are ready or raise RolloutTimeout."""
        pass

    @abstractmethod
    async def history(self, release: str, limit: int = 10) -> List[Revision]:
        """Return revisions, most recent first."""
        pass

    @abstractmethod
    async def rollback_to(self, release: str, revision_number: int) -> Revision:
        """Roll back to an earlier revision, producing a new one."""
        pass


class HelmDeploymentTarget(DeploymentTarget):
    """Drives one namespace through the helm and kubectl CLIs."""

    def __init__(
        self,
        namespace: str,
        helm_binary: str = "helm",
        kubectl_binary: str = "kubectl",
        command_timeout: float = 120.0
    ):
        """Initialize Helm target.

        Args:
            namespace: Kubernetes namespace all releases live in
            helm_binary: Path to the helm executable
            kubectl_binary: Path to the kubectl executable
            command_timeout: Upper bound for commands without their own timeout
        """
        self.namespace = namespace
        self.helm = helm_binary
        self.kubectl = kubectl_binary
        self.command_timeout = command_timeout
        # Specs applied by this process, keyed by (release, revision)
        self._applied: Dict[Tuple[str, int], DeploymentSpec] = {}

    async def _run(self, cmd: Sequence[str], timeout: float) -> Tuple[int, str, str]:
        """Run a command and return (returncode, stdout, stderr).

        A command that outlives ``timeout`` is killed and reported with
        return code -1.
        """
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return 127, "", str(e)

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return -1, "", f"command timed out after {timeout:.0f}s"

        return proc.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")

    async def apply(self, spec: DeploymentSpec) -> Revision:
        """Upgrade or install the release in this target's namespace.

        Raises:
            ApplyFailed: If the spec names another namespace or helm fails
        """
        if spec.namespace and spec.namespace != self.namespace:
            raise ApplyFailed(
                f"Spec targets namespace {spec.namespace} but this target drives {self.namespace}",
                spec.release_name,
            )

        cmd = [
            self.helm, "upgrade", "--install", spec.release_name, spec.chart,
            "--namespace", self.namespace,
            "--set", f"image.repository={spec.image_repository}",
            "--set", f"image.tag={spec.image_tag}",
            "--set", f"replicaCount={spec.replica_count}",
        ]
        if spec.values_override:
            cmd.extend(["--values", spec.values_override])

        logger.info(
            f"Applying {spec.release_name} ({spec.image}) with {spec.replica_count} replicas "
            f"to {self.namespace}"
        )
        code, _, stderr = await self._run(cmd, self.command_timeout)
        if code != 0:
            raise ApplyFailed(f"helm upgrade failed: {stderr.strip()}", spec.release_name)

        try:
            latest = await self.history(spec.release_name, limit=1)
        except HistoryUnavailable as e:
            raise ApplyFailed(f"Applied but could not read revision: {e}", spec.release_name) from e
        if not latest:
            raise ApplyFailed("Applied but no revision recorded", spec.release_name)

        revision = Revision(
            release_name=spec.release_name,
            number=latest[0].number,
            spec=spec,
            timestamp=latest[0].timestamp,
            status=latest[0].status,
            description=latest[0].description,
        )
        self._applied[(spec.release_name, revision.number)] = spec
        return revision

    async def wait_ready(self, release: str, timeout: float) -> None:
        cmd = [
            self.kubectl, "rollout", "status", f"deployment/{release}",
            "--namespace", self.namespace,
            f"--timeout={int(timeout)}s",
        ]
        logger.info(f"Waiting up to {timeout:.0f}s for {release} rollout in {self.namespace}")
        # kubectl enforces the timeout; the extra margin only guards a hung client
        code, _, stderr = await self._run(cmd, timeout + 15)
        if code != 0:
            raise RolloutTimeout(
                f"Rollout of {release} not ready within {timeout:.0f}s: {stderr.strip()}",
                release,
                timeout,
            )

    async def history(self, release: str, limit: int = 10) -> List[Revision]:
        cmd = [
            self.helm, "history", release,
            "--namespace", self.namespace,
            "--max", str(limit),
            "--output", "json",
        ]
        code, stdout, stderr = await self._run(cmd, self.command_timeout)
        if code != 0:
            if "not found" in stderr:
                return []
            raise HistoryUnavailable(f"helm history failed: {stderr.strip()}", release)

        try:
            entries = json.loads(stdout or "[]")
        except json.JSONDecodeError as e:
            raise HistoryUnavailable(f"Unparseable helm history: {e}", release) from e

        revisions = [self._parse_history_entry(release, entry) for entry in entries]
        revisions.sort(key=lambda r: r.number, reverse=True)
        return revisions[:limit]

    def _parse_history_entry(self, release: str, entry: Dict) -> Revision:
        number = int(entry["revision"])
        updated = entry.get("updated")
        try:
            timestamp = datetime.fromisoformat(updated) if updated else datetime.now(timezone.utc)
        except ValueError:
            timestamp = datetime.now(timezone.utc)

        return Revision(
            release_name=release,
            number=number,
            spec=self._applied.get((release, number)),
            timestamp=timestamp,
            status=entry.get("status", "unknown"),
            description=entry.get("description", ""),
        )

    async def rollback_to(self, release: str, revision_number: int) -> Revision:
        cmd = [
            self.helm, "rollback", release, str(revision_number),
            "--namespace", self.namespace,
            "--wait",
        ]
        logger.warning(f"Rolling back {release} in {self.namespace} to revision {revision_number}")
        code, _, stderr = await self._run(cmd, self.command_timeout)
        if code != 0:
            raise RollbackFailed(f"helm rollback failed: {stderr.strip()}", release)

        try:
            latest = await self.history(release, limit=1)
        except HistoryUnavailable as e:
            raise RollbackFailed(f"Rolled back but could not read revision: {e}", release) from e
        if not latest:
            raise RollbackFailed("Rolled back but no revision recorded", release)

        restored = self._applied.get((release, revision_number))
        revision = Revision(
            release_name=release,
            number=latest[0].number,
            spec=restored,
            timestamp=latest[0].timestamp,
            status=latest[0].status,
            description=latest[0].description or f"Rollback to {revision_number}",
        )
        if restored:
            self._applied[(release, revision.number)] = restored
        return revision
