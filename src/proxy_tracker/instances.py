"""
Monitored instance interface for the proxy tracker.

The tracker never manages instance lifecycles itself; it consumes the
narrow InstanceController interface below. DockerInstanceController is the
stock implementation: instances are docker containers whose names share a
prefix, the start marker is the container's start time, and peer counts
come from each instance's JSON status endpoint.
"""

import asyncio
from typing import Optional, Protocol, runtime_checkable

import httpx

from .audit_logger import AuditLogger
from .config import InstancesConfig
from .enums import LogLevel
from .exceptions import InstanceControlError
from .models import PeerCount


@runtime_checkable
class InstanceController(Protocol):
    """Operations the tracker needs from the monitored instances."""

    async def list_instances(self) -> list[str]:
        """IDs of the instances currently being monitored."""
        ...

    async def get_peer_count(self, instance_id: str) -> Optional[PeerCount]:
        """Current peers of an instance, or None if its status is unavailable."""
        ...

    async def get_start_marker(self, instance_id: str) -> Optional[str]:
        """Opaque identity of the instance's current run, or None."""
        ...

    async def restart_instance(self, instance_id: str) -> bool:
        """Restart an instance. Returns True on success."""
        ...


def parse_peer_status(payload: object) -> PeerCount:
    """
    Build a PeerCount from a status document.

    Raises:
        InstanceControlError: If the document lacks a usable peer count
    """
    if not isinstance(payload, dict):
        raise InstanceControlError(
            code="bad_status",
            message="Status document is not an object",
        )
    stats = payload.get("peers", payload)
    if not isinstance(stats, dict):
        stats = payload
    try:
        connected = int(stats["connected"])
        connecting = int(stats.get("connecting", 0))
    except (KeyError, TypeError, ValueError) as e:
        raise InstanceControlError(
            code="bad_status",
            message=f"Status document has no peer count: {e}",
            details={"payload": payload},
        )
    if connected < 0 or connecting < 0:
        raise InstanceControlError(
            code="bad_status",
            message="Negative peer count in status document",
            details={"payload": payload},
        )
    return PeerCount(connected=connected, connecting=connecting)


async def fetch_peer_counts(
    controller: InstanceController,
    instance_ids: list[str],
    max_concurrency: int = 4,
) -> dict[str, Optional[PeerCount]]:
    """
    Query peer counts of several instances concurrently.

    At most ``max_concurrency`` queries are in flight. Returns only after
    every query has finished; failed queries map to None.
    """
    semaphore = asyncio.Semaphore(max(max_concurrency, 1))

    async def _one(instance_id: str) -> Optional[PeerCount]:
        async with semaphore:
            try:
                return await controller.get_peer_count(instance_id)
            except InstanceControlError:
                return None

    results = await asyncio.gather(*(_one(i) for i in instance_ids))
    return dict(zip(instance_ids, results))


class DockerInstanceController:
    """InstanceController over the docker CLI and per-instance HTTP status."""

    COMPONENT = "DockerInstanceController"

    def __init__(
        self,
        config: InstancesConfig,
        logger: Optional[AuditLogger] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        docker_binary: str = "docker",
        simulation_mode: bool = False,
    ) -> None:
        self._config = config
        self._simulation_mode = simulation_mode
        self._logger = logger
        self._http_client = http_client
        self._docker = docker_binary
        self._owns_client = False

    async def __aenter__(self) -> "DockerInstanceController":
        if self._http_client is None:
            self._http_client = httpx.AsyncClient()
            self._owns_client = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
            self._owns_client = False

    async def list_instances(self) -> list[str]:
        output = await self._run_docker(
            "ps", "--filter", f"name=^{self._config.name_prefix}",
            "--format", "{{.Names}}",
        )
        return sorted(line.strip() for line in output.splitlines() if line.strip())

    async def get_start_marker(self, instance_id: str) -> Optional[str]:
        try:
            output = await self._run_docker(
                "inspect", "-f", "{{.State.StartedAt}}", instance_id
            )
        except InstanceControlError as e:
            if self._logger:
                self._logger.log_error(self.COMPONENT, "Cannot read start marker", e)
            return None
        marker = output.strip()
        return marker or None

    async def restart_instance(self, instance_id: str) -> bool:
        if self._simulation_mode:
            if self._logger:
                self._logger.log(
                    LogLevel.INFO,
                    self.COMPONENT,
                    f"Simulation: would restart {instance_id}",
                    {"instance": instance_id},
                )
            return True
        try:
            await self._run_docker("restart", instance_id)
        except InstanceControlError as e:
            if self._logger:
                self._logger.log_error(
                    self.COMPONENT,
                    f"Restart of {instance_id} failed",
                    e,
                )
            return False
        return True

    async def get_peer_count(self, instance_id: str) -> Optional[PeerCount]:
        port = self._config.status_ports.get(instance_id)
        if port is None:
            return None
        url = self._config.status_url_template.format(port=port, instance=instance_id)

        client = self._http_client
        if client is None:
            raise InstanceControlError(
                code="not_started",
                message="Controller must be used as an async context manager",
            )
        try:
            response = await client.get(url, timeout=self._config.command_timeout_seconds)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise InstanceControlError(
                code="status_unavailable",
                message=f"Status query failed for {instance_id}: {e}",
                details={"url": url},
            )
        return parse_peer_status(payload)

    async def _run_docker(self, *args: str) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._docker, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise InstanceControlError(
                code="docker_unavailable",
                message=f"Cannot run {self._docker}: {e}",
            )

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self._config.command_timeout_seconds
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise InstanceControlError(
                code="timeout",
                message=f"docker {args[0]} timed out",
                details={"args": list(args)},
            )

        if proc.returncode != 0:
            raise InstanceControlError(
                code="docker_failed",
                message=stderr.decode("utf-8", "replace").strip()
                or f"docker {args[0]} exited with {proc.returncode}",
                details={"args": list(args), "returncode": proc.returncode},
            )
        return stdout.decode("utf-8", "replace")
