"""
Docker Sandbox — throwaway containers for command tools.

Every sandboxed command gets a fresh container with:
  - a unique name and ownership labels
  - the workspace mounted read-only, read-write, or not at all
  - ``--network none`` unless the SandboxSpec allow-lists hosts, in which case the
    container joins the configured egress network and the allowed hosts are
    passed as a label and an environment variable for the egress proxy
  - memory/cpu limits, all capabilities dropped, no privilege escalation

The container is removed with ``docker rm -f`` in a ``finally`` block after
every run: success, failure, timeout or cancellation.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from pathlib import Path
from typing import Optional

import structlog

from vigil.tools.host import CommandOutcome, run_process
from vigil.types import SandboxSpec

logger = structlog.get_logger(__name__)

# Path components that are never mounted into sandbox containers
DENIED_MOUNT_PATTERNS = frozenset(
    {
        "vigil_data",
        ".env",
        ".ssh",
        "credentials",
        "secrets",
        ".git",
    }
)

CONTAINER_WORKDIR = "/workspace"


class SandboxUnavailableError(RuntimeError):
    """Docker is missing or the daemon cannot be reached."""


class DockerSandbox:
    """Runs commands inside disposable Docker containers."""

    def __init__(
        self,
        workspace_dir: Path,
        *,
        docker_binary: str = "docker",
        egress_network: str = "vigil-egress",
        max_output_chars: int = 25000,
    ):
        self._workspace_dir = workspace_dir
        self._docker = docker_binary
        self._egress_network = egress_network
        self._max_output_chars = max_output_chars
        self._available: Optional[bool] = None
        self._live: set[str] = set()

    async def check_available(self) -> bool:
        if self._available is not None:
            return self._available
        try:
            outcome = await run_process(
                [self._docker, "version", "--format", "{{.Server.Version}}"],
                timeout=5.0,
            )
            self._available = outcome.exit_code == 0
            if self._available:
                logger.info("sandbox.docker_available", version=outcome.stdout.strip())
            else:
                logger.warning("sandbox.docker_unavailable", stderr=outcome.stderr[:200])
        except FileNotFoundError:
            self._available = False
            logger.warning("sandbox.docker_not_found", binary=self._docker)
        return self._available

    @staticmethod
    def is_mount_allowed(path: Path) -> bool:
        """Path component match, so ``.git`` does not block ``.github/``."""
        parts = [p.lower() for p in path.resolve().parts]
        return not any(pattern in parts for pattern in DENIED_MOUNT_PATTERNS)

    def build_command(self, command: str, spec: SandboxSpec, container_name: str) -> list[str]:
        cmd = [
            self._docker,
            "run",
            "--rm",
            "--name",
            container_name,
            "--label",
            "vigil-sandbox=true",
            "--label",
            f"vigil-pid={os.getpid()}",
            f"--memory={spec.memory_limit}",
            f"--cpus={spec.cpu_limit}",
            "--cap-drop",
            "ALL",
            "--security-opt",
            "no-new-privileges",
            "--pids-limit",
            "256",
        ]

        if spec.network == "allowlist" and spec.allowed_hosts:
            hosts = ",".join(spec.allowed_hosts)
            cmd.extend([
                "--network", self._egress_network,
                "--label", f"vigil-allowed-hosts={hosts}",
                "-e", f"VIGIL_ALLOWED_HOSTS={hosts}",
            ])
        else:
            cmd.extend(["--network", "none"])

        if spec.filesystem != "none":
            workspace = self._workspace_dir.resolve()
            if self.is_mount_allowed(workspace):
                cmd.extend(["-v", f"{workspace}:{CONTAINER_WORKDIR}:{spec.filesystem}"])
                cmd.extend(["-w", CONTAINER_WORKDIR])
            else:
                logger.warning("sandbox.mount_denied", path=str(workspace))

        cmd.extend([spec.image, "sh", "-c", command])
        return cmd

    async def run(self, command: str, spec: SandboxSpec, *, timeout: float) -> CommandOutcome:
        """Run *command* in a new container; the container never outlives the call."""
        if not await self.check_available():
            raise SandboxUnavailableError("docker is not available on this host")

        container_name = f"vigil-sbx-{uuid.uuid4().hex[:12]}"
        argv = self.build_command(command, spec, container_name)
        self._live.add(container_name)
        logger.info(
            "sandbox.container_starting",
            container=container_name,
            image=spec.image,
            network=spec.network,
            filesystem=spec.filesystem,
        )
        try:
            outcome = await run_process(
                argv,
                timeout=timeout,
                max_output_chars=self._max_output_chars,
            )
            if outcome.timed_out:
                logger.warning("sandbox.timeout", container=container_name, timeout=timeout)
            return outcome
        finally:
            await self.remove_container(container_name)

    async def remove_container(self, container_name: str) -> None:
        """Force-remove a container; missing containers are fine."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self._docker,
                "rm",
                "-f",
                container_name,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await asyncio.wait_for(proc.wait(), timeout=15.0)
            logger.debug("sandbox.container_removed", container=container_name)
        except (OSError, asyncio.TimeoutError) as exc:
            logger.warning("sandbox.remove_failed", container=container_name, error=str(exc))
        finally:
            self._live.discard(container_name)

    async def cleanup_all(self) -> None:
        """Remove every container this process still tracks (daemon shutdown)."""
        for name in list(self._live):
            await self.remove_container(name)

    @property
    def live_containers(self) -> list[str]:
        return sorted(self._live)
