"""
Host runner — executes a command line directly on the host.

This is the elevated path: it only runs after the tool policy allowed host
execution for the call and, when configured, an operator approved it.
Each command gets its own process group so a timeout or cancellation can
kill everything it spawned, not just the shell.
"""

from __future__ import annotations

import asyncio
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class CommandOutcome:
    """Captured result of one command, host or container."""
    stdout: str
    stderr: str
    exit_code: Optional[int]
    timed_out: bool = False
    elapsed_seconds: float = 0.0

    def combined_output(self) -> str:
        parts = []
        if self.stdout:
            parts.append(self.stdout.rstrip("\n"))
        if self.stderr:
            parts.append(f"[stderr]\n{self.stderr.rstrip()}")
        return "\n".join(parts)


def _decode(data: Optional[bytes], limit: int) -> str:
    if not data:
        return ""
    text = data.decode("utf-8", errors="replace")
    if len(text) > limit:
        text = text[:limit] + f"\n[... {len(text) - limit} more chars]"
    return text


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        try:
            proc.kill()
        except ProcessLookupError:
            pass


async def run_process(
    argv: list[str],
    *,
    timeout: float,
    cwd: Optional[Path] = None,
    env: Optional[dict[str, str]] = None,
    max_output_chars: int = 25000,
) -> CommandOutcome:
    """Run *argv* in a new session, killing the whole group on timeout or cancel."""
    start = time.monotonic()
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd) if cwd else None,
        env=env,
        start_new_session=True,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        _kill_group(proc)
        await proc.wait()
        logger.warning("host_runner.timeout", argv0=argv[0], timeout=timeout, pid=proc.pid)
        return CommandOutcome(
            stdout="",
            stderr="",
            exit_code=None,
            timed_out=True,
            elapsed_seconds=time.monotonic() - start,
        )
    except asyncio.CancelledError:
        _kill_group(proc)
        raise
    return CommandOutcome(
        stdout=_decode(stdout, max_output_chars),
        stderr=_decode(stderr, max_output_chars),
        exit_code=proc.returncode,
        elapsed_seconds=time.monotonic() - start,
    )


class HostRunner:
    """Runs shell commands on the host inside the workspace directory."""

    def __init__(self, workspace_dir: Path, *, shell: str = "/bin/sh", max_output_chars: int = 25000):
        self._workspace_dir = workspace_dir
        self._shell = shell
        self._max_output_chars = max_output_chars

    async def run(self, command: str, *, timeout: float) -> CommandOutcome:
        self._workspace_dir.mkdir(parents=True, exist_ok=True)
        logger.info("host_runner.exec", timeout=timeout, command_length=len(command))
        return await run_process(
            [self._shell, "-c", command],
            timeout=timeout,
            cwd=self._workspace_dir,
            max_output_chars=self._max_output_chars,
        )
