"""Bounded, non-blocking execution of short-lived commands.

Command health probes run through this pool so that a burst of probes across
many replicas never spawns more than ``max_concurrent`` subprocesses at once
and never blocks the event loop.

Usage:
    from testnet.coordination.async_process_pool import AsyncProcessPool

    pool = AsyncProcessPool(PoolConfig(max_concurrent=8))
    result = await pool.execute(
        ["topos", "tce", "status", "--node", "http://localhost:1340"],
        timeout_seconds=5.0,
    )
    if not result.success:
        ...
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any

from testnet.utils.exceptions import PROCESS_ERRORS

logger = logging.getLogger(__name__)

__all__ = [
    "AsyncProcessPool",
    "PoolConfig",
    "ProcessExecutionError",
    "ProcessResult",
    "ProcessTimeoutError",
    "terminate_process",
]

_OUTPUT_LIMIT = 4096


# =============================================================================
# Exceptions
# =============================================================================


class ProcessTimeoutError(Exception):
    """Raised by ``execute(check=True)`` when a command exceeds its timeout."""

    def __init__(self, command: list[str], timeout_seconds: float):
        self.command = command
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Process timed out after {timeout_seconds}s: {_short(command)}")


class ProcessExecutionError(Exception):
    """Raised by ``execute(check=True)`` when a command exits nonzero or cannot spawn."""

    def __init__(self, command: list[str], exit_code: int, stdout: str = "", stderr: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        message = f"Process failed with exit code {exit_code}: {_short(command)}"
        if stderr:
            message += f"\nstderr: {stderr[:500]}"
        super().__init__(message)


@dataclass
class ProcessResult:
    """Outcome of one command execution."""

    exit_code: int
    duration_seconds: float
    stdout: str = ""
    stderr: str = ""
    command: list[str] = field(default_factory=list)
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


@dataclass
class PoolConfig:
    """Limits for the pool.

    Attributes:
        max_concurrent: Maximum concurrently running commands
        kill_timeout: Grace period between SIGTERM and SIGKILL
        encoding: Output decoding
    """

    max_concurrent: int = 16
    kill_timeout: float = 2.0
    encoding: str = "utf-8"


def _short(command: list[str]) -> str:
    text = " ".join(command[:4])
    return text + " ..." if len(command) > 4 else text


async def terminate_process(
    proc: asyncio.subprocess.Process,
    kill_timeout: float,
    label: str = "",
) -> int | None:
    """SIGTERM, wait ``kill_timeout``, then SIGKILL. Returns the exit code."""
    if proc.returncode is not None:
        return proc.returncode
    try:
        proc.terminate()
        try:
            return await asyncio.wait_for(proc.wait(), timeout=kill_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[ProcessTermination] {label or proc.pid} ignored SIGTERM, sending SIGKILL")
        proc.kill()
        return await proc.wait()
    except ProcessLookupError:
        return proc.returncode


class AsyncProcessPool:
    """Semaphore-limited command runner with per-call timeouts."""

    def __init__(self, config: PoolConfig | None = None):
        self.config = config or PoolConfig()
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent)
        self._active: set[asyncio.subprocess.Process] = set()
        self._executed = 0
        self._failed = 0
        self._timed_out = 0

    async def execute(
        self,
        command: list[str],
        timeout_seconds: float,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        check: bool = False,
    ) -> ProcessResult:
        """Run ``command`` to completion or until ``timeout_seconds`` elapses.

        Spawn errors (missing binary, permission) count as exit code 127.

        Raises:
            ProcessTimeoutError: if ``check`` and the command timed out
            ProcessExecutionError: if ``check`` and the exit code is nonzero
        """
        process_env = os.environ.copy()
        if env:
            process_env.update(env)

        async with self._semaphore:
            start = time.monotonic()
            try:
                proc = await asyncio.create_subprocess_exec(
                    *command,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    env=process_env,
                )
            except PROCESS_ERRORS as e:
                self._executed += 1
                self._failed += 1
                if check:
                    raise ProcessExecutionError(command, 127, stderr=str(e)) from e
                return ProcessResult(
                    exit_code=127,
                    duration_seconds=time.monotonic() - start,
                    stderr=str(e),
                    command=command,
                )

            self._active.add(proc)
            timed_out = False
            try:
                try:
                    stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_seconds)
                except asyncio.TimeoutError:
                    timed_out = True
                    await terminate_process(proc, self.config.kill_timeout, _short(command))
                    stdout, stderr = b"", b""
                except asyncio.CancelledError:
                    await terminate_process(proc, self.config.kill_timeout, _short(command))
                    raise
            finally:
                self._active.discard(proc)

        result = ProcessResult(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            duration_seconds=time.monotonic() - start,
            stdout=stdout.decode(self.config.encoding, errors="replace")[:_OUTPUT_LIMIT],
            stderr=stderr.decode(self.config.encoding, errors="replace")[:_OUTPUT_LIMIT],
            command=command,
            timed_out=timed_out,
        )
        self._executed += 1
        if timed_out:
            self._timed_out += 1
        elif not result.success:
            self._failed += 1

        if check and not result.success:
            if timed_out:
                raise ProcessTimeoutError(command, timeout_seconds)
            raise ProcessExecutionError(command, result.exit_code, result.stdout, result.stderr)
        return result

    async def cancel_all(self) -> int:
        """Terminate every command still running. Returns how many."""
        procs = list(self._active)
        for proc in procs:
            await terminate_process(proc, self.config.kill_timeout)
        self._active.clear()
        return len(procs)

    def get_stats(self) -> dict[str, Any]:
        return {
            "max_concurrent": self.config.max_concurrent,
            "active": len(self._active),
            "executed": self._executed,
            "failed": self._failed,
            "timed_out": self._timed_out,
        }
