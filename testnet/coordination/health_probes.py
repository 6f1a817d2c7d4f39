"""Health probes: a single yes/no liveness question asked of one instance.

Two kinds are supported:
- ``CommandProbe``: run a command (e.g. ``topos tce status --node ...``);
  exit code 0 means healthy.
- ``HttpStatusProbe``: GET a status endpoint returning a JSON object whose
  ``healthy`` field is the predicate.

Probes report outcomes, they never raise for an unhealthy target. Timeouts
are enforced by the caller (the health monitor) around ``check()`` as well as
inside the probe, so a hung probe always resolves as a failure.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import aiohttp

from testnet.coordination.async_process_pool import (
    AsyncProcessPool,
    ProcessExecutionError,
    ProcessTimeoutError,
)
from testnet.coordination.instance import ProcessInstance
from testnet.coordination.process_spec import HealthProbeSpec
from testnet.utils.exceptions import NETWORK_ERRORS, PARSE_ERRORS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeOutcome:
    """Result of one probe execution."""

    healthy: bool
    timestamp: float
    duration_seconds: float = 0.0
    detail: str = ""
    timed_out: bool = False

    @classmethod
    def success(cls, duration: float = 0.0, detail: str = "") -> ProbeOutcome:
        return cls(True, time.time(), duration, detail)

    @classmethod
    def failure(cls, detail: str, duration: float = 0.0, timed_out: bool = False) -> ProbeOutcome:
        return cls(False, time.time(), duration, detail, timed_out)


class HealthProbe(Protocol):
    async def check(self) -> ProbeOutcome: ...


ProbeFactory = Callable[[HealthProbeSpec, ProcessInstance], HealthProbe]


class CommandProbe:
    """Exit code 0 from ``command`` means healthy."""

    def __init__(
        self,
        command: list[str],
        timeout: float,
        pool: AsyncProcessPool,
        env: dict[str, str] | None = None,
    ):
        self.command = command
        self.timeout = timeout
        self._pool = pool
        self._env = env

    async def check(self) -> ProbeOutcome:
        start = time.monotonic()
        try:
            result = await self._pool.execute(
                self.command, timeout_seconds=self.timeout, env=self._env, check=True
            )
        except ProcessTimeoutError:
            return ProbeOutcome.failure(
                f"timed out after {self.timeout}s", time.monotonic() - start, timed_out=True
            )
        except ProcessExecutionError as e:
            detail = (e.stderr or e.stdout).strip().splitlines()
            return ProbeOutcome.failure(
                f"exit code {e.exit_code}" + (f": {detail[-1]}" if detail else ""),
                time.monotonic() - start,
            )
        return ProbeOutcome.success(result.duration_seconds)


class HttpStatusProbe:
    """Status endpoint returning ``{"healthy": bool, ...}``."""

    def __init__(self, url: str, timeout: float, session: aiohttp.ClientSession | None = None):
        self.url = url
        self.timeout = timeout
        self._session = session

    async def check(self) -> ProbeOutcome:
        start = time.monotonic()
        client_timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            if self._session is not None:
                payload = await self._fetch(self._session, client_timeout)
            else:
                async with aiohttp.ClientSession() as session:
                    payload = await self._fetch(session, client_timeout)
        except asyncio.TimeoutError:
            return ProbeOutcome.failure(
                f"timed out after {self.timeout}s", time.monotonic() - start, timed_out=True
            )
        except (aiohttp.ClientError, *NETWORK_ERRORS) as e:
            return ProbeOutcome.failure(f"request failed: {e}", time.monotonic() - start)
        except PARSE_ERRORS as e:
            return ProbeOutcome.failure(f"malformed status: {e}", time.monotonic() - start)

        duration = time.monotonic() - start
        if isinstance(payload, str):
            return ProbeOutcome.failure(payload, duration)
        if payload.get("healthy") is True:
            return ProbeOutcome.success(duration)
        return ProbeOutcome.failure(f"status reports unhealthy: {payload}", duration)

    async def _fetch(self, session: aiohttp.ClientSession, timeout: aiohttp.ClientTimeout) -> dict[str, Any] | str:
        async with session.get(self.url, timeout=timeout) as resp:
            if resp.status != 200:
                return f"HTTP {resp.status}"
            payload = await resp.json(content_type=None)
            if not isinstance(payload, dict) or "healthy" not in payload:
                return "status object has no 'healthy' field"
            return payload


def build_probe(
    probe: HealthProbeSpec, instance: ProcessInstance, pool: AsyncProcessPool | None = None
) -> HealthProbe:
    """Probe for ``instance``; ``probe`` should already carry rendered placeholders."""
    if probe.command is not None:
        return CommandProbe(
            list(probe.command),
            probe.timeout,
            pool or AsyncProcessPool(),
            env=instance.spec.build_environment(instance.replica),
        )
    assert probe.http_url is not None
    return HttpStatusProbe(probe.http_url, probe.timeout)


class DefaultProbeFactory:
    """Builds probes for the health monitor, sharing one process pool."""

    def __init__(self, pool: AsyncProcessPool | None = None):
        self.pool = pool or AsyncProcessPool()

    def __call__(self, probe: HealthProbeSpec, instance: ProcessInstance) -> HealthProbe:
        return build_probe(probe, instance, self.pool)
