"""Error taxonomy and exception tuples for the orchestrator.

The orchestrator distinguishes between conditions that are fatal at load
time, conditions that are absorbed locally (a single probe failure, a single
crash under a permissive restart policy) and conditions that cross a
threshold and are surfaced as named cluster-health events.

Usage:
    from testnet.utils.exceptions import ConfigError, PROCESS_ERRORS

    try:
        handle = await runtime.launch(instance)
    except PROCESS_ERRORS as e:
        logger.warning(f"Spawn failed: {e}")
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import yaml

__all__ = [
    "OrchestratorError",
    "ConfigError",
    "MaterializationError",
    "ProbeError",
    "ProcessExitError",
    "InstanceFailedError",
    "LivenessCheckFailure",
    "InvalidTransitionError",
    "GateNotSatisfiedError",
    "NETWORK_ERRORS",
    "PARSE_ERRORS",
    "FS_ERRORS",
    "PROCESS_ERRORS",
]


# =============================================================================
# Exception Hierarchy
# =============================================================================


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""


class ConfigError(OrchestratorError):
    """Invalid topology: cycle, unknown dependency, bad field.

    Raised at load time. No instance is ever started from a topology that
    raised this.
    """

    def __init__(self, message: str, *, process: str | None = None):
        self.process = process
        prefix = f"[{process}] " if process else ""
        super().__init__(f"{prefix}{message}")


class MaterializationError(OrchestratorError):
    """Shared key material could not be materialized.

    Fatal for the whole cluster: every instance gated on the materializer
    stays pending.
    """

    def __init__(self, message: str, *, source: str | None = None):
        self.source = source
        super().__init__(message)


class ProbeError(OrchestratorError):
    """A single health probe failed or timed out."""

    def __init__(self, instance_id: str, reason: str, *, timed_out: bool = False):
        self.instance_id = instance_id
        self.reason = reason
        self.timed_out = timed_out
        super().__init__(f"Probe failed for {instance_id}: {reason}")


class ProcessExitError(OrchestratorError):
    """A managed process terminated without being asked to."""

    def __init__(self, instance_id: str, exit_code: int | None):
        self.instance_id = instance_id
        self.exit_code = exit_code
        super().__init__(f"{instance_id} exited unexpectedly (exit_code={exit_code})")


class InstanceFailedError(OrchestratorError):
    """An instance slot exceeded its restart budget and will not be retried."""

    def __init__(self, instance_id: str, restarts: int, window_seconds: float):
        self.instance_id = instance_id
        self.restarts = restarts
        self.window_seconds = window_seconds
        super().__init__(
            f"{instance_id} failed permanently after {restarts} restarts "
            f"within {window_seconds:.0f}s"
        )


class LivenessCheckFailure(OrchestratorError):
    """The cluster-wide liveness property did not hold."""

    def __init__(self, message: str, report: Any = None):
        self.report = report
        super().__init__(message)


class InvalidTransitionError(OrchestratorError):
    """Illegal lifecycle transition requested for an instance."""

    def __init__(self, instance_id: str, current: Any, target: Any):
        self.instance_id = instance_id
        self.current = current
        self.target = target
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        super().__init__(
            f"{instance_id}: illegal transition {current_value} -> {target_value}"
        )


class GateNotSatisfiedError(OrchestratorError):
    """Start attempted before the dependency gate was satisfied."""

    def __init__(self, instance_id: str, blocking: list[str] | None = None):
        self.instance_id = instance_id
        self.blocking = blocking or []
        detail = f" (waiting on: {', '.join(self.blocking)})" if self.blocking else ""
        super().__init__(f"Dependency gate closed for {instance_id}{detail}")


# =============================================================================
# Exception Type Tuples
# =============================================================================

# HTTP status probes, artifact submission and polling
NETWORK_ERRORS: tuple[type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    OSError,
    asyncio.TimeoutError,
)

# Topology files, target lists, status payloads
PARSE_ERRORS: tuple[type[BaseException], ...] = (
    json.JSONDecodeError,
    yaml.YAMLError,
    KeyError,
    TypeError,
    ValueError,
)

# Key bundle copies and marker files
FS_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    PermissionError,
    FileNotFoundError,
)

# Spawning and signalling managed processes
PROCESS_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    PermissionError,
    FileNotFoundError,
    ProcessLookupError,
)
