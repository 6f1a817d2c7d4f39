"""Canonical enum definitions for the orchestrator.

All enums derive from ``str`` so values parse straight out of the topology
YAML and serialize cleanly into event payloads.

Usage:
    from testnet.coordination.enums import (
        InstanceState,
        ProcessRole,
        RequiredState,
        RestartPolicy,
    )
"""

from __future__ import annotations

from enum import Enum


class ProcessRole(str, Enum):
    """Role a process plays in the test network."""

    BOOT = "boot"          # Bootstrap node, first to accept connections
    PEER = "peer"          # Replica peer joining through the boot node
    SYNC = "sync"          # Sync-only node
    SPAMMER = "spammer"    # Load generator
    CHECKER = "checker"    # One-shot acceptance probe
    SUPPORT = "support"    # Init tasks such as key materialization


class RestartPolicy(str, Enum):
    """When a terminated or unhealthy instance may be replaced."""

    NEVER = "never"
    ON_FAILURE = "on_failure"
    ALWAYS = "always"

    @classmethod
    def parse(cls, value: str | RestartPolicy) -> RestartPolicy:
        """Accept compose spellings such as ``on-failure`` and ``no``."""
        if isinstance(value, RestartPolicy):
            return value
        normalized = str(value).strip().lower().replace("-", "_")
        if normalized in ("no", "false", "none"):
            return cls.NEVER
        if normalized in ("unless_stopped", "true", "yes"):
            return cls.ALWAYS
        return cls(normalized)

    @property
    def restarts_unhealthy(self) -> bool:
        """Whether a sustained-unhealthy instance is remediated."""
        return self in (RestartPolicy.ALWAYS, RestartPolicy.ON_FAILURE)

    def restarts_exit(self, exit_code: int | None) -> bool:
        """Whether an unexpected exit with ``exit_code`` is restarted."""
        if self == RestartPolicy.ALWAYS:
            return True
        if self == RestartPolicy.ON_FAILURE:
            return exit_code != 0
        return False


class RequiredState(str, Enum):
    """State a dependency must reach before a dependent may start."""

    COMPLETED = "completed"
    STARTED = "started"
    HEALTHY = "healthy"

    @classmethod
    def parse(cls, value: str | RequiredState) -> RequiredState:
        """Accept compose spellings such as ``service_completed_successfully``."""
        if isinstance(value, RequiredState):
            return value
        normalized = str(value).strip().lower()
        aliases = {
            "service_completed_successfully": cls.COMPLETED,
            "service_started": cls.STARTED,
            "service_healthy": cls.HEALTHY,
        }
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)

    @property
    def orders_startup(self) -> bool:
        """Edges that must form a DAG (``started`` edges are join hints)."""
        return self in (RequiredState.COMPLETED, RequiredState.HEALTHY)


class InstanceState(str, Enum):
    """Lifecycle states of a process instance."""

    PENDING = "pending"        # Waiting on the dependency gate
    STARTING = "starting"      # Gate passed, spawn in progress
    RUNNING = "running"        # Spawned, no probe outcome yet
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    EXITED = "exited"          # Process terminated, exit code recorded
    FAILED = "failed"          # Restart budget exhausted, terminal

    @property
    def is_alive(self) -> bool:
        """Process is spawned and has not exited."""
        return self in (InstanceState.RUNNING, InstanceState.HEALTHY, InstanceState.UNHEALTHY)

    @property
    def is_terminal(self) -> bool:
        return self in (InstanceState.EXITED, InstanceState.FAILED)


class HealthClassification(str, Enum):
    """Health monitor's view of an instance."""

    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class ClusterEventType(str, Enum):
    """Events published on the cluster event bus."""

    INSTANCE_STATE_CHANGED = "instance_state_changed"
    INSTANCE_STARTING = "instance_starting"
    INSTANCE_RUNNING = "instance_running"
    INSTANCE_HEALTHY = "instance_healthy"
    INSTANCE_UNHEALTHY = "instance_unhealthy"
    INSTANCE_EXITED = "instance_exited"
    INSTANCE_FAILED = "instance_failed"
    INSTANCE_STUCK = "instance_stuck"
    RESTART_SCHEDULED = "restart_scheduled"
    INSTANCE_REPLACED = "instance_replaced"
    MATERIALIZATION_FAILED = "materialization_failed"
    LIVENESS_CHECK_PASSED = "liveness_check_passed"
    LIVENESS_CHECK_FAILED = "liveness_check_failed"
    CLUSTER_STARTED = "cluster_started"
    CLUSTER_STOPPED = "cluster_stopped"


# Events published for each target state, besides INSTANCE_STATE_CHANGED
STATE_EVENTS: dict[InstanceState, ClusterEventType] = {
    InstanceState.STARTING: ClusterEventType.INSTANCE_STARTING,
    InstanceState.RUNNING: ClusterEventType.INSTANCE_RUNNING,
    InstanceState.HEALTHY: ClusterEventType.INSTANCE_HEALTHY,
    InstanceState.UNHEALTHY: ClusterEventType.INSTANCE_UNHEALTHY,
    InstanceState.EXITED: ClusterEventType.INSTANCE_EXITED,
    InstanceState.FAILED: ClusterEventType.INSTANCE_FAILED,
}
