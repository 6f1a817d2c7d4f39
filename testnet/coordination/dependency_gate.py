"""Dependency gate: decides when a pending instance may start.

The gate is evaluated by the controller on every state-change event, never
on a polling timer. It reads the *current* instance of every replica slot of
each dependency, so a restarted instance whose dependency has since gone
away stays pending.

Satisfaction per required state:
- ``started``: the dependency instance is alive (running, healthy or unhealthy)
- ``healthy``: the dependency instance is classified healthy
- ``completed``: the dependency instance exited 0 and, if it declares a
  completion marker, the marker file exists on the shared filesystem

Against a multi-replica dependency one satisfying replica suffices unless the
edge declares ``all_replicas`` or a ``quorum``.

Usage:
    gate = DependencyGate(graph)
    if gate.is_ready(instance.spec, view):
        ticket = gate.open(instance, view)
        instance.transition(InstanceState.STARTING, ticket=ticket)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from testnet.coordination.dependency_graph import DependencyGraph
from testnet.coordination.enums import InstanceState, RequiredState
from testnet.coordination.instance import ProcessInstance
from testnet.coordination.process_spec import DependencySpec, ProcessSpec
from testnet.utils.exceptions import GateNotSatisfiedError

logger = logging.getLogger(__name__)


class ClusterView(Protocol):
    """Read access to the current instance of every slot of a process."""

    def current_instances(self, name: str) -> Iterable[ProcessInstance]: ...


@dataclass(frozen=True)
class GateTicket:
    """Proof that the gate was open for one instance at one moment."""

    instance_id: str
    issued_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class DependencyStatus:
    """Evaluation of a single dependency edge."""

    dependency: DependencySpec
    satisfied_count: int
    required_count: int

    @property
    def satisfied(self) -> bool:
        return self.satisfied_count >= self.required_count

    def describe(self) -> str:
        return (
            f"{self.dependency.name}:{self.dependency.required_state.value} "
            f"({self.satisfied_count}/{self.required_count})"
        )


class DependencyGate:
    """Evaluates readiness of a spec against the current cluster state."""

    def __init__(
        self,
        graph: DependencyGraph,
        marker_exists: Callable[[Path], bool] | None = None,
    ):
        self._graph = graph
        self._marker_exists = marker_exists or (lambda path: path.exists())

    def evaluate(self, spec: ProcessSpec, view: ClusterView) -> list[DependencyStatus]:
        statuses = []
        for dep in spec.depends_on:
            dep_spec = self._graph.spec(dep.name)
            satisfied = sum(
                1
                for instance in view.current_instances(dep.name)
                if self._satisfies(instance, dep.required_state)
            )
            statuses.append(
                DependencyStatus(
                    dependency=dep,
                    satisfied_count=satisfied,
                    required_count=dep.required_count(dep_spec.replicas),
                )
            )
        return statuses

    def is_ready(self, spec: ProcessSpec, view: ClusterView) -> bool:
        """``all(dep satisfied for dep in spec.depends_on)``."""
        return all(status.satisfied for status in self.evaluate(spec, view))

    def blocking(self, spec: ProcessSpec, view: ClusterView) -> list[str]:
        """Descriptions of the unsatisfied edges, for stuck reports."""
        return [s.describe() for s in self.evaluate(spec, view) if not s.satisfied]

    def open(self, instance: ProcessInstance, view: ClusterView) -> GateTicket:
        """Issue a start ticket or raise ``GateNotSatisfiedError``."""
        if instance.state != InstanceState.PENDING:
            raise GateNotSatisfiedError(instance.instance_id, [f"state={instance.state.value}"])
        blocking = self.blocking(instance.spec, view)
        if blocking:
            raise GateNotSatisfiedError(instance.instance_id, blocking)
        logger.debug(f"[DependencyGate] Open for {instance.instance_id}")
        return GateTicket(instance_id=instance.instance_id)

    def _satisfies(self, instance: ProcessInstance, required: RequiredState) -> bool:
        if required == RequiredState.STARTED:
            return instance.state.is_alive
        if required == RequiredState.HEALTHY:
            return instance.state == InstanceState.HEALTHY
        if not instance.completed_successfully:
            return False
        marker = instance.spec.effective_completion_marker
        return marker is None or self._marker_exists(marker)
