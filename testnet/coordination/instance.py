"""Process instances and their lifecycle state machine.

A ``ProcessInstance`` is one realization of a ``ProcessSpec`` replica slot.
It owns its process handle exclusively and is mutated only through
``transition()``, which the orchestrator's controller loop is the sole
caller of.

Lifecycle:
    PENDING -> STARTING -> RUNNING -> HEALTHY <-> UNHEALTHY
                  |           |          |            |
                  +-----------+----------+------------+--> EXITED -> FAILED

Restarts never happen in place: ``successor()`` returns a fresh instance in
PENDING for the same slot, which must pass the dependency gate again.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from testnet.coordination.enums import InstanceState
from testnet.utils.exceptions import GateNotSatisfiedError, InvalidTransitionError

if TYPE_CHECKING:
    from testnet.coordination.dependency_gate import GateTicket
    from testnet.coordination.process_runtime import ProcessHandle
    from testnet.coordination.process_spec import HealthProbeSpec, ProcessSpec


ALLOWED_TRANSITIONS: dict[InstanceState, frozenset[InstanceState]] = {
    InstanceState.PENDING: frozenset({InstanceState.STARTING}),
    InstanceState.STARTING: frozenset({InstanceState.RUNNING, InstanceState.EXITED}),
    InstanceState.RUNNING: frozenset(
        {InstanceState.HEALTHY, InstanceState.UNHEALTHY, InstanceState.EXITED}
    ),
    InstanceState.HEALTHY: frozenset({InstanceState.UNHEALTHY, InstanceState.EXITED}),
    InstanceState.UNHEALTHY: frozenset({InstanceState.HEALTHY, InstanceState.EXITED}),
    InstanceState.EXITED: frozenset({InstanceState.FAILED}),
    InstanceState.FAILED: frozenset(),
}


@dataclass(frozen=True)
class StateTransition:
    """One recorded lifecycle transition."""

    from_state: InstanceState
    to_state: InstanceState
    timestamp: float
    reason: str = ""


@dataclass
class ProcessInstance:
    """One running or exited realization of a replica slot."""

    spec: ProcessSpec
    replica: int = 1
    generation: int = 1
    state: InstanceState = InstanceState.PENDING
    exit_code: int | None = None
    exit_expected: bool = False
    restart_requested: bool = False
    created_at: float = field(default_factory=time.time)
    state_since: float = field(default_factory=time.time)
    handle: ProcessHandle | None = None
    history: list[StateTransition] = field(default_factory=list)

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------

    @property
    def name(self) -> str:
        """Slot name, stable across restarts (``peer-2``)."""
        return self.spec.instance_name(self.replica)

    @property
    def instance_id(self) -> str:
        """Unique per generation (``peer-2#3``)."""
        return f"{self.name}#{self.generation}"

    @property
    def slot(self) -> tuple[str, int]:
        return (self.spec.name, self.replica)

    @property
    def probe(self) -> HealthProbeSpec | None:
        return self.spec.render_probe_target(self.replica)

    @property
    def pid(self) -> int | None:
        return self.handle.pid if self.handle is not None else None

    @property
    def completed_successfully(self) -> bool:
        return self.state == InstanceState.EXITED and self.exit_code == 0

    # -------------------------------------------------------------------------
    # State Machine
    # -------------------------------------------------------------------------

    def can_transition(self, target: InstanceState) -> bool:
        return target in ALLOWED_TRANSITIONS[self.state]

    def transition(
        self,
        target: InstanceState,
        *,
        reason: str = "",
        ticket: GateTicket | None = None,
        exit_code: int | None = None,
    ) -> StateTransition:
        """Move to ``target`` or raise ``InvalidTransitionError``.

        Entering STARTING requires a gate ticket issued for this exact
        instance; there is no other way to start a process.
        """
        if not self.can_transition(target):
            raise InvalidTransitionError(self.instance_id, self.state, target)

        if target == InstanceState.STARTING:
            if ticket is None or ticket.instance_id != self.instance_id:
                raise GateNotSatisfiedError(self.instance_id)

        if target == InstanceState.EXITED:
            self.exit_code = exit_code

        record = StateTransition(
            from_state=self.state,
            to_state=target,
            timestamp=time.time(),
            reason=reason,
        )
        self.history.append(record)
        self.state = target
        self.state_since = record.timestamp
        return record

    def attach_handle(self, handle: ProcessHandle) -> None:
        if self.state != InstanceState.STARTING:
            raise InvalidTransitionError(self.instance_id, self.state, "attach_handle")
        self.handle = handle

    def successor(self) -> ProcessInstance:
        """Fresh PENDING instance for the same slot."""
        return ProcessInstance(
            spec=self.spec,
            replica=self.replica,
            generation=self.generation + 1,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "process": self.spec.name,
            "role": self.spec.role.value,
            "replica": self.replica,
            "generation": self.generation,
            "state": self.state.value,
            "exit_code": self.exit_code,
            "pid": self.pid,
            "state_seconds": round(time.time() - self.state_since, 3),
        }
