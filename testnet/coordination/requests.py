"""Control messages consumed by the orchestrator's controller loop.

Probes and the remediator never mutate instance state. They submit one of
these requests; the controller applies them one at a time, in arrival order,
which gives every instance a totally ordered transition history.

Requests naming an instance that is no longer current (it was replaced, or
its transition is no longer legal) are dropped by the controller.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

from testnet.coordination.enums import InstanceState

if TYPE_CHECKING:
    from testnet.coordination.process_runtime import ProcessHandle


@dataclass(frozen=True)
class TransitionRequest:
    """Ask for a lifecycle transition (health classification changes)."""

    instance_id: str
    target: InstanceState
    reason: str = ""


@dataclass(frozen=True)
class RestartRequest:
    """Destroy the instance and schedule a fresh one through the gate."""

    instance_id: str
    reason: str = ""


@dataclass(frozen=True)
class FailRequest:
    """Stop the instance and mark its slot terminally failed."""

    instance_id: str
    reason: str = ""
    restarts: int = 0
    window_seconds: float = 0.0


@dataclass(frozen=True)
class Spawned:
    """Launch finished; the controller attaches the handle."""

    instance_id: str
    handle: ProcessHandle


@dataclass(frozen=True)
class SpawnFailed:
    instance_id: str
    error: str


@dataclass(frozen=True)
class ProcessExited:
    instance_id: str
    exit_code: int | None


@dataclass(frozen=True)
class EvaluateGates:
    """Re-run the dependency gate for every pending instance."""


ControlMessage = Union[
    TransitionRequest,
    RestartRequest,
    FailRequest,
    Spawned,
    SpawnFailed,
    ProcessExited,
    EvaluateGates,
]

RequestSink = Callable[[ControlMessage], None]
