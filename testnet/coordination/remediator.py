"""Remediator: restart policy, cooldown and escalation.

Reacts to three events:
- ``INSTANCE_UNHEALTHY``: on an instance's transition into UNHEALTHY,
  and when its policy is ``always`` or ``on_failure``, wait the cooldown and,
  if the instance is still current and still unhealthy, request a restart.
- ``INSTANCE_HEALTHY``: recovery cancels the pending restart, so a later
  relapse waits a fresh cooldown.
- ``INSTANCE_EXITED`` (exits the orchestrator did not ask for): restart per
  policy after the same cooldown. ``never`` leaves the instance exited.

A restart destroys the instance and creates a fresh one in PENDING, which
passes the dependency gate again: remediation never bypasses ordering.

Every replica slot has a restart budget. When a restart would exceed
``max_restarts`` within ``window_seconds`` the slot is escalated to FAILED
instead, reported, and never retried.

The remediator only submits requests; the controller performs them.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from typing import Any

from testnet.coordination.enums import ClusterEventType, InstanceState
from testnet.coordination.events import ClusterEvent, ClusterEventBus
from testnet.coordination.instance import ProcessInstance
from testnet.coordination.mixins.lifecycle_mixin import LifecycleMixin
from testnet.coordination.requests import FailRequest, RequestSink, RestartRequest

logger = logging.getLogger(__name__)

Slot = tuple[str, int]


class RestartBudget:
    """Sliding-window restart counter per replica slot."""

    def __init__(self, max_restarts: int, window_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.max_restarts = max_restarts
        self.window_seconds = window_seconds
        self._clock = clock
        self._restarts: dict[Slot, deque[float]] = {}

    def _prune(self, slot: Slot) -> deque[float]:
        history = self._restarts.setdefault(slot, deque())
        cutoff = self._clock() - self.window_seconds
        while history and history[0] <= cutoff:
            history.popleft()
        return history

    def try_acquire(self, slot: Slot) -> bool:
        """Record a restart if the budget allows one more; False means escalate."""
        history = self._prune(slot)
        if len(history) >= self.max_restarts:
            return False
        history.append(self._clock())
        return True

    def used(self, slot: Slot) -> int:
        return len(self._prune(slot))


class Remediator(LifecycleMixin):
    """Turns unhealthy and exit events into restart or fail requests."""

    def __init__(
        self,
        bus: ClusterEventBus,
        request_sink: RequestSink,
        instance_lookup: Callable[[str], ProcessInstance | None],
        is_current: Callable[[ProcessInstance], bool],
        cooldown_seconds: float = 30.0,
        max_restarts: int = 5,
        window_seconds: float = 300.0,
    ):
        super().__init__(name="Remediator")
        self._bus = bus
        self._submit = request_sink
        self._lookup = instance_lookup
        self._is_current = is_current
        self.cooldown_seconds = cooldown_seconds
        self.budget = RestartBudget(max_restarts, window_seconds)
        self._scheduled: dict[str, asyncio.Task[None]] = {}
        self._subscriptions: list[str] = []

        self._restarts_requested = 0
        self._escalations = 0
        self._recovered_in_cooldown = 0

    async def _on_start(self) -> None:
        self._subscriptions = [
            self._bus.subscribe(ClusterEventType.INSTANCE_UNHEALTHY, self._on_unhealthy),
            self._bus.subscribe(ClusterEventType.INSTANCE_HEALTHY, self._on_healthy),
            self._bus.subscribe(ClusterEventType.INSTANCE_EXITED, self._on_exited),
        ]

    async def _on_stop(self) -> None:
        for sub_id in self._subscriptions:
            self._bus.unsubscribe(sub_id)
        self._subscriptions.clear()
        self._scheduled.clear()

    # -------------------------------------------------------------------------
    # Event Handlers
    # -------------------------------------------------------------------------

    async def _on_unhealthy(self, event: ClusterEvent) -> None:
        instance = self._current(event)
        if instance is None:
            return
        if not instance.spec.restart.restarts_unhealthy:
            logger.warning(
                f"[Remediator] {instance.instance_id} unhealthy, restart policy "
                f"{instance.spec.restart.value}: leaving it running"
            )
            return
        await self._schedule(instance, "unhealthy")

    async def _on_healthy(self, event: ClusterEvent) -> None:
        # A relapse after this gets a full cooldown of its own
        task = self._scheduled.pop(event.instance_id or "", None)
        if task is None:
            return
        task.cancel()
        self._recovered_in_cooldown += 1
        logger.info(f"[Remediator] {event.instance_id} healthy again; restart cancelled")

    async def _on_exited(self, event: ClusterEvent) -> None:
        if event.payload.get("exit_expected"):
            return
        instance = self._current(event)
        if instance is None:
            return
        policy = instance.spec.restart
        if not policy.restarts_exit(instance.exit_code):
            logger.info(
                f"[Remediator] {instance.instance_id} exited with code {instance.exit_code}, "
                f"restart policy {policy.value}: not restarting"
            )
            return
        await self._schedule(instance, f"exited with code {instance.exit_code}")

    def _current(self, event: ClusterEvent) -> ProcessInstance | None:
        if not self.is_running or event.instance_id is None:
            return None
        instance = self._lookup(event.instance_id)
        if instance is None or not self._is_current(instance):
            return None
        return instance

    async def _schedule(self, instance: ProcessInstance, reason: str) -> None:
        instance_id = instance.instance_id
        if instance_id in self._scheduled:
            return
        logger.warning(
            f"[Remediator] {instance_id} {reason}; restart in {self.cooldown_seconds:.1f}s"
        )
        self._scheduled[instance_id] = self._spawn(
            self._after_cooldown(instance_id, reason), name=f"remediate-{instance_id}"
        )
        await self._bus.publish(
            ClusterEvent(
                ClusterEventType.RESTART_SCHEDULED,
                {
                    "instance_id": instance_id,
                    "name": instance.name,
                    "process": instance.spec.name,
                    "reason": reason,
                    "cooldown_seconds": self.cooldown_seconds,
                },
            )
        )

    # -------------------------------------------------------------------------
    # Cooldown and Decision
    # -------------------------------------------------------------------------

    async def _after_cooldown(self, instance_id: str, reason: str) -> None:
        try:
            await asyncio.sleep(self.cooldown_seconds)
            instance = self._lookup(instance_id)
            if instance is None or not self._is_current(instance):
                return
            if not self._still_needs_restart(instance):
                self._recovered_in_cooldown += 1
                logger.info(
                    f"[Remediator] {instance_id} recovered during cooldown "
                    f"(state={instance.state.value}); restart cancelled"
                )
                return
            self._decide(instance, reason)
        finally:
            if self._scheduled.get(instance_id) is asyncio.current_task():
                del self._scheduled[instance_id]

    def _still_needs_restart(self, instance: ProcessInstance) -> bool:
        if instance.state == InstanceState.UNHEALTHY:
            return True
        if instance.state == InstanceState.EXITED:
            return not instance.exit_expected and instance.spec.restart.restarts_exit(instance.exit_code)
        return False

    def _decide(self, instance: ProcessInstance, reason: str) -> None:
        if self.budget.try_acquire(instance.slot):
            self._restarts_requested += 1
            self._submit(RestartRequest(instance.instance_id, reason))
            return

        self._escalations += 1
        logger.error(
            f"[Remediator] {instance.name} exceeded {self.budget.max_restarts} restarts "
            f"within {self.budget.window_seconds:.0f}s; escalating to failed"
        )
        self._submit(
            FailRequest(
                instance.instance_id,
                reason=reason,
                restarts=self.budget.used(instance.slot),
                window_seconds=self.budget.window_seconds,
            )
        )

    def is_scheduled(self, instance_id: str) -> bool:
        return instance_id in self._scheduled

    def get_status(self) -> dict[str, Any]:
        return {
            **self.get_lifecycle_health(),
            "cooldown_seconds": self.cooldown_seconds,
            "max_restarts": self.budget.max_restarts,
            "window_seconds": self.budget.window_seconds,
            "scheduled": sorted(self._scheduled),
            "restarts_requested": self._restarts_requested,
            "escalations": self._escalations,
            "recovered_in_cooldown": self._recovered_in_cooldown,
        }
