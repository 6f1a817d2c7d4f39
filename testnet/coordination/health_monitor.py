"""Health monitor: debounced liveness classification of every probed instance.

For each instance whose spec declares a health probe the monitor runs an
independent probe loop, started when the instance reaches RUNNING and
cancelled when it exits. Loops for different instances run concurrently;
within one instance a probe always completes (or times out) before the next
tick, so probes never overlap for the same instance.

Classification rules:
- HEALTHY on the first success after the start delay
- UNHEALTHY only once ``retries`` consecutive probes have failed (a timeout
  counts as a failure); a single transient failure changes nothing
- back to HEALTHY on the next success

Classification changes are submitted to the controller as transition
requests. ``HealthRecord`` objects are owned here; everyone else reads
snapshots.

Usage:
    monitor = HealthMonitor(bus, orchestrator.submit, orchestrator.get_instance)
    await monitor.start()
    monitor.get_record("peer-2#1").classification
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from testnet.coordination.enums import ClusterEventType, HealthClassification, InstanceState
from testnet.coordination.events import ClusterEvent, ClusterEventBus
from testnet.coordination.health_probes import (
    DefaultProbeFactory,
    HealthProbe,
    ProbeFactory,
    ProbeOutcome,
)
from testnet.coordination.instance import ProcessInstance
from testnet.coordination.mixins.lifecycle_mixin import LifecycleMixin
from testnet.coordination.process_spec import HealthProbeSpec
from testnet.coordination.requests import RequestSink, TransitionRequest
from testnet.utils.exceptions import ProbeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthRecordSnapshot:
    instance_id: str
    classification: HealthClassification
    consecutive_failures: int
    total_probes: int
    last_transition_at: float | None
    outcomes: tuple[ProbeOutcome, ...]
    last_error: str | None


@dataclass
class HealthRecord:
    """Rolling probe history and current classification of one instance."""

    instance_id: str
    retries: int
    history_size: int = 20
    classification: HealthClassification = HealthClassification.UNKNOWN
    consecutive_failures: int = 0
    total_probes: int = 0
    last_transition_at: float | None = None
    last_error: ProbeError | None = None
    outcomes: deque[ProbeOutcome] = field(init=False)

    def __post_init__(self) -> None:
        self.outcomes = deque(maxlen=self.history_size)

    def record(self, outcome: ProbeOutcome) -> HealthClassification | None:
        """Fold one outcome in; returns the new classification if it changed."""
        self.outcomes.append(outcome)
        self.total_probes += 1

        if outcome.healthy:
            self.consecutive_failures = 0
            self.last_error = None
            return self._classify(HealthClassification.HEALTHY)

        self.consecutive_failures += 1
        self.last_error = ProbeError(self.instance_id, outcome.detail, timed_out=outcome.timed_out)
        if self.consecutive_failures >= self.retries:
            return self._classify(HealthClassification.UNHEALTHY)
        return None

    def _classify(self, value: HealthClassification) -> HealthClassification | None:
        if value == self.classification:
            return None
        self.classification = value
        self.last_transition_at = time.time()
        return value

    def snapshot(self) -> HealthRecordSnapshot:
        return HealthRecordSnapshot(
            instance_id=self.instance_id,
            classification=self.classification,
            consecutive_failures=self.consecutive_failures,
            total_probes=self.total_probes,
            last_transition_at=self.last_transition_at,
            outcomes=tuple(self.outcomes),
            last_error=str(self.last_error) if self.last_error else None,
        )


_TARGET_STATE = {
    HealthClassification.HEALTHY: InstanceState.HEALTHY,
    HealthClassification.UNHEALTHY: InstanceState.UNHEALTHY,
}


class HealthMonitor(LifecycleMixin):
    """Runs one probe loop per probed instance."""

    def __init__(
        self,
        bus: ClusterEventBus,
        request_sink: RequestSink,
        instance_lookup: Callable[[str], ProcessInstance | None],
        probe_factory: ProbeFactory | None = None,
        history_size: int = 20,
    ):
        super().__init__(name="HealthMonitor")
        self._bus = bus
        self._submit = request_sink
        self._lookup = instance_lookup
        self._probe_factory = probe_factory or DefaultProbeFactory()
        self._history_size = history_size
        self._records: dict[str, HealthRecord] = {}
        self._loops: dict[str, asyncio.Task[None]] = {}
        self._subscriptions: list[str] = []

    async def _on_start(self) -> None:
        self._subscriptions = [
            self._bus.subscribe(ClusterEventType.INSTANCE_RUNNING, self._on_instance_running),
            self._bus.subscribe(ClusterEventType.INSTANCE_EXITED, self._on_instance_exited),
        ]

    async def _on_stop(self) -> None:
        for sub_id in self._subscriptions:
            self._bus.unsubscribe(sub_id)
        self._subscriptions.clear()
        self._loops.clear()

    # -------------------------------------------------------------------------
    # Event Handlers
    # -------------------------------------------------------------------------

    def _on_instance_running(self, event: ClusterEvent) -> None:
        instance_id = event.instance_id
        if not self.is_running or instance_id is None or instance_id in self._loops:
            return
        instance = self._lookup(instance_id)
        if instance is None:
            return
        probe_spec = instance.probe
        if probe_spec is None:
            return

        self._records[instance_id] = HealthRecord(
            instance_id=instance_id,
            retries=probe_spec.retries,
            history_size=self._history_size,
        )
        probe = self._probe_factory(probe_spec, instance)
        self._loops[instance_id] = self._spawn(
            self._probe_loop(instance_id, probe, probe_spec), name=f"probe-{instance_id}"
        )

    def _on_instance_exited(self, event: ClusterEvent) -> None:
        instance_id = event.instance_id
        if instance_id is None:
            return
        task = self._loops.pop(instance_id, None)
        if task is not None:
            task.cancel()

    # -------------------------------------------------------------------------
    # Probe Loop
    # -------------------------------------------------------------------------

    async def _probe_loop(self, instance_id: str, probe: HealthProbe, spec: HealthProbeSpec) -> None:
        try:
            if spec.start_delay > 0:
                await asyncio.sleep(spec.start_delay)

            loop = asyncio.get_running_loop()
            next_tick = loop.time()
            while True:
                outcome = await self._run_probe(instance_id, probe, spec.timeout)
                record = self._records[instance_id]
                changed = record.record(outcome)
                if not outcome.healthy:
                    logger.debug(
                        f"[HealthMonitor] {instance_id} probe failed "
                        f"({record.consecutive_failures}/{spec.retries}): {outcome.detail}"
                    )
                if changed is not None:
                    self._report(instance_id, changed, record)

                next_tick += spec.interval
                await asyncio.sleep(max(0.0, next_tick - loop.time()))
                next_tick = max(next_tick, loop.time())
        finally:
            if self._loops.get(instance_id) is asyncio.current_task():
                del self._loops[instance_id]

    async def _run_probe(self, instance_id: str, probe: HealthProbe, timeout: float) -> ProbeOutcome:
        start = time.monotonic()
        try:
            return await asyncio.wait_for(probe.check(), timeout=timeout)
        except asyncio.TimeoutError:
            return ProbeOutcome.failure(
                f"timed out after {timeout}s", time.monotonic() - start, timed_out=True
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"[HealthMonitor] Probe for {instance_id} raised: {e}")
            return ProbeOutcome.failure(f"probe error: {e}", time.monotonic() - start)

    def _report(self, instance_id: str, classification: HealthClassification, record: HealthRecord) -> None:
        if classification == HealthClassification.UNHEALTHY:
            logger.warning(
                f"[HealthMonitor] {instance_id} unhealthy after "
                f"{record.consecutive_failures} consecutive failures: {record.last_error}"
            )
            reason = f"{record.consecutive_failures} consecutive probe failures"
        else:
            logger.info(f"[HealthMonitor] {instance_id} healthy")
            reason = "probe succeeded"
        self._submit(TransitionRequest(instance_id, _TARGET_STATE[classification], reason))

    # -------------------------------------------------------------------------
    # Read Access
    # -------------------------------------------------------------------------

    def get_record(self, instance_id: str) -> HealthRecordSnapshot | None:
        record = self._records.get(instance_id)
        return record.snapshot() if record is not None else None

    def is_probing(self, instance_id: str) -> bool:
        return instance_id in self._loops

    def get_status(self) -> dict[str, Any]:
        counts: dict[str, int] = {c.value: 0 for c in HealthClassification}
        for instance_id in self._loops:
            counts[self._records[instance_id].classification.value] += 1
        return {
            **self.get_lifecycle_health(),
            "active_probes": len(self._loops),
            "classifications": counts,
        }
