"""Cluster orchestrator: bootstrap, supervise and tear down a testnet.

One controller task owns every ``ProcessInstance``. Everything else (exit
watchers, launch tasks, the health monitor, the remediator) talks to it by
submitting control messages onto a single queue, so each instance sees a
totally ordered sequence of transitions and there is no shared mutable
state outside the controller.

Start path:
    PENDING --gate ticket--> STARTING --launch--> RUNNING --probe--> HEALTHY

Restart path (remediation):
    UNHEALTHY/EXITED --terminate--> EXITED --successor()--> PENDING --gate--> ...

After every message the dependency gate is re-evaluated for all pending
instances; nothing polls for readiness.

Usage:
    from testnet.config.topology import load_topology
    from testnet.coordination.orchestrator import ClusterOrchestrator

    topology = load_topology("testnet.yaml", profiles=["CI"])
    async with ClusterOrchestrator(topology) as cluster:
        await cluster.wait_for_state("peer", InstanceState.HEALTHY)
        exit_code = await cluster.wait_for_exit("check")
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from testnet.config.topology import Topology
from testnet.coordination.async_process_pool import AsyncProcessPool, PoolConfig
from testnet.coordination.base_config import OrchestratorConfig
from testnet.coordination.dependency_gate import DependencyGate, GateTicket
from testnet.coordination.dependency_graph import DependencyGraph
from testnet.coordination.enums import STATE_EVENTS, ClusterEventType, InstanceState
from testnet.coordination.events import ClusterEvent, ClusterEventBus
from testnet.coordination.health_monitor import HealthMonitor
from testnet.coordination.health_probes import DefaultProbeFactory, ProbeFactory
from testnet.coordination.instance import ProcessInstance
from testnet.coordination.mixins.lifecycle_mixin import LifecycleMixin
from testnet.coordination.process_runtime import LocalProcessRuntime, ProcessHandle, ProcessRuntime
from testnet.coordination.process_spec import ProcessSpec
from testnet.coordination.remediator import Remediator
from testnet.coordination.requests import (
    ControlMessage,
    EvaluateGates,
    FailRequest,
    ProcessExited,
    RestartRequest,
    Spawned,
    SpawnFailed,
    TransitionRequest,
)
from testnet.utils.exceptions import (
    PROCESS_ERRORS,
    InstanceFailedError,
    MaterializationError,
    ProcessExitError,
)

logger = logging.getLogger(__name__)

# Exit code recorded when a launch fails before a process exists
SPAWN_FAILED_EXIT_CODE = -1


class PendingWatchdog(LifecycleMixin):
    """Reports instances stuck in PENDING longer than ``pending_timeout``.

    Each stuck instance is reported once, with the dependency edges it is
    still waiting on.
    """

    def __init__(self, orchestrator: ClusterOrchestrator, pending_timeout: float, interval: float):
        super().__init__(name="PendingWatchdog", cycle_interval=interval)
        self._orchestrator = orchestrator
        self.pending_timeout = pending_timeout
        self._reported: set[str] = set()

    async def _on_cycle(self) -> None:
        now = time.time()
        cluster = self._orchestrator
        for instance in cluster.instances():
            if instance.state != InstanceState.PENDING or instance.instance_id in self._reported:
                continue
            waited = now - instance.state_since
            if waited < self.pending_timeout:
                continue
            self._reported.add(instance.instance_id)
            blocking = cluster.gate.blocking(instance.spec, cluster)
            logger.warning(
                f"[PendingWatchdog] {instance.instance_id} pending for {waited:.0f}s, "
                f"waiting on: {', '.join(blocking) or 'nothing (gate open)'}"
            )
            await cluster.bus.publish(
                ClusterEvent(
                    ClusterEventType.INSTANCE_STUCK,
                    {
                        "instance_id": instance.instance_id,
                        "name": instance.name,
                        "process": instance.spec.name,
                        "pending_seconds": round(waited, 3),
                        "blocking": blocking,
                    },
                )
            )

    def reported(self) -> set[str]:
        return set(self._reported)


class ClusterOrchestrator:
    """Single-controller orchestrator for one cluster run."""

    def __init__(
        self,
        topology: Topology | Iterable[ProcessSpec],
        runtime: ProcessRuntime | None = None,
        config: OrchestratorConfig | None = None,
        probe_factory: ProbeFactory | None = None,
        bus: ClusterEventBus | None = None,
        marker_exists: Callable[[Path], bool] | None = None,
    ):
        if isinstance(topology, Topology):
            self.graph = topology.graph
            self.config = config or topology.build_config()
        else:
            # Validates names, dependencies and cycles before any instance exists
            self.graph = DependencyGraph(topology)
            self.config = config or OrchestratorConfig.from_env()

        self.runtime: ProcessRuntime = runtime or LocalProcessRuntime(
            log_dir=Path(self.config.log_dir) if self.config.log_dir else None
        )
        self.bus = bus or ClusterEventBus()
        self.gate = DependencyGate(self.graph, marker_exists)

        # Current instance per (process, replica) slot, in startup order
        self._slots: dict[tuple[str, int], ProcessInstance] = {}
        self._slots_by_process: dict[str, list[tuple[str, int]]] = {}
        # Every instance ever created, current or replaced
        self._by_id: dict[str, ProcessInstance] = {}
        for name in self.graph.startup_order():
            spec = self.graph.spec(name)
            for replica in range(1, spec.replicas + 1):
                instance = ProcessInstance(spec=spec, replica=replica)
                self._slots[instance.slot] = instance
                self._slots_by_process.setdefault(name, []).append(instance.slot)
                self._by_id[instance.instance_id] = instance

        self._queue: asyncio.Queue[ControlMessage] = asyncio.Queue()
        self._changed = asyncio.Condition()
        self._controller_task: asyncio.Task[None] | None = None
        self._start_tasks: dict[str, asyncio.Task[None]] = {}
        self._watchers: dict[str, asyncio.Task[None]] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._fail_requests: dict[str, FailRequest] = {}

        self.failed_slots: dict[str, InstanceFailedError] = {}
        self.materialization_error: MaterializationError | None = None

        self._running = False
        self._stopping = False
        self._messages_processed = 0
        self._messages_dropped = 0
        self._controller_errors = 0

        if probe_factory is None:
            probe_factory = DefaultProbeFactory(
                AsyncProcessPool(
                    PoolConfig(
                        max_concurrent=self.config.max_concurrent_probes,
                        kill_timeout=min(self.config.kill_timeout_seconds, 2.0),
                    )
                )
            )
        self._probe_pool: AsyncProcessPool | None = (
            probe_factory.pool if isinstance(probe_factory, DefaultProbeFactory) else None
        )
        self.monitor = HealthMonitor(
            self.bus,
            self.submit,
            self.get_instance,
            probe_factory=probe_factory,
            history_size=self.config.probe_history_size,
        )
        self.remediator = Remediator(
            self.bus,
            self.submit,
            self.get_instance,
            self.is_current,
            cooldown_seconds=self.config.restart_cooldown_seconds,
            max_restarts=self.config.max_restarts,
            window_seconds=self.config.restart_window_seconds,
        )
        self.watchdog = PendingWatchdog(
            self,
            pending_timeout=self.config.pending_timeout_seconds,
            interval=self.config.watchdog_interval_seconds,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._stopping = False
        # Pending time counts from start, not from construction
        started_at = time.time()
        for instance in self._slots.values():
            if instance.state == InstanceState.PENDING:
                instance.state_since = started_at

        await self.monitor.start()
        await self.remediator.start()
        await self.watchdog.start()
        self._controller_task = asyncio.create_task(self._control_loop(), name="cluster-controller")

        order = self.graph.startup_order()
        logger.info(
            f"[ClusterOrchestrator] Starting {len(self._slots)} instances of "
            f"{len(order)} processes: {' -> '.join(order)}"
        )
        await self.bus.publish(
            ClusterEvent(
                ClusterEventType.CLUSTER_STARTED,
                {"processes": order, "instances": len(self._slots), "config": self.config.to_dict()},
            )
        )
        self.submit(EvaluateGates())

    async def stop(self) -> None:
        """Stop remediation and probes, then tear down in reverse dependency order."""
        if not self._running or self._stopping:
            return
        self._stopping = True
        logger.info("[ClusterOrchestrator] Stopping cluster")

        await self.watchdog.stop()
        await self.remediator.stop()
        await self.monitor.stop()
        if self._probe_pool is not None:
            cancelled = await self._probe_pool.cancel_all()
            if cancelled:
                logger.info(f"[ClusterOrchestrator] Cancelled {cancelled} in-flight probe commands")

        await self._cancel(self._start_tasks.values())
        self._start_tasks.clear()
        if self._controller_task is not None:
            await self._cancel([self._controller_task])
            self._controller_task = None
        await self._cancel(self._watchers.values())
        self._watchers.clear()
        await self._cancel(self._background)
        self._background.clear()

        try:
            await asyncio.wait_for(self._teardown(), timeout=self.config.shutdown_timeout_seconds)
        except asyncio.TimeoutError:
            alive = [i.instance_id for i in self.instances() if i.state.is_alive]
            logger.error(
                f"[ClusterOrchestrator] Teardown exceeded {self.config.shutdown_timeout_seconds}s; "
                f"still alive: {', '.join(alive)}"
            )

        self._running = False
        await self.bus.publish(
            ClusterEvent(ClusterEventType.CLUSTER_STOPPED, {"summary": self.state_counts()})
        )
        logger.info("[ClusterOrchestrator] Cluster stopped")

    async def __aenter__(self) -> ClusterOrchestrator:
        await self.start()
        return self

    async def __aexit__(self, exc_type: type | None, exc: BaseException | None, tb: Any) -> bool:
        await self.stop()
        return False

    async def _teardown(self) -> None:
        for level in self.graph.teardown_levels():
            victims = [
                instance
                for name in level
                for instance in self.current_instances(name)
                if instance.state.is_alive or instance.state == InstanceState.STARTING
            ]
            if victims:
                logger.info(
                    f"[ClusterOrchestrator] Stopping {', '.join(i.instance_id for i in victims)}"
                )
                await asyncio.gather(*(self._stop_instance(i) for i in victims))

    async def _stop_instance(self, instance: ProcessInstance) -> None:
        instance.exit_expected = True
        exit_code = None
        if instance.handle is not None:
            try:
                exit_code = await self.runtime.terminate(instance.handle, self.config.kill_timeout_seconds)
            except PROCESS_ERRORS as e:
                logger.warning(f"[ClusterOrchestrator] Failed to stop {instance.instance_id}: {e}")
        await self._apply(instance, InstanceState.EXITED, reason="cluster shutdown", exit_code=exit_code)

    @staticmethod
    async def _cancel(tasks: Iterable[asyncio.Task[Any]]) -> None:
        pending = [task for task in tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Controller
    # -------------------------------------------------------------------------

    def submit(self, message: ControlMessage) -> None:
        """Enqueue a control message; safe to call from any task."""
        self._queue.put_nowait(message)

    async def _control_loop(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self._dispatch(message)
                await self._evaluate_gates()
                self._messages_processed += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._controller_errors += 1
                logger.exception(
                    f"[ClusterOrchestrator] Error handling {type(message).__name__}: {e}"
                )
            finally:
                self._queue.task_done()

    async def _dispatch(self, message: ControlMessage) -> None:
        if isinstance(message, TransitionRequest):
            await self._handle_transition(message)
        elif isinstance(message, Spawned):
            await self._handle_spawned(message)
        elif isinstance(message, SpawnFailed):
            await self._handle_spawn_failed(message)
        elif isinstance(message, ProcessExited):
            await self._handle_exited(message)
        elif isinstance(message, RestartRequest):
            await self._handle_restart(message)
        elif isinstance(message, FailRequest):
            await self._handle_fail(message)
        # EvaluateGates needs no handling: the gate runs after every message

    def _drop(self, message: ControlMessage, why: str) -> None:
        self._messages_dropped += 1
        logger.debug(f"[ClusterOrchestrator] Dropped {type(message).__name__}: {why}")

    async def _evaluate_gates(self) -> None:
        if self._stopping:
            return
        for instance in list(self._slots.values()):
            if instance.state != InstanceState.PENDING:
                continue
            if not self.gate.is_ready(instance.spec, self):
                continue
            ticket = self.gate.open(instance, self)
            await self._begin_start(instance, ticket)

    async def _begin_start(self, instance: ProcessInstance, ticket: GateTicket) -> None:
        await self._apply(instance, InstanceState.STARTING, reason="dependencies satisfied", ticket=ticket)
        self._start_tasks[instance.instance_id] = asyncio.create_task(
            self._launch(instance), name=f"launch-{instance.instance_id}"
        )

    async def _launch(self, instance: ProcessInstance) -> None:
        try:
            handle = await self.runtime.launch(instance)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.submit(SpawnFailed(instance.instance_id, str(e)))
            return
        finally:
            self._start_tasks.pop(instance.instance_id, None)
        self.submit(Spawned(instance.instance_id, handle))

    async def _watch(self, instance_id: str, handle: ProcessHandle) -> None:
        try:
            exit_code: int | None = await handle.wait()
        except PROCESS_ERRORS as e:
            logger.warning(f"[ClusterOrchestrator] Lost track of {instance_id}: {e}")
            exit_code = None
        self.submit(ProcessExited(instance_id, exit_code))

    # -------------------------------------------------------------------------
    # Message Handlers
    # -------------------------------------------------------------------------

    async def _handle_transition(self, request: TransitionRequest) -> None:
        instance = self._current_by_id(request.instance_id)
        if instance is None:
            self._drop(request, f"{request.instance_id} is not current")
            return
        if not instance.can_transition(request.target):
            self._drop(
                request,
                f"{instance.instance_id} cannot go {instance.state.value} -> {request.target.value}",
            )
            return
        await self._apply(instance, request.target, reason=request.reason)

    async def _handle_spawned(self, message: Spawned) -> None:
        instance = self._current_by_id(message.instance_id)
        if instance is None or instance.state != InstanceState.STARTING:
            # Start was abandoned while the launch was in flight
            self._drop(message, f"{message.instance_id} no longer starting; terminating orphan")
            self._track(self.runtime.terminate(message.handle, self.config.kill_timeout_seconds))
            return
        instance.attach_handle(message.handle)
        await self._apply(instance, InstanceState.RUNNING, reason=f"pid={message.handle.pid}")
        self._watchers[instance.instance_id] = asyncio.create_task(
            self._watch(instance.instance_id, message.handle), name=f"watch-{instance.instance_id}"
        )

    async def _handle_spawn_failed(self, message: SpawnFailed) -> None:
        instance = self._current_by_id(message.instance_id)
        if instance is None or instance.state != InstanceState.STARTING:
            self._drop(message, f"{message.instance_id} no longer starting")
            return
        logger.error(f"[ClusterOrchestrator] Failed to launch {instance.instance_id}: {message.error}")
        await self._on_exit(instance, SPAWN_FAILED_EXIT_CODE, reason=f"spawn failed: {message.error}")

    async def _handle_exited(self, message: ProcessExited) -> None:
        self._watchers.pop(message.instance_id, None)
        instance = self._by_id.get(message.instance_id)
        if instance is None or not instance.state.is_alive:
            self._drop(message, f"{message.instance_id} is not alive")
            return
        await self._on_exit(instance, message.exit_code, reason=f"exit code {message.exit_code}")

    async def _handle_restart(self, request: RestartRequest) -> None:
        instance = self._current_by_id(request.instance_id)
        if instance is None:
            self._drop(request, f"{request.instance_id} is not current")
            return

        if instance.state == InstanceState.EXITED:
            logger.warning(f"[ClusterOrchestrator] Restarting {instance.instance_id}: {request.reason}")
            await self._replace(instance)
        elif instance.state.is_alive:
            logger.warning(f"[ClusterOrchestrator] Restarting {instance.instance_id}: {request.reason}")
            instance.exit_expected = True
            instance.restart_requested = True
            self._terminate(instance)
        elif instance.state == InstanceState.STARTING:
            instance.exit_expected = True
            instance.restart_requested = True
            await self._abandon_start(instance)
        else:
            self._drop(request, f"{instance.instance_id} is {instance.state.value}")

    async def _handle_fail(self, request: FailRequest) -> None:
        instance = self._current_by_id(request.instance_id)
        if instance is None or instance.state in (InstanceState.PENDING, InstanceState.FAILED):
            self._drop(request, f"{request.instance_id} cannot be failed")
            return

        self.failed_slots[instance.name] = InstanceFailedError(
            instance.name, request.restarts, request.window_seconds
        )
        self._fail_requests[instance.instance_id] = request
        if instance.state == InstanceState.EXITED:
            await self._fail(instance)
        elif instance.state.is_alive:
            instance.exit_expected = True
            self._terminate(instance)
        else:
            instance.exit_expected = True
            await self._abandon_start(instance)

    # -------------------------------------------------------------------------
    # State Changes
    # -------------------------------------------------------------------------

    async def _on_exit(self, instance: ProcessInstance, exit_code: int | None, reason: str) -> None:
        await self._apply(instance, InstanceState.EXITED, reason=reason, exit_code=exit_code)

        if not instance.exit_expected:
            if instance.spec.is_materializer and exit_code != 0:
                self.materialization_error = MaterializationError(
                    f"{instance.name} failed with exit code {exit_code}; dependents stay pending",
                    source=instance.name,
                )
                logger.error(f"[ClusterOrchestrator] Key materialization failed: {self.materialization_error}")
                await self.bus.publish(
                    ClusterEvent(
                        ClusterEventType.MATERIALIZATION_FAILED,
                        {
                            "instance_id": instance.instance_id,
                            "name": instance.name,
                            "exit_code": exit_code,
                            "error": str(self.materialization_error),
                        },
                    )
                )
            elif exit_code == 0:
                logger.info(f"[ClusterOrchestrator] {instance.instance_id} completed successfully")
            else:
                logger.warning(f"[ClusterOrchestrator] {ProcessExitError(instance.instance_id, exit_code)}")

        if instance.instance_id in self._fail_requests:
            await self._fail(instance)
        elif instance.restart_requested:
            await self._replace(instance)

    async def _abandon_start(self, instance: ProcessInstance) -> None:
        task = self._start_tasks.pop(instance.instance_id, None)
        if task is not None:
            task.cancel()
        await self._on_exit(instance, SPAWN_FAILED_EXIT_CODE, reason="start abandoned")

    async def _fail(self, instance: ProcessInstance) -> None:
        request = self._fail_requests.pop(instance.instance_id)
        error = self.failed_slots.get(instance.name) or InstanceFailedError(
            instance.name, request.restarts, request.window_seconds
        )
        await self._apply(instance, InstanceState.FAILED, reason=str(error))
        logger.error(f"[ClusterOrchestrator] {error} (last failure: {request.reason})")

    async def _replace(self, instance: ProcessInstance) -> None:
        successor = instance.successor()
        self._slots[instance.slot] = successor
        self._by_id[successor.instance_id] = successor
        logger.info(
            f"[ClusterOrchestrator] Replaced {instance.instance_id} with {successor.instance_id} (pending)"
        )
        await self.bus.publish(
            ClusterEvent(
                ClusterEventType.INSTANCE_REPLACED,
                {
                    "instance_id": instance.instance_id,
                    "successor_id": successor.instance_id,
                    "name": instance.name,
                    "process": instance.spec.name,
                    "generation": successor.generation,
                },
            )
        )
        await self._notify()

    def _terminate(self, instance: ProcessInstance) -> None:
        """Ask the runtime to stop ``instance``; its exit watcher reports the exit."""
        if instance.handle is None:
            return
        self._track(self.runtime.terminate(instance.handle, self.config.kill_timeout_seconds))

    def _track(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _apply(
        self,
        instance: ProcessInstance,
        target: InstanceState,
        *,
        reason: str = "",
        ticket: GateTicket | None = None,
        exit_code: int | None = None,
    ) -> None:
        previous = instance.state
        instance.transition(target, reason=reason, ticket=ticket, exit_code=exit_code)

        message = (
            f"[ClusterOrchestrator] {instance.instance_id}: {previous.value} -> {target.value}"
            + (f" ({reason})" if reason else "")
        )
        if target == InstanceState.FAILED:
            logger.error(message)
        elif target == InstanceState.UNHEALTHY:
            logger.warning(message)
        else:
            logger.info(message)

        payload = {
            "instance_id": instance.instance_id,
            "name": instance.name,
            "process": instance.spec.name,
            "replica": instance.replica,
            "generation": instance.generation,
            "role": instance.spec.role.value,
            "from": previous.value,
            "to": target.value,
            "reason": reason,
            "exit_code": instance.exit_code,
            "exit_expected": instance.exit_expected,
        }
        await self.bus.publish(ClusterEvent(ClusterEventType.INSTANCE_STATE_CHANGED, payload))
        await self.bus.publish(ClusterEvent(STATE_EVENTS[target], payload))
        await self._notify()

    async def _notify(self) -> None:
        async with self._changed:
            self._changed.notify_all()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def current_instances(self, name: str) -> list[ProcessInstance]:
        """Current instance of every replica slot of process ``name``."""
        return [self._slots[slot] for slot in self._slots_by_process.get(name, [])]

    def instances(self) -> list[ProcessInstance]:
        return list(self._slots.values())

    def get_instance(self, instance_id: str) -> ProcessInstance | None:
        return self._by_id.get(instance_id)

    def is_current(self, instance: ProcessInstance) -> bool:
        return self._slots.get(instance.slot) is instance

    def _current_by_id(self, instance_id: str) -> ProcessInstance | None:
        instance = self._by_id.get(instance_id)
        if instance is None or not self.is_current(instance):
            return None
        return instance

    def state_counts(self) -> dict[str, int]:
        counts = {state.value: 0 for state in InstanceState}
        for instance in self._slots.values():
            counts[instance.state.value] += 1
        return counts

    async def wait_for_state(
        self,
        name: str,
        state: InstanceState,
        count: int | None = None,
        timeout: float | None = None,
    ) -> list[ProcessInstance]:
        """Wait until ``count`` (default: all) current replicas of ``name`` are in ``state``.

        Raises:
            asyncio.TimeoutError: if ``timeout`` elapses first
        """
        needed = count if count is not None else self.graph.spec(name).replicas

        def matching() -> list[ProcessInstance]:
            return [i for i in self.current_instances(name) if i.state == state]

        async with self._changed:
            await asyncio.wait_for(
                self._changed.wait_for(lambda: len(matching()) >= needed), timeout=timeout
            )
        return matching()

    async def wait_for_exit(self, name: str, timeout: float | None = None) -> int | None:
        """Wait until every current replica of ``name`` has exited.

        Returns 0 when all exited cleanly, otherwise the first nonzero (or
        unknown) exit code.

        Raises:
            asyncio.TimeoutError: if ``timeout`` elapses first
        """
        def all_exited() -> bool:
            return all(i.state.is_terminal for i in self.current_instances(name))

        async with self._changed:
            await asyncio.wait_for(self._changed.wait_for(all_exited), timeout=timeout)
        for instance in self.current_instances(name):
            if instance.state == InstanceState.FAILED or instance.exit_code != 0:
                return instance.exit_code if instance.exit_code not in (None, 0) else 1
        return 0

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "counts": self.state_counts(),
            "instances": [instance.to_dict() for instance in self._slots.values()],
            "failed": {name: str(error) for name, error in self.failed_slots.items()},
            "materialization_error": str(self.materialization_error) if self.materialization_error else None,
            "controller": {
                "queue_depth": self._queue.qsize(),
                "messages_processed": self._messages_processed,
                "messages_dropped": self._messages_dropped,
                "errors": self._controller_errors,
                "starts_in_flight": len(self._start_tasks),
            },
            "monitor": self.monitor.get_status(),
            "remediator": self.remediator.get_status(),
            "events": self.bus.get_stats(),
        }
