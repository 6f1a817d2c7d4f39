"""Lifecycle mixin for the orchestrator's background components.

The health monitor, the remediator and the pending watchdog all share the
same shape: a start/stop lifecycle, an optional periodic cycle, and a set of
child tasks (probe loops, cooldown timers) that must be cancelled together
on stop. This mixin provides that shape.

Usage:
    class PendingWatchdog(LifecycleMixin):
        def __init__(self):
            super().__init__(name="pending_watchdog", cycle_interval=1.0)

        async def _on_cycle(self) -> None:
            ...

    async with PendingWatchdog() as watchdog:
        ...
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Coroutine
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    """Lifecycle of a background component (not of a managed process)."""

    CREATED = "created"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


class LifecycleMixin:
    """Start/stop, optional periodic cycle, owned child tasks.

    Subclasses override any of:
    - ``_on_start()``: subscribe, allocate
    - ``_on_stop()``: unsubscribe, release
    - ``_on_cycle()``: periodic work; the cycle loop only runs when
      ``cycle_interval`` is set
    """

    def __init__(
        self,
        name: str,
        cycle_interval: float | None = None,
        shutdown_timeout: float = 10.0,
    ) -> None:
        self._lifecycle_name = name
        self._lifecycle_state = LifecycleState.CREATED
        self._cycle_interval = cycle_interval
        self._shutdown_timeout = shutdown_timeout
        self._stop_event = asyncio.Event()
        self._cycle_task: asyncio.Task[None] | None = None
        self._children: set[asyncio.Task[Any]] = set()
        self._start_time: float | None = None
        self._cycle_count = 0
        self._error_count = 0
        self._last_error: str | None = None

    @property
    def is_running(self) -> bool:
        return self._lifecycle_state == LifecycleState.RUNNING

    @property
    def lifecycle_state(self) -> LifecycleState:
        return self._lifecycle_state

    async def start(self) -> None:
        if self._lifecycle_state == LifecycleState.RUNNING:
            return
        self._stop_event = asyncio.Event()
        self._start_time = time.time()
        try:
            await self._on_start()
        except Exception as e:
            self._lifecycle_state = LifecycleState.FAILED
            self._record_error(e)
            logger.error(f"[{self._lifecycle_name}] Start failed: {e}")
            raise
        self._lifecycle_state = LifecycleState.RUNNING
        if self._cycle_interval is not None:
            self._cycle_task = asyncio.create_task(
                self._cycle_loop(), name=f"{self._lifecycle_name}-cycle"
            )
        logger.debug(f"[{self._lifecycle_name}] Started")

    async def stop(self) -> None:
        if self._lifecycle_state not in (LifecycleState.RUNNING, LifecycleState.FAILED):
            return
        self._lifecycle_state = LifecycleState.STOPPING
        self._stop_event.set()

        tasks = list(self._children)
        if self._cycle_task is not None:
            tasks.append(self._cycle_task)
        for task in tasks:
            task.cancel()
        if tasks:
            _, still_running = await asyncio.wait(tasks, timeout=self._shutdown_timeout)
            if still_running:
                logger.warning(
                    f"[{self._lifecycle_name}] {len(still_running)} tasks did not stop "
                    f"within {self._shutdown_timeout}s"
                )
        self._children.clear()
        self._cycle_task = None

        await self._on_stop()
        self._lifecycle_state = LifecycleState.STOPPED
        logger.debug(f"[{self._lifecycle_name}] Stopped")

    async def __aenter__(self) -> LifecycleMixin:
        await self.start()
        return self

    async def __aexit__(self, exc_type: type | None, exc: BaseException | None, tb: Any) -> bool:
        await self.stop()
        return False

    # -------------------------------------------------------------------------
    # Hooks
    # -------------------------------------------------------------------------

    async def _on_start(self) -> None:
        pass

    async def _on_stop(self) -> None:
        pass

    async def _on_cycle(self) -> None:
        pass

    # -------------------------------------------------------------------------
    # Child Tasks
    # -------------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        """Run ``coro`` as a child task cancelled on ``stop()``."""
        task = asyncio.create_task(coro, name=f"{self._lifecycle_name}:{name}")
        self._children.add(task)
        task.add_done_callback(self._child_done)
        return task

    def _child_done(self, task: asyncio.Task[Any]) -> None:
        self._children.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._record_error(error)
            logger.error(f"[{self._lifecycle_name}] Task {task.get_name()} crashed: {error}")

    async def _cycle_loop(self) -> None:
        assert self._cycle_interval is not None
        while not self._stop_event.is_set():
            try:
                await self._on_cycle()
                self._cycle_count += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._record_error(e)
                logger.error(f"[{self._lifecycle_name}] Cycle error: {e}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._cycle_interval)
            except asyncio.TimeoutError:
                pass

    def _record_error(self, error: BaseException) -> None:
        self._error_count += 1
        self._last_error = str(error)

    def get_lifecycle_health(self) -> dict[str, Any]:
        return {
            "name": self._lifecycle_name,
            "state": self._lifecycle_state.value,
            "uptime_seconds": time.time() - self._start_time if self._start_time else None,
            "cycle_count": self._cycle_count,
            "child_tasks": len(self._children),
            "error_count": self._error_count,
            "last_error": self._last_error,
        }
