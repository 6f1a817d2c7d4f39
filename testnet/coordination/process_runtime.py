"""Process runtime: how instances are spawned and terminated.

The orchestrator treats the runtime as an opaque collaborator. It asks for a
launch and gets back a ``ProcessHandle``; it asks for termination and waits
for the exit code. ``LocalProcessRuntime`` runs node binaries as local
subprocesses; a container runtime would implement the same two calls against
its own API.

Specs carrying a key bundle are launched in-process: the key materializer is
a short asyncio task rather than a subprocess, exposed through the same
handle interface so the controller cannot tell the difference.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Protocol, runtime_checkable

from testnet.coordination.async_process_pool import terminate_process
from testnet.coordination.instance import ProcessInstance
from testnet.coordination.key_materializer import KeyMaterializer

logger = logging.getLogger(__name__)

# Exit code reported for an in-process task that was cancelled
CANCELLED_EXIT_CODE = -15


@runtime_checkable
class ProcessHandle(Protocol):
    """Live handle to one launched instance."""

    @property
    def pid(self) -> int | None: ...

    @property
    def returncode(self) -> int | None: ...

    async def wait(self) -> int: ...

    async def terminate(self, timeout: float) -> int | None: ...


class ProcessRuntime(Protocol):
    """Spawn and stop interface the orchestrator depends on."""

    async def launch(self, instance: ProcessInstance) -> ProcessHandle: ...

    async def terminate(self, handle: ProcessHandle, timeout: float) -> int | None: ...


class SubprocessHandle:
    """Handle over an ``asyncio.subprocess.Process``."""

    def __init__(self, proc: asyncio.subprocess.Process, label: str, log_file: IO[bytes] | None = None):
        self._proc = proc
        self._label = label
        self._log_file = log_file

    @property
    def pid(self) -> int | None:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    async def wait(self) -> int:
        try:
            return await self._proc.wait()
        finally:
            self._close_log()

    async def terminate(self, timeout: float) -> int | None:
        try:
            return await terminate_process(self._proc, timeout, self._label)
        finally:
            self._close_log()

    def _close_log(self) -> None:
        if self._log_file is not None and self._proc.returncode is not None:
            self._log_file.close()


class TaskHandle:
    """Handle over an in-process coroutine returning an exit code."""

    def __init__(self, task: asyncio.Task[int]):
        self._task = task

    @property
    def pid(self) -> int | None:
        return None

    @property
    def returncode(self) -> int | None:
        if not self._task.done():
            return None
        if self._task.cancelled():
            return CANCELLED_EXIT_CODE
        return 1 if self._task.exception() is not None else self._task.result()

    async def wait(self) -> int:
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if self._task.cancelled():
                return CANCELLED_EXIT_CODE
            raise
        except Exception as e:
            logger.error(f"[TaskHandle] {self._task.get_name()} crashed: {e}")
            return 1

    async def terminate(self, timeout: float) -> int | None:
        if not self._task.done():
            self._task.cancel()
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
            except Exception as e:
                logger.debug(f"[TaskHandle] {self._task.get_name()} raised while stopping: {e}")
        return self.returncode


@dataclass
class LocalProcessRuntime:
    """Runs instances as local subprocesses.

    Attributes:
        log_dir: When set, each instance's stdout/stderr is appended to
            ``<log_dir>/<instance name>.log``; otherwise output is inherited.
        base_env: Environment the spec environment is layered on
            (defaults to the orchestrator's own).
    """

    log_dir: Path | None = None
    base_env: dict[str, str] | None = None

    async def launch(self, instance: ProcessInstance) -> ProcessHandle:
        spec = instance.spec
        if spec.key_bundle is not None:
            task = asyncio.create_task(
                KeyMaterializer(spec.key_bundle).run(),
                name=f"materialize-{instance.instance_id}",
            )
            return TaskHandle(task)

        command = spec.render_command(instance.replica)
        env = dict(self.base_env if self.base_env is not None else os.environ)
        env.update(spec.build_environment(instance.replica))

        log_file = None
        if self.log_dir is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            log_file = open(self.log_dir / f"{instance.name}.log", "ab")

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=log_file,
                stderr=asyncio.subprocess.STDOUT if log_file is not None else None,
                cwd=str(spec.working_dir) if spec.working_dir else None,
                env=env,
                # Own session: teardown, not the terminal's SIGINT, decides stop order
                start_new_session=True,
            )
        except BaseException:
            if log_file is not None:
                log_file.close()
            raise

        logger.info(f"[LocalProcessRuntime] Launched {instance.instance_id} pid={proc.pid}: {' '.join(command)}")
        return SubprocessHandle(proc, instance.instance_id, log_file)

    async def terminate(self, handle: ProcessHandle, timeout: float) -> int | None:
        return await handle.terminate(timeout)
