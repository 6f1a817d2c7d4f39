"""Shared pytest fixtures for orchestrator tests.

Provides a fake process runtime (no real subprocesses), scripted health
probes, a fast config, and small spec builders.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from collections import Counter
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from testnet.coordination.base_config import OrchestratorConfig
from testnet.coordination.enums import ProcessRole, RequiredState
from testnet.coordination.health_probes import ProbeOutcome
from testnet.coordination.instance import ProcessInstance
from testnet.coordination.key_materializer import KeyMaterializer
from testnet.coordination.process_runtime import TaskHandle
from testnet.coordination.process_spec import (
    DependencySpec,
    HealthProbeSpec,
    KeyBundleSpec,
    ProcessSpec,
)

# =============================================================================
# Fake Runtime
# =============================================================================


class FakeHandle:
    """Process handle whose exit is driven by the test."""

    _pids = itertools.count(1000)

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        self.pid = next(self._pids)
        self.terminated = False
        self._exit: asyncio.Future[int] = asyncio.get_running_loop().create_future()

    @property
    def returncode(self) -> int | None:
        return self._exit.result() if self._exit.done() else None

    def exit(self, code: int) -> None:
        if not self._exit.done():
            self._exit.set_result(code)

    async def wait(self) -> int:
        return await asyncio.shield(self._exit)

    async def terminate(self, timeout: float) -> int | None:
        self.terminated = True
        self.exit(-15)
        return self._exit.result()


class FakeRuntime:
    """Records launches; key bundles run the real materializer."""

    def __init__(self) -> None:
        self.launched: list[str] = []
        self.handles: dict[str, FakeHandle] = {}
        self.fail_launch: set[str] = set()
        self.exit_on_launch: dict[str, int] = {}

    async def launch(self, instance: ProcessInstance) -> Any:
        self.launched.append(instance.instance_id)
        spec = instance.spec
        if spec.key_bundle is not None:
            return TaskHandle(asyncio.create_task(KeyMaterializer(spec.key_bundle).run()))
        if spec.name in self.fail_launch:
            raise FileNotFoundError(f"no such binary: {spec.command[0]}")
        handle = FakeHandle(instance.instance_id)
        self.handles[instance.instance_id] = handle
        if spec.name in self.exit_on_launch:
            asyncio.get_running_loop().call_soon(handle.exit, self.exit_on_launch[spec.name])
        return handle

    async def terminate(self, handle: Any, timeout: float) -> int | None:
        return await handle.terminate(timeout)

    def launches_of(self, name: str) -> list[str]:
        """Launched instance ids whose slot name is ``name`` or ``name-N``."""
        return [
            instance_id
            for instance_id in self.launched
            if instance_id.split("#")[0] == name or instance_id.split("#")[0].rsplit("-", 1)[0] == name
        ]


# =============================================================================
# Scripted Probes
# =============================================================================


class ScriptedProbe:
    def __init__(self, factory: ScriptedProbeFactory, instance: ProcessInstance):
        self._factory = factory
        self._instance = instance

    async def check(self) -> ProbeOutcome:
        self._factory.calls[self._instance.instance_id] += 1
        if self._factory.healthy(self._instance):
            return ProbeOutcome.success()
        return ProbeOutcome.failure("scripted failure")


class ScriptedProbeFactory:
    """Probe results keyed by instance id, slot name, or process name."""

    def __init__(self, default: bool = True):
        self.default = default
        self.rules: dict[str, bool | Callable[[], bool]] = {}
        self.calls: Counter[str] = Counter()

    def set(self, key: str, healthy: bool | Callable[[], bool]) -> None:
        self.rules[key] = healthy

    def healthy(self, instance: ProcessInstance) -> bool:
        for key in (instance.instance_id, instance.name, instance.spec.name):
            if key in self.rules:
                rule = self.rules[key]
                return rule() if callable(rule) else rule
        return self.default

    def __call__(self, probe: HealthProbeSpec, instance: ProcessInstance) -> ScriptedProbe:
        return ScriptedProbe(self, instance)


# =============================================================================
# Spec Builders
# =============================================================================


def fast_probe(retries: int = 3) -> HealthProbeSpec:
    return HealthProbeSpec(command=("true",), interval=0.01, timeout=0.5, retries=retries)


def make_spec(
    name: str,
    role: ProcessRole = ProcessRole.PEER,
    depends_on: dict[str, RequiredState] | None = None,
    **kwargs: Any,
) -> ProcessSpec:
    deps = tuple(DependencySpec(dep, state) for dep, state in (depends_on or {}).items())
    kwargs.setdefault("command", (name, "up"))
    return ProcessSpec(name=name, role=role, depends_on=deps, **kwargs)


def make_key_files(tmp_path: Path) -> KeyBundleSpec:
    source_dir = tmp_path / "keys"
    source_dir.mkdir()
    sources = []
    for name in ("libp2p_keys.json", "validator_bls_keys.json", "validator_keys.json"):
        path = source_dir / name
        path.write_text(f'{{"name": "{name}"}}')
        sources.append((name, path))
    return KeyBundleSpec(sources=tuple(sources), target_dir=tmp_path / "shared")


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def fast_config() -> OrchestratorConfig:
    """Config with very short intervals for fast tests."""
    return OrchestratorConfig(
        restart_cooldown_seconds=0.05,
        max_restarts=3,
        restart_window_seconds=60.0,
        pending_timeout_seconds=60.0,
        watchdog_interval_seconds=0.05,
        shutdown_timeout_seconds=5.0,
        kill_timeout_seconds=0.5,
    )


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def probes() -> ScriptedProbeFactory:
    return ScriptedProbeFactory()


@pytest.fixture
def key_bundle(tmp_path: Path) -> KeyBundleSpec:
    return make_key_files(tmp_path)


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    """Poll ``predicate`` until true or fail the test after ``timeout``."""

    async def _wait_until(predicate: Callable[[], bool], timeout: float = 3.0, message: str = "") -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                pytest.fail(f"condition not met within {timeout}s {message}")
            await asyncio.sleep(0.005)

    return _wait_until
