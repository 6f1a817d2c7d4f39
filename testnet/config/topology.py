"""Declarative cluster topology loader.

A topology is a YAML document with a compose-like ``processes:`` mapping and
an optional ``orchestrator:`` section overriding ``OrchestratorConfig``
fields:

    orchestrator:
      restart_cooldown_seconds: 30

    processes:
      init:
        role: support
        key_bundle:
          target_dir: /tmp/shared
          sources:
            libp2p_keys.json: ./keys/libp2p_keys.json
            validator_bls_keys.json: ./keys/validator_bls_keys.json
            validator_keys.json: ./keys/validator_keys.json
      boot:
        role: boot
        command: topos node up --name boot
        depends_on:
          init: service_completed_successfully
        healthcheck:
          test: topos tce status --node http://localhost:1340
          interval: 15s
        restart: always
        log_level: topos=info
      peer:
        role: peer
        replicas: 14
        command: topos node up --name {instance}
        depends_on: [boot]
      check:
        role: checker
        profiles: [CI, check]
        command: topos tce push-certificate -f json
        depends_on:
          boot: healthy
          peer: {condition: healthy, quorum: 3}

Relative paths are resolved against the directory of the topology file. The
whole document is validated (fields, profiles, dependency graph) before a
``Topology`` is returned.

Usage:
    from testnet.config.topology import load_topology

    topology = load_topology("testnet.yaml", profiles=["CI"])
    topology.graph.startup_order()
"""

from __future__ import annotations

import logging
import re
import shlex
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import dotenv_values

from testnet.config import defaults
from testnet.coordination.base_config import OrchestratorConfig
from testnet.coordination.dependency_graph import DependencyGraph
from testnet.coordination.enums import ProcessRole, RequiredState, RestartPolicy
from testnet.coordination.process_spec import (
    DependencySpec,
    HealthProbeSpec,
    KeyBundleSpec,
    ProcessSpec,
)
from testnet.utils.exceptions import FS_ERRORS, ConfigError

logger = logging.getLogger(__name__)

_PROCESS_KEYS = frozenset({
    "role",
    "command",
    "depends_on",
    "healthcheck",
    "restart",
    "replicas",
    "environment",
    "env_file",
    "working_dir",
    "ports",
    "log_level",
    "profiles",
    "key_bundle",
    "completion_marker",
})

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {None: 1.0, "ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


@dataclass
class Topology:
    """Validated set of process specs plus orchestrator overrides."""

    specs: tuple[ProcessSpec, ...]
    graph: DependencyGraph
    orchestrator: dict[str, Any] = field(default_factory=dict)
    profiles: frozenset[str] = frozenset()
    excluded: tuple[str, ...] = ()
    source: Path | None = None

    def spec(self, name: str) -> ProcessSpec:
        return self.graph.spec(name)

    def build_config(self, base: OrchestratorConfig | None = None) -> OrchestratorConfig:
        """Env-derived config with this topology's ``orchestrator:`` section applied."""
        config = base if base is not None else OrchestratorConfig.from_env()
        return config.apply_overrides(self.orchestrator) if self.orchestrator else config

    @property
    def instance_count(self) -> int:
        return sum(spec.replicas for spec in self.specs)


# =============================================================================
# Loading
# =============================================================================


def load_topology(path: str | Path, profiles: Iterable[str] = ()) -> Topology:
    """Read and validate a topology file.

    Raises:
        ConfigError: unreadable file, malformed YAML, invalid field, cycle
    """
    path = Path(path)
    try:
        text = path.read_text()
    except FS_ERRORS as e:
        raise ConfigError(f"cannot read topology {path}: {e}") from e
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"malformed topology {path}: {e}") from e

    topology = parse_topology(document, base_dir=path.resolve().parent, profiles=profiles)
    topology.source = path
    return topology


def parse_topology(
    document: Any,
    base_dir: Path,
    profiles: Iterable[str] = (),
) -> Topology:
    """Build a ``Topology`` from an already-parsed YAML document."""
    if not isinstance(document, dict):
        raise ConfigError("topology must be a mapping with a 'processes' section")
    unknown = set(document) - {"processes", "orchestrator"}
    if unknown:
        raise ConfigError(f"unknown top-level keys: {sorted(unknown)}")

    processes = document.get("processes")
    if not isinstance(processes, dict) or not processes:
        raise ConfigError("topology declares no processes")

    orchestrator = document.get("orchestrator") or {}
    if not isinstance(orchestrator, dict):
        raise ConfigError("'orchestrator' section must be a mapping")
    # Fail at load time on unknown or mistyped settings
    OrchestratorConfig().apply_overrides(orchestrator)

    active = frozenset(profiles)
    included: dict[str, dict[str, Any]] = {}
    excluded: list[str] = []
    for name, raw in processes.items():
        name = str(name)
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ConfigError("process definition must be a mapping", process=name)
        declared = _str_list(raw.get("profiles", ()), "profiles", name)
        if declared and not active.intersection(declared):
            excluded.append(name)
            continue
        included[name] = raw

    if excluded:
        logger.info(f"[Topology] Profiles {sorted(active) or '[]'} exclude: {', '.join(excluded)}")

    specs = tuple(_parse_process(name, raw, base_dir) for name, raw in included.items())
    for spec in specs:
        for dep in spec.depends_on:
            if dep.name in excluded:
                raise ConfigError(
                    f"depends on '{dep.name}', which no active profile enables", process=spec.name
                )

    graph = DependencyGraph(specs)
    return Topology(
        specs=specs,
        graph=graph,
        orchestrator=dict(orchestrator),
        profiles=active,
        excluded=tuple(excluded),
    )


# =============================================================================
# Field Parsers
# =============================================================================


def _parse_process(name: str, raw: dict[str, Any], base_dir: Path) -> ProcessSpec:
    unknown = set(raw) - _PROCESS_KEYS
    if unknown:
        raise ConfigError(f"unknown keys {sorted(unknown)}", process=name)

    try:
        role = ProcessRole(str(raw.get("role", ProcessRole.SUPPORT.value)).lower())
    except ValueError:
        raise ConfigError(f"unknown role {raw.get('role')!r}", process=name) from None
    try:
        restart = RestartPolicy.parse(str(raw.get("restart", RestartPolicy.NEVER.value)))
    except ValueError:
        raise ConfigError(f"unknown restart policy {raw.get('restart')!r}", process=name) from None

    environment = _parse_env_files(raw.get("env_file"), base_dir, name)
    environment.update(_parse_environment(raw.get("environment"), name))

    working_dir = raw.get("working_dir")
    completion_marker = raw.get("completion_marker")

    return ProcessSpec(
        name=name,
        role=role,
        command=_parse_command(raw.get("command"), name),
        depends_on=_parse_depends_on(raw.get("depends_on"), name),
        healthcheck=_parse_healthcheck(raw.get("healthcheck"), name),
        restart=restart,
        replicas=_int(raw.get("replicas", 1), "replicas", name),
        environment=environment,
        working_dir=_resolve(base_dir, working_dir) if working_dir else None,
        ports=tuple(str(p) for p in _as_list(raw.get("ports", ()), "ports", name)),
        log_level=str(raw["log_level"]) if raw.get("log_level") else None,
        profiles=_str_list(raw.get("profiles", ()), "profiles", name),
        key_bundle=_parse_key_bundle(raw.get("key_bundle"), base_dir, name),
        completion_marker=_resolve(base_dir, completion_marker) if completion_marker else None,
    )


def _parse_command(value: Any, process: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        try:
            return tuple(shlex.split(value))
        except ValueError as e:
            raise ConfigError(f"cannot split command {value!r}: {e}", process=process) from e
    if isinstance(value, list):
        return tuple(str(arg) for arg in value)
    raise ConfigError("command must be a string or a list", process=process)


def _parse_depends_on(value: Any, process: str) -> tuple[DependencySpec, ...]:
    """``[a, b]`` (started), ``{a: healthy}`` or ``{a: {condition, all_replicas, quorum}}``."""
    if value is None:
        return ()
    if isinstance(value, list):
        return tuple(DependencySpec(str(name)) for name in value)
    if not isinstance(value, dict):
        raise ConfigError("depends_on must be a list or a mapping", process=process)

    deps = []
    for name, edge in value.items():
        name = str(name)
        try:
            if edge is None:
                deps.append(DependencySpec(name))
            elif isinstance(edge, str):
                deps.append(DependencySpec(name, RequiredState.parse(edge)))
            elif isinstance(edge, dict):
                quorum = edge.get("quorum")
                deps.append(
                    DependencySpec(
                        name,
                        RequiredState.parse(str(edge.get("condition", RequiredState.STARTED.value))),
                        all_replicas=bool(edge.get("all_replicas", False)),
                        quorum=_int(quorum, "quorum", process) if quorum is not None else None,
                    )
                )
            else:
                raise ConfigError(f"invalid dependency on '{name}'", process=process)
        except ValueError as e:
            raise ConfigError(f"invalid condition for '{name}': {e}", process=process) from e
    return tuple(deps)


def _parse_healthcheck(value: Any, process: str) -> HealthProbeSpec | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError("healthcheck must be a mapping", process=process)

    command = value.get("command", value.get("test"))
    http_url = value.get("http", value.get("http_url"))
    if isinstance(command, list) and command and command[0] in ("CMD", "CMD-SHELL"):
        if command[0] == "CMD-SHELL":
            command = ["sh", "-c", " ".join(str(c) for c in command[1:])]
        else:
            command = command[1:]

    timeout = _duration(value.get("timeout", defaults.PROBE_TIMEOUT_SECONDS), "timeout", process)
    if timeout > defaults.PROBE_TIMEOUT_CEILING_SECONDS:
        logger.warning(
            f"[Topology] {process}: healthcheck timeout {timeout}s capped at "
            f"{defaults.PROBE_TIMEOUT_CEILING_SECONDS}s"
        )
        timeout = defaults.PROBE_TIMEOUT_CEILING_SECONDS

    interval = _duration(value.get("interval", defaults.PROBE_INTERVAL_SECONDS), "interval", process)
    retries = _int(value.get("retries", defaults.PROBE_RETRIES), "retries", process)
    start_delay = _duration(value.get("start_delay", value.get("start_period", 0)), "start_delay", process)
    argv = _parse_command(command, process) if command is not None else None
    try:
        return HealthProbeSpec(
            command=argv,
            http_url=str(http_url) if http_url is not None else None,
            interval=interval,
            timeout=timeout,
            retries=retries,
            start_delay=start_delay,
        )
    except ConfigError as e:
        raise ConfigError(str(e), process=process) from e


def _parse_key_bundle(value: Any, base_dir: Path, process: str) -> KeyBundleSpec | None:
    if value is None:
        return None
    if not isinstance(value, dict) or "target_dir" not in value or "sources" not in value:
        raise ConfigError("key_bundle needs 'target_dir' and 'sources'", process=process)

    sources = value["sources"]
    if isinstance(sources, list):
        pairs = [(Path(str(src)).name, _resolve(base_dir, src)) for src in sources]
    elif isinstance(sources, dict):
        pairs = [(str(dest), _resolve(base_dir, src)) for dest, src in sources.items()]
    else:
        raise ConfigError("key_bundle sources must be a list or a mapping", process=process)

    mode = value.get("mode", defaults.KEY_FILE_MODE)
    if isinstance(mode, str):
        try:
            mode = int(mode, 8)
        except ValueError:
            raise ConfigError(f"invalid key_bundle mode {mode!r}", process=process) from None

    try:
        return KeyBundleSpec(
            sources=tuple(pairs),
            target_dir=_resolve(base_dir, value["target_dir"]),
            mode=int(mode),
            marker=str(value.get("marker", defaults.KEY_READY_MARKER)),
        )
    except ConfigError as e:
        raise ConfigError(str(e), process=process) from e


def _parse_environment(value: Any, process: str) -> dict[str, str]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k): "" if v is None else str(v) for k, v in value.items()}
    if isinstance(value, list):
        env = {}
        for item in value:
            key, sep, val = str(item).partition("=")
            if not sep:
                raise ConfigError(f"environment entry {item!r} is not KEY=VALUE", process=process)
            env[key] = val
        return env
    raise ConfigError("environment must be a mapping or a list", process=process)


def _parse_env_files(value: Any, base_dir: Path, process: str) -> dict[str, str]:
    env: dict[str, str] = {}
    for entry in _as_list(value or (), "env_file", process):
        path = _resolve(base_dir, entry)
        if not path.is_file():
            raise ConfigError(f"env_file {path} not found", process=process)
        for key, val in dotenv_values(path).items():
            if val is not None:
                env[key] = val
    return env


# =============================================================================
# Scalars
# =============================================================================


def _resolve(base_dir: Path, value: Any) -> Path:
    path = Path(str(value)).expanduser()
    return path if path.is_absolute() else (base_dir / path)


def _as_list(value: Any, key: str, process: str) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, (str, int)):
        return [value]
    raise ConfigError(f"{key} must be a list", process=process)


def _str_list(value: Any, key: str, process: str) -> tuple[str, ...]:
    return tuple(str(v) for v in _as_list(value, key, process))


def _int(value: Any, key: str, process: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer", process=process)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer (got {value!r})", process=process) from None


def _duration(value: Any, key: str, process: str) -> float:
    """Seconds from a number or a string such as ``15s``, ``500ms``, ``1m``."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    match = _DURATION_RE.match(str(value))
    if match is None:
        raise ConfigError(f"{key} is not a duration: {value!r}", process=process)
    return float(match.group(1)) * _DURATION_UNITS[match.group(2)]
