"""Dependency graph over process specs, validated at load time.

The graph is built once from the full set of ``ProcessSpec`` objects. It
rejects unknown dependency names and cycles before any instance exists, and
answers ordering questions for startup and teardown.

Usage:
    from testnet.coordination.dependency_graph import DependencyGraph

    graph = DependencyGraph(specs)          # raises ConfigError
    graph.startup_order()                   # ["init", "boot", "peer", ...]
    graph.teardown_levels()                 # [["check", "spammer"], ["peer", "sync"], ...]
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from testnet.coordination.enums import RequiredState
from testnet.coordination.process_spec import DependencySpec, ProcessSpec
from testnet.utils.exceptions import ConfigError


class DependencyGraph:
    """Directed graph ``dependent -> dependency`` with per-edge required state."""

    def __init__(self, specs: Iterable[ProcessSpec]):
        self._specs: dict[str, ProcessSpec] = {}
        for spec in specs:
            if spec.name in self._specs:
                raise ConfigError("duplicate process name", process=spec.name)
            self._specs[spec.name] = spec

        self._dependents: dict[str, list[str]] = {name: [] for name in self._specs}
        for spec in self._specs.values():
            for dep in spec.depends_on:
                if dep.name not in self._specs:
                    raise ConfigError(
                        f"depends on unknown process '{dep.name}'", process=spec.name
                    )
                if dep.required_state == RequiredState.HEALTHY and self._specs[dep.name].healthcheck is None:
                    raise ConfigError(
                        f"waits for '{dep.name}' to be healthy but '{dep.name}' has no healthcheck",
                        process=spec.name,
                    )
                self._dependents[dep.name].append(spec.name)

        self._check_acyclic()
        self._levels = self._compute_levels()

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __iter__(self) -> Iterator[ProcessSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)

    def spec(self, name: str) -> ProcessSpec:
        try:
            return self._specs[name]
        except KeyError:
            raise ConfigError(f"unknown process '{name}'") from None

    def dependents_of(self, name: str) -> list[str]:
        """Processes that declare ``name`` as a dependency."""
        return list(self._dependents.get(name, []))

    # -------------------------------------------------------------------------
    # Ordering
    # -------------------------------------------------------------------------

    def startup_order(self) -> list[str]:
        """Topological order, dependencies first, ties kept in declaration order."""
        return [name for level in self._levels for name in level]

    def teardown_levels(self) -> list[list[str]]:
        """Levels to stop, dependents before their dependencies.

        Processes within a level share no edges and may be stopped together.
        """
        return [list(level) for level in reversed(self._levels)]

    def teardown_order(self) -> list[str]:
        return [name for level in self.teardown_levels() for name in level]

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _check_acyclic(self) -> None:
        """Reject cycles, naming the offending path.

        Only ``completed``/``healthy`` edges order startup, but a cycle made of
        ``started`` edges could never start either, so every cycle is rejected.
        """
        white, grey, black = 0, 1, 2
        color = {name: white for name in self._specs}
        stack: list[str] = []

        def visit(name: str) -> None:
            color[name] = grey
            stack.append(name)
            for dep in self._specs[name].depends_on:
                if color[dep.name] == grey:
                    cycle = stack[stack.index(dep.name):] + [dep.name]
                    ordering = any(
                        self.edge(a, b).required_state.orders_startup
                        for a, b in zip(cycle, cycle[1:])
                    )
                    kind = "dependency cycle" if ordering else "start-only dependency cycle"
                    raise ConfigError(f"{kind}: {' -> '.join(cycle)}")
                if color[dep.name] == white:
                    visit(dep.name)
            stack.pop()
            color[name] = black

        for name in self._specs:
            if color[name] == white:
                visit(name)

    def edge(self, dependent: str, dependency: str) -> DependencySpec:
        for dep in self._specs[dependent].depends_on:
            if dep.name == dependency:
                return dep
        raise KeyError(f"{dependent} -> {dependency}")

    def _compute_levels(self) -> list[list[str]]:
        """Longest-path depth from the roots, grouped per depth."""
        depth: dict[str, int] = {}

        def depth_of(name: str) -> int:
            if name not in depth:
                deps = self._specs[name].depends_on
                depth[name] = 1 + max((depth_of(d.name) for d in deps), default=-1)
            return depth[name]

        for name in self._specs:
            depth_of(name)

        levels: list[list[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for name in self._specs:
            levels[depth[name]].append(name)
        return levels

    def describe(self) -> list[str]:
        """Human readable edge list, used by ``testnet validate``."""
        lines = []
        for name in self.startup_order():
            spec = self._specs[name]
            if not spec.depends_on:
                lines.append(f"{name}")
                continue
            edges = ", ".join(
                f"{dep.name}:{dep.required_state.value}"
                + (" (all)" if dep.all_replicas else "")
                + (f" (quorum={dep.quorum})" if dep.quorum else "")
                for dep in spec.depends_on
            )
            lines.append(f"{name} <- {edges}")
        return lines
