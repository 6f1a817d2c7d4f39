"""Tests for topology.py: YAML topology loading and validation."""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from testnet.config.topology import load_topology, parse_topology
from testnet.coordination.base_config import OrchestratorConfig
from testnet.coordination.enums import ProcessRole, RequiredState, RestartPolicy
from testnet.utils.exceptions import ConfigError

BUNDLED_TOPOLOGY = Path(__file__).resolve().parents[3] / "topologies" / "testnet.yaml"


def write_topology(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "testnet.yaml"
    path.write_text(textwrap.dedent(text))
    return path


# =============================================================================
# Bundled Topology
# =============================================================================


class TestBundledTopology:
    def test_default_profile_excludes_check(self):
        topology = load_topology(BUNDLED_TOPOLOGY)
        assert "check" not in topology.graph
        assert topology.excluded == ("check",)
        assert topology.instance_count == 1 + 1 + 14 + 1 + 1

    def test_ci_profile_includes_check(self):
        topology = load_topology(BUNDLED_TOPOLOGY, profiles=["CI"])
        check = topology.spec("check")
        assert check.role == ProcessRole.CHECKER
        assert check.depends_on[1].quorum == 3
        assert check.working_dir == BUNDLED_TOPOLOGY.parent

    def test_startup_order(self):
        order = load_topology(BUNDLED_TOPOLOGY, profiles=["CI"]).graph.startup_order()
        assert order[0] == "init"
        assert order.index("boot") < order.index("peer") < order.index("spammer")
        assert order.index("peer") < order.index("check")

    def test_env_files_and_log_level(self):
        peer = load_topology(BUNDLED_TOPOLOGY).spec("peer")
        env = peer.build_environment(3)
        assert env["TOPOS_LOG_FORMAT"] == "json"
        assert env["TCE_ECHO_SAMPLE_SIZE"] == "8"
        assert env["RUST_LOG"].startswith("topos=debug")
        assert peer.render_command(3)[4] == "peer-3"

    def test_key_bundle_sources_resolved(self):
        init = load_topology(BUNDLED_TOPOLOGY).spec("init")
        assert init.is_materializer
        names = [name for name, _ in init.key_bundle.sources]
        assert names == ["libp2p_keys.json", "validator_bls_keys.json", "validator_keys.json"]
        assert init.key_bundle.sources[0][1] == BUNDLED_TOPOLOGY.parent / "keys" / "libp2p_keys.json"
        assert init.key_bundle.mode == 0o644

    def test_orchestrator_section(self):
        topology = load_topology(BUNDLED_TOPOLOGY)
        config = topology.build_config(OrchestratorConfig())
        assert config.restart_cooldown_seconds == 30.0
        assert config.log_dir == "/tmp/testnet/logs"


# =============================================================================
# Field Parsing
# =============================================================================


class TestFieldParsing:
    def test_minimal_process(self, tmp_path):
        topology = load_topology(write_topology(tmp_path, """
            processes:
              boot:
                command: [topos, node, up]
        """))
        boot = topology.spec("boot")
        assert boot.role == ProcessRole.SUPPORT
        assert boot.command == ("topos", "node", "up")
        assert boot.restart == RestartPolicy.NEVER
        assert topology.source == tmp_path / "testnet.yaml"

    def test_depends_on_forms(self, tmp_path):
        topology = load_topology(write_topology(tmp_path, """
            processes:
              init: {command: init}
              boot:
                command: boot
                healthcheck: {test: "true"}
              peer:
                command: peer
                replicas: 3
                healthcheck: {test: "true"}
                depends_on: [boot]
              sync:
                command: sync
                depends_on:
                  init: service_completed_successfully
                  boot:
              spammer:
                command: spam
                depends_on:
                  peer: {condition: healthy, all_replicas: true}
        """))
        assert topology.spec("peer").depends_on[0].required_state == RequiredState.STARTED
        sync_deps = topology.spec("sync").depends_on
        assert [d.required_state for d in sync_deps] == [RequiredState.COMPLETED, RequiredState.STARTED]
        edge = topology.spec("spammer").depends_on[0]
        assert edge.required_state == RequiredState.HEALTHY
        assert edge.required_count(3) == 3

    def test_healthcheck_compose_syntax(self, tmp_path):
        topology = load_topology(write_topology(tmp_path, """
            processes:
              boot:
                command: boot
                healthcheck:
                  test: ["CMD-SHELL", "topos tce status || exit 1"]
                  interval: 500ms
                  timeout: 2m
                  retries: 5
                  start_period: 1m
              peer:
                command: peer
                healthcheck:
                  test: ["CMD", "topos", "tce", "status"]
              sync:
                command: sync
                healthcheck:
                  http: http://localhost:1340/status
                  interval: 10
        """))
        boot_probe = topology.spec("boot").healthcheck
        assert boot_probe.command == ("sh", "-c", "topos tce status || exit 1")
        assert boot_probe.interval == 0.5
        assert boot_probe.timeout == 30.0
        assert boot_probe.retries == 5
        assert boot_probe.start_delay == 60.0
        assert topology.spec("peer").healthcheck.command == ("topos", "tce", "status")
        sync_probe = topology.spec("sync").healthcheck
        assert sync_probe.http_url == "http://localhost:1340/status"
        assert sync_probe.interval == 10.0

    def test_environment_overrides_env_file(self, tmp_path):
        (tmp_path / "node.env").write_text("RUST_LOG=info\nTCE_LOCAL_KS=100\n")
        topology = load_topology(write_topology(tmp_path, """
            processes:
              boot:
                command: boot
                env_file: node.env
                environment:
                  - RUST_LOG=debug
                  - EMPTY=
        """))
        env = topology.spec("boot").environment
        assert env == {"RUST_LOG": "debug", "TCE_LOCAL_KS": "100", "EMPTY": ""}

    def test_key_bundle_list_sources(self, tmp_path):
        topology = load_topology(write_topology(tmp_path, """
            processes:
              init:
                key_bundle:
                  target_dir: shared
                  sources: [keys/a.json, keys/b.json]
                  mode: 0o600
                  marker: .done
        """))
        bundle = topology.spec("init").key_bundle
        assert [name for name, _ in bundle.sources] == ["a.json", "b.json"]
        assert bundle.target_dir == tmp_path / "shared"
        assert bundle.marker_path == tmp_path / "shared" / ".done"
        assert bundle.mode == 0o600

    def test_completion_marker_resolved(self, tmp_path):
        topology = load_topology(write_topology(tmp_path, """
            processes:
              genesis:
                command: make-genesis
                completion_marker: out/.genesis-ready
        """))
        assert topology.spec("genesis").effective_completion_marker == tmp_path / "out" / ".genesis-ready"


# =============================================================================
# Profiles
# =============================================================================


class TestProfiles:
    DOCUMENT = {
        "processes": {
            "boot": {"command": "boot", "healthcheck": {"test": "true"}},
            "check": {"command": "check", "role": "checker", "profiles": ["CI"], "depends_on": {"boot": "healthy"}},
        }
    }

    def test_excluded_without_profile(self, tmp_path):
        topology = parse_topology(self.DOCUMENT, tmp_path)
        assert [s.name for s in topology.specs] == ["boot"]

    def test_included_with_profile(self, tmp_path):
        topology = parse_topology(self.DOCUMENT, tmp_path, profiles=["CI"])
        assert [s.name for s in topology.specs] == ["boot", "check"]

    def test_depending_on_excluded_process(self, tmp_path):
        document = {
            "processes": {
                "boot": {"command": "boot", "profiles": ["full"]},
                "peer": {"command": "peer", "depends_on": ["boot"]},
            }
        }
        with pytest.raises(ConfigError, match="no active profile enables"):
            parse_topology(document, tmp_path)


# =============================================================================
# Errors
# =============================================================================


class TestErrors:
    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="cannot read topology"):
            load_topology(tmp_path / "missing.yaml")

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("processes: [unclosed\n")
        with pytest.raises(ConfigError, match="malformed topology"):
            load_topology(path)

    @pytest.mark.parametrize(
        "document,message",
        [
            (["not", "a", "mapping"], "must be a mapping"),
            ({"services": {}}, "unknown top-level keys"),
            ({"processes": {}}, "no processes"),
            ({"processes": {"boot": {"command": "x", "image": "topos"}}}, "unknown keys"),
            ({"processes": {"boot": {"command": "x", "role": "validator"}}}, "unknown role"),
            ({"processes": {"boot": {"command": "x", "restart": "sometimes"}}}, "unknown restart policy"),
            ({"processes": {"boot": {"command": "x", "replicas": "many"}}}, "replicas must be an integer"),
            ({"processes": {"boot": {"command": "x", "healthcheck": {"test": "t", "interval": "soon"}}}}, "not a duration"),
            ({"processes": {"boot": {"command": "x", "depends_on": {"init": "service_ready"}}}}, "invalid condition"),
            ({"processes": {"boot": {"command": "x", "depends_on": ["init"]}}}, "unknown process 'init'"),
            ({"processes": {"boot": {"command": "x"}}, "orchestrator": {"restart_budget": 3}}, "unknown orchestrator setting"),
            ({"processes": {"init": {"key_bundle": {"sources": ["a"]}}}}, "target_dir"),
        ],
    )
    def test_invalid_documents(self, tmp_path, document, message):
        with pytest.raises(ConfigError, match=message):
            parse_topology(document, tmp_path)

    def test_missing_env_file(self, tmp_path):
        document = {"processes": {"boot": {"command": "x", "env_file": "missing.env"}}}
        with pytest.raises(ConfigError, match="not found"):
            parse_topology(document, tmp_path)

    def test_cycle_rejected_at_load(self, tmp_path):
        document = {
            "processes": {
                "a": {"command": "a", "depends_on": {"b": "completed"}},
                "b": {"command": "b", "depends_on": {"a": "completed"}},
            }
        }
        with pytest.raises(ConfigError, match="cycle"):
            parse_topology(document, tmp_path)
