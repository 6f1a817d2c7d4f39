"""Tests for liveness_checker.py: target lists, artifact propagation, HTTP transport."""

from __future__ import annotations

import json
import os
from contextlib import asynccontextmanager
from pathlib import Path
from unittest.mock import patch

import aiohttp
import pytest
from aiohttp import web

from testnet.coordination.enums import ClusterEventType
from testnet.coordination.events import ClusterEventBus
from testnet.coordination.liveness_checker import (
    Artifact,
    ClusterLivenessChecker,
    HttpArtifactTransport,
    parse_target_list,
)
from testnet.utils.exceptions import ConfigError, LivenessCheckFailure


class FakeTransport:
    """Targets confirm after a configurable number of polls."""

    def __init__(self, confirm_after: dict[str, int] | None = None, submit_error: Exception | None = None):
        self.confirm_after = confirm_after or {}
        self.submit_error = submit_error
        self.submitted: list[Artifact] = []
        self.polls: dict[str, int] = {}

    async def submit(self, artifact: Artifact) -> None:
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append(artifact)

    async def is_propagated(self, target: str, artifact: Artifact) -> bool:
        assert artifact in self.submitted
        self.polls[target] = self.polls.get(target, 0) + 1
        after = self.confirm_after.get(target)
        if after is None:
            return False
        if after < 0:
            raise aiohttp.ClientConnectionError(f"{target} unreachable")
        return self.polls[target] >= after


# =============================================================================
# Target List Tests
# =============================================================================


class TestParseTargetList:
    def test_plain_literal(self):
        assert parse_target_list("http://peer-1:1340, http://peer-2:1340/\nhttp://peer-3:1340") == [
            "http://peer-1:1340",
            "http://peer-2:1340",
            "http://peer-3:1340",
        ]

    def test_json_file(self, tmp_path: Path):
        path = tmp_path / "peer_nodes.json"
        path.write_text(json.dumps(["http://peer-1:1340", "http://peer-2:1340"]))
        assert parse_target_list(path, "json") == ["http://peer-1:1340", "http://peer-2:1340"]

    def test_defaults_to_env_var(self, tmp_path: Path):
        path = tmp_path / "nodes.txt"
        path.write_text("http://boot:1340\n\n")
        with patch.dict(os.environ, {"TARGET_NODES_PATH": str(path)}):
            assert parse_target_list() == ["http://boot:1340"]

    def test_missing_env_var(self):
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ConfigError, match="TARGET_NODES_PATH"):
                parse_target_list()

    @pytest.mark.parametrize("text", ["not json", '{"a": 1}', "[1, 2]"])
    def test_bad_json(self, text):
        with pytest.raises(ConfigError):
            parse_target_list(text, "json")

    def test_empty_list(self):
        with pytest.raises(ConfigError, match="empty"):
            parse_target_list(" , \n", "plain")

    def test_unknown_format(self):
        with pytest.raises(ConfigError):
            parse_target_list("a", "yaml")


class TestArtifact:
    def test_unique(self):
        a, b = Artifact.create(), Artifact.create()
        assert a.artifact_id != b.artifact_id
        assert a.digest != b.digest
        assert set(a.to_dict()) == {"id", "nonce", "created_at", "digest"}


# =============================================================================
# Checker Tests
# =============================================================================


TARGETS = ["http://peer-1:1340", "http://peer-2:1340", "http://peer-3:1340"]


class TestClusterLivenessChecker:
    @pytest.mark.asyncio
    async def test_passes_when_all_targets_confirm(self):
        transport = FakeTransport({t: 2 for t in TARGETS})
        checker = ClusterLivenessChecker(transport, TARGETS, deadline=5.0, poll_interval=0.01)
        report = await checker.check()
        assert report.passed
        assert report.exit_code == 0
        assert set(report.confirmed) == set(TARGETS)
        assert len(transport.submitted) == 1

    @pytest.mark.asyncio
    async def test_fails_at_deadline(self):
        transport = FakeTransport({TARGETS[0]: 1, TARGETS[1]: 1})
        checker = ClusterLivenessChecker(transport, TARGETS, deadline=0.1, poll_interval=0.02)
        report = await checker.check()
        assert not report.passed
        assert report.exit_code == 1
        assert report.pending == [TARGETS[2]]
        assert "2/3 targets confirmed" in report.summary()

    @pytest.mark.asyncio
    async def test_quorum(self):
        transport = FakeTransport({TARGETS[0]: 1, TARGETS[1]: 1})
        checker = ClusterLivenessChecker(transport, TARGETS, deadline=5.0, poll_interval=0.01, quorum=2)
        report = await checker.check()
        assert report.passed
        assert report.elapsed_seconds < 5.0

    @pytest.mark.asyncio
    async def test_confirmed_targets_are_not_polled_again(self):
        transport = FakeTransport({TARGETS[0]: 1, TARGETS[1]: 3})
        checker = ClusterLivenessChecker(transport, TARGETS[:2], deadline=5.0, poll_interval=0.01)
        await checker.check()
        assert transport.polls[TARGETS[0]] == 1
        assert transport.polls[TARGETS[1]] == 3

    @pytest.mark.asyncio
    async def test_poll_errors_are_recorded(self):
        transport = FakeTransport({TARGETS[0]: -1})
        checker = ClusterLivenessChecker(transport, TARGETS[:1], deadline=0.05, poll_interval=0.01)
        report = await checker.check()
        assert not report.passed
        assert "unreachable" in report.errors[TARGETS[0]]

    @pytest.mark.asyncio
    async def test_submit_failure_ends_check(self):
        transport = FakeTransport(submit_error=aiohttp.ClientConnectionError("refused"))
        checker = ClusterLivenessChecker(transport, TARGETS, deadline=5.0)
        report = await checker.check()
        assert not report.passed
        assert report.submit_error == "refused"
        assert transport.polls == {}

    @pytest.mark.asyncio
    async def test_run_raises_on_failure(self):
        checker = ClusterLivenessChecker(FakeTransport(), TARGETS[:1], deadline=0.05, poll_interval=0.01)
        with pytest.raises(LivenessCheckFailure) as exc_info:
            await checker.run()
        assert exc_info.value.report.exit_code == 1

    @pytest.mark.asyncio
    async def test_publishes_result_event(self):
        bus = ClusterEventBus()
        checker = ClusterLivenessChecker(
            FakeTransport({TARGETS[0]: 1}), TARGETS[:1], deadline=1.0, poll_interval=0.01, bus=bus
        )
        await checker.check()
        events = bus.history(ClusterEventType.LIVENESS_CHECK_PASSED)
        assert len(events) == 1
        assert events[0].payload["passed"] is True

    def test_targets_are_deduplicated(self):
        checker = ClusterLivenessChecker(FakeTransport(), [TARGETS[0], TARGETS[0], TARGETS[1]])
        assert checker.targets == TARGETS[:2]
        assert checker.quorum == 2

    @pytest.mark.parametrize("quorum", [0, 4])
    def test_quorum_bounds(self, quorum):
        with pytest.raises(ConfigError):
            ClusterLivenessChecker(FakeTransport(), TARGETS, quorum=quorum)

    def test_needs_targets(self):
        with pytest.raises(ConfigError):
            ClusterLivenessChecker(FakeTransport(), [])


# =============================================================================
# HttpArtifactTransport Tests
# =============================================================================


@asynccontextmanager
async def artifact_node(accept: bool = True):
    """Node that stores submitted artifacts and serves them back."""
    store: dict[str, dict] = {}

    async def submit(request):
        if not accept:
            return web.Response(status=503, text="not ready")
        body = await request.json()
        store[body["id"]] = body
        return web.json_response({"accepted": True}, status=201)

    async def fetch(request):
        artifact_id = request.match_info["artifact_id"]
        if artifact_id in store:
            return web.json_response(store[artifact_id])
        return web.Response(status=404)

    app = web.Application()
    app.router.add_post("/artifacts", submit)
    app.router.add_get("/artifacts/{artifact_id}", fetch)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    host, port = runner.addresses[0][:2]
    try:
        yield f"http://{host}:{port}"
    finally:
        await runner.cleanup()


class TestHttpArtifactTransport:
    @pytest.mark.asyncio
    async def test_submit_then_propagated(self):
        async with artifact_node() as base:
            async with HttpArtifactTransport(f"{base}/artifacts", request_timeout=5.0) as transport:
                artifact = Artifact.create()
                assert not await transport.is_propagated(base, artifact)
                await transport.submit(artifact)
                assert await transport.is_propagated(base, artifact)

    @pytest.mark.asyncio
    async def test_rejected_submit_raises(self):
        async with artifact_node(accept=False) as base:
            async with HttpArtifactTransport(f"{base}/artifacts", request_timeout=5.0) as transport:
                with pytest.raises(aiohttp.ClientResponseError) as exc_info:
                    await transport.submit(Artifact.create())
        assert exc_info.value.status == 503

    @pytest.mark.asyncio
    async def test_end_to_end_check(self):
        async with artifact_node() as base:
            async with HttpArtifactTransport(f"{base}/artifacts", request_timeout=5.0) as transport:
                checker = ClusterLivenessChecker(transport, [base], deadline=5.0, poll_interval=0.05)
                report = await checker.run()
        assert report.passed
