"""Tests for health_probes.py: command and HTTP status probes."""

from __future__ import annotations

import asyncio
import sys
from contextlib import asynccontextmanager

import pytest
from aiohttp import web

from testnet.coordination.async_process_pool import AsyncProcessPool, PoolConfig
from testnet.coordination.health_probes import (
    CommandProbe,
    DefaultProbeFactory,
    HttpStatusProbe,
    ProbeOutcome,
    build_probe,
)
from testnet.coordination.instance import ProcessInstance
from testnet.coordination.process_spec import HealthProbeSpec

from tests.conftest import make_spec


@asynccontextmanager
async def status_server(handler):
    """Serve ``handler`` at ``/status`` on an ephemeral local port."""
    app = web.Application()
    app.router.add_get("/status", handler)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    host, port = runner.addresses[0][:2]
    try:
        yield f"http://{host}:{port}/status"
    finally:
        await runner.cleanup()


# =============================================================================
# ProbeOutcome Tests
# =============================================================================


class TestProbeOutcome:
    def test_success(self):
        outcome = ProbeOutcome.success(0.2)
        assert outcome.healthy
        assert outcome.duration_seconds == 0.2

    def test_failure(self):
        outcome = ProbeOutcome.failure("connection refused", timed_out=True)
        assert not outcome.healthy
        assert outcome.timed_out
        assert outcome.detail == "connection refused"


# =============================================================================
# CommandProbe Tests
# =============================================================================


class TestCommandProbe:
    @pytest.mark.asyncio
    async def test_exit_zero_is_healthy(self):
        probe = CommandProbe([sys.executable, "-c", "pass"], timeout=10.0, pool=AsyncProcessPool())
        assert (await probe.check()).healthy

    @pytest.mark.asyncio
    async def test_nonzero_exit_reports_last_output_line(self):
        probe = CommandProbe(
            [sys.executable, "-c", "import sys; sys.stderr.write('peer not synced\\n'); sys.exit(2)"],
            timeout=10.0,
            pool=AsyncProcessPool(),
        )
        outcome = await probe.check()
        assert not outcome.healthy
        assert outcome.detail == "exit code 2: peer not synced"

    @pytest.mark.asyncio
    async def test_timeout_is_failure(self):
        probe = CommandProbe(
            [sys.executable, "-c", "import time; time.sleep(30)"],
            timeout=0.3,
            pool=AsyncProcessPool(PoolConfig(kill_timeout=0.5)),
        )
        outcome = await probe.check()
        assert not outcome.healthy
        assert outcome.timed_out

    @pytest.mark.asyncio
    async def test_missing_binary_is_failure(self):
        probe = CommandProbe(["/nonexistent/topos", "tce", "status"], timeout=1.0, pool=AsyncProcessPool())
        outcome = await probe.check()
        assert not outcome.healthy
        assert outcome.detail.startswith("exit code 127")
        assert not outcome.timed_out

    @pytest.mark.asyncio
    async def test_env_is_passed(self):
        probe = CommandProbe(
            [sys.executable, "-c", "import os, sys; sys.exit(0 if os.environ['NODE'] == 'peer-1' else 1)"],
            timeout=10.0,
            pool=AsyncProcessPool(),
            env={"NODE": "peer-1"},
        )
        assert (await probe.check()).healthy


# =============================================================================
# HttpStatusProbe Tests
# =============================================================================


class TestHttpStatusProbe:
    @pytest.mark.asyncio
    async def test_healthy_field_true(self):
        async def handler(request):
            return web.json_response({"healthy": True, "peers": 14})

        async with status_server(handler) as url:
            assert (await HttpStatusProbe(url, timeout=5.0).check()).healthy

    @pytest.mark.asyncio
    async def test_healthy_field_false(self):
        async def handler(request):
            return web.json_response({"healthy": False})

        async with status_server(handler) as url:
            outcome = await HttpStatusProbe(url, timeout=5.0).check()
        assert not outcome.healthy
        assert "unhealthy" in outcome.detail

    @pytest.mark.asyncio
    async def test_missing_field_is_failure(self):
        async def handler(request):
            return web.json_response({"status": "ok"})

        async with status_server(handler) as url:
            outcome = await HttpStatusProbe(url, timeout=5.0).check()
        assert not outcome.healthy
        assert "no 'healthy' field" in outcome.detail

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        async def handler(request):
            return web.Response(status=503)

        async with status_server(handler) as url:
            outcome = await HttpStatusProbe(url, timeout=5.0).check()
        assert outcome.detail == "HTTP 503"

    @pytest.mark.asyncio
    async def test_malformed_body(self):
        async def handler(request):
            return web.Response(text="not json")

        async with status_server(handler) as url:
            outcome = await HttpStatusProbe(url, timeout=5.0).check()
        assert not outcome.healthy
        assert outcome.detail.startswith("malformed status")

    @pytest.mark.asyncio
    async def test_slow_endpoint_times_out(self):
        async def handler(request):
            await asyncio.sleep(1.0)
            return web.json_response({"healthy": True})

        async with status_server(handler) as url:
            outcome = await HttpStatusProbe(url, timeout=0.2).check()
        assert not outcome.healthy
        assert outcome.timed_out

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        outcome = await HttpStatusProbe("http://127.0.0.1:1/status", timeout=2.0).check()
        assert not outcome.healthy
        assert outcome.detail.startswith("request failed")


# =============================================================================
# DefaultProbeFactory Tests
# =============================================================================


class TestDefaultProbeFactory:
    def test_builds_command_probe_with_instance_env(self):
        spec = make_spec("peer", replicas=2, healthcheck=HealthProbeSpec(command=("status", "{instance}")))
        instance = ProcessInstance(spec, replica=2)
        probe = DefaultProbeFactory(AsyncProcessPool())(instance.probe, instance)
        assert isinstance(probe, CommandProbe)
        assert probe.command == ["status", "peer-2"]

    def test_builds_http_probe(self):
        spec = make_spec("boot", healthcheck=HealthProbeSpec(http_url="http://localhost:1340/status", timeout=2.0))
        instance = ProcessInstance(spec)
        probe = DefaultProbeFactory(AsyncProcessPool())(instance.probe, instance)
        assert isinstance(probe, HttpStatusProbe)
        assert probe.timeout == 2.0

    def test_build_probe_without_factory(self):
        spec = make_spec("sync", healthcheck=HealthProbeSpec(command=("status",), timeout=1.5))
        instance = ProcessInstance(spec)
        probe = build_probe(instance.probe, instance)
        assert isinstance(probe, CommandProbe)
        assert probe.command == ["status"]

    def test_factory_shares_its_pool(self):
        pool = AsyncProcessPool()
        spec = make_spec("peer", replicas=2, healthcheck=HealthProbeSpec(command=("status",)))
        factory = DefaultProbeFactory(pool)
        probes = [factory(i.probe, i) for i in (ProcessInstance(spec, replica=1), ProcessInstance(spec, replica=2))]
        assert all(p._pool is pool for p in probes)
