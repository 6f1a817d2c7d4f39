"""Tests for events.py: the cluster event bus."""

from __future__ import annotations

import pytest

from testnet.coordination.enums import ClusterEventType
from testnet.coordination.events import ALL_EVENTS, ClusterEvent, ClusterEventBus


@pytest.fixture
def bus() -> ClusterEventBus:
    return ClusterEventBus(history_size=10)


class TestClusterEventBus:
    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self, bus):
        received = []

        async def on_async(event):
            received.append(("async", event.instance_id))

        bus.subscribe(ClusterEventType.INSTANCE_FAILED, lambda event: received.append(("sync", event.instance_id)))
        bus.subscribe(ClusterEventType.INSTANCE_FAILED, on_async)

        await bus.publish(ClusterEvent(ClusterEventType.INSTANCE_FAILED, {"instance_id": "peer-2#4"}))

        assert received == [("sync", "peer-2#4"), ("async", "peer-2#4")]

    @pytest.mark.asyncio
    async def test_only_matching_type_delivered(self, bus):
        received = []
        bus.subscribe(ClusterEventType.INSTANCE_HEALTHY, received.append)
        await bus.publish(ClusterEvent(ClusterEventType.INSTANCE_UNHEALTHY))
        assert received == []

    @pytest.mark.asyncio
    async def test_wildcard_receives_everything(self, bus):
        received = []
        bus.subscribe(ALL_EVENTS, received.append)
        await bus.publish(ClusterEvent(ClusterEventType.CLUSTER_STARTED))
        await bus.publish(ClusterEvent(ClusterEventType.INSTANCE_EXITED))
        assert [e.event_type for e in received] == [
            ClusterEventType.CLUSTER_STARTED,
            ClusterEventType.INSTANCE_EXITED,
        ]

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self, bus):
        received = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(ClusterEventType.INSTANCE_STUCK, broken)
        bus.subscribe(ClusterEventType.INSTANCE_STUCK, received.append)

        await bus.publish(ClusterEvent(ClusterEventType.INSTANCE_STUCK))

        assert len(received) == 1
        assert bus.get_stats()["handler_errors"] == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self, bus):
        received = []
        sub_id = bus.subscribe(ClusterEventType.INSTANCE_RUNNING, received.append)
        assert bus.unsubscribe(sub_id) is True
        assert bus.unsubscribe(sub_id) is False
        await bus.publish(ClusterEvent(ClusterEventType.INSTANCE_RUNNING))
        assert received == []

    @pytest.mark.asyncio
    async def test_history_filters(self, bus):
        await bus.publish(ClusterEvent(ClusterEventType.INSTANCE_RUNNING, {"instance_id": "boot#1"}))
        await bus.publish(ClusterEvent(ClusterEventType.INSTANCE_RUNNING, {"instance_id": "peer-1#1"}))
        await bus.publish(ClusterEvent(ClusterEventType.INSTANCE_HEALTHY, {"instance_id": "boot#1"}))

        assert len(bus.history()) == 3
        assert len(bus.history(ClusterEventType.INSTANCE_RUNNING)) == 2
        assert len(bus.history(instance_id="boot#1")) == 2

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, bus):
        for _ in range(15):
            await bus.publish(ClusterEvent(ClusterEventType.INSTANCE_RUNNING))
        assert len(bus.history()) == 10

    def test_event_to_dict_flattens_payload(self):
        event = ClusterEvent(ClusterEventType.RESTART_SCHEDULED, {"instance_id": "peer-2#1", "reason": "unhealthy"})
        data = event.to_dict()
        assert data["event_type"] == "restart_scheduled"
        assert data["reason"] == "unhealthy"
