"""Tests for instance.py: lifecycle state machine and successors."""

from __future__ import annotations

import pytest

from testnet.coordination.dependency_gate import GateTicket
from testnet.coordination.enums import InstanceState
from testnet.coordination.instance import ProcessInstance
from testnet.utils.exceptions import GateNotSatisfiedError, InvalidTransitionError

from tests.conftest import make_spec


@pytest.fixture
def instance() -> ProcessInstance:
    return ProcessInstance(spec=make_spec("peer", replicas=3), replica=2)


def start(instance: ProcessInstance) -> None:
    instance.transition(InstanceState.STARTING, ticket=GateTicket(instance.instance_id))


class TestIdentity:
    def test_names(self, instance):
        assert instance.name == "peer-2"
        assert instance.instance_id == "peer-2#1"
        assert instance.slot == ("peer", 2)
        assert instance.state == InstanceState.PENDING

    def test_successor_is_fresh_pending_instance(self, instance):
        start(instance)
        instance.transition(InstanceState.EXITED, exit_code=1)

        successor = instance.successor()

        assert successor.instance_id == "peer-2#2"
        assert successor.name == instance.name
        assert successor.state == InstanceState.PENDING
        assert successor.exit_code is None
        assert successor.history == []


class TestTransitions:
    def test_starting_requires_ticket(self, instance):
        with pytest.raises(GateNotSatisfiedError):
            instance.transition(InstanceState.STARTING)

    def test_starting_rejects_ticket_for_other_instance(self, instance):
        with pytest.raises(GateNotSatisfiedError):
            instance.transition(InstanceState.STARTING, ticket=GateTicket("peer-1#1"))

    def test_full_lifecycle(self, instance):
        start(instance)
        instance.transition(InstanceState.RUNNING)
        instance.transition(InstanceState.HEALTHY)
        instance.transition(InstanceState.UNHEALTHY)
        instance.transition(InstanceState.HEALTHY)
        instance.transition(InstanceState.EXITED, exit_code=137, reason="killed")
        instance.transition(InstanceState.FAILED)

        assert instance.exit_code == 137
        assert [t.to_state for t in instance.history] == [
            InstanceState.STARTING,
            InstanceState.RUNNING,
            InstanceState.HEALTHY,
            InstanceState.UNHEALTHY,
            InstanceState.HEALTHY,
            InstanceState.EXITED,
            InstanceState.FAILED,
        ]
        assert instance.history[5].reason == "killed"

    @pytest.mark.parametrize(
        "target",
        [InstanceState.RUNNING, InstanceState.HEALTHY, InstanceState.EXITED, InstanceState.FAILED],
    )
    def test_pending_only_moves_to_starting(self, instance, target):
        with pytest.raises(InvalidTransitionError):
            instance.transition(target)

    def test_failed_is_terminal(self, instance):
        start(instance)
        instance.transition(InstanceState.EXITED, exit_code=-1)
        instance.transition(InstanceState.FAILED)
        for target in InstanceState:
            assert not instance.can_transition(target)

    def test_exited_cannot_come_back(self, instance):
        start(instance)
        instance.transition(InstanceState.RUNNING)
        instance.transition(InstanceState.EXITED, exit_code=0)
        with pytest.raises(InvalidTransitionError):
            instance.transition(InstanceState.RUNNING)
        assert instance.completed_successfully

    def test_attach_handle_only_while_starting(self, instance):
        with pytest.raises(InvalidTransitionError):
            instance.attach_handle(object())


class TestSerialization:
    def test_to_dict(self, instance):
        data = instance.to_dict()
        assert data["process"] == "peer"
        assert data["state"] == "pending"
        assert data["generation"] == 1
