"""Reusable behavior for the orchestrator's background components."""

from testnet.coordination.mixins.lifecycle_mixin import LifecycleMixin, LifecycleState

__all__ = [
    "LifecycleMixin",
    "LifecycleState",
]
