"""In-process cluster event bus.

The controller publishes every lifecycle transition and every named
cluster-health event here. The health monitor and remediator subscribe to
the events they react to; external callers (CLI, CI harness, tests) may
subscribe too.

Handler errors are logged and isolated: one misbehaving subscriber never
prevents delivery to the others or stalls the controller.

Usage:
    from testnet.coordination.events import ClusterEventBus, ClusterEventType

    bus = ClusterEventBus()
    sub_id = bus.subscribe(ClusterEventType.INSTANCE_FAILED, on_failed)
    await bus.publish(ClusterEvent(ClusterEventType.INSTANCE_FAILED, {...}))
    bus.unsubscribe(sub_id)
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Union

from testnet.coordination.enums import ClusterEventType

logger = logging.getLogger(__name__)

EventHandler = Callable[["ClusterEvent"], Union[None, Awaitable[None]]]

# Subscribe to this to receive every event type
ALL_EVENTS = "*"


@dataclass(frozen=True)
class ClusterEvent:
    """A named event with a flat payload."""

    event_type: ClusterEventType
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def instance_id(self) -> str | None:
        return self.payload.get("instance_id")

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            **self.payload,
        }


class ClusterEventBus:
    """Publish/subscribe with sync or async handlers."""

    def __init__(self, history_size: int = 1000):
        self._handlers: dict[str, dict[str, EventHandler]] = {}
        self._ids = itertools.count(1)
        self._history: deque[ClusterEvent] = deque(maxlen=history_size)
        self._handler_errors = 0

    def subscribe(self, event_type: ClusterEventType | str, handler: EventHandler) -> str:
        """Register ``handler``; returns a subscription id."""
        key = event_type.value if isinstance(event_type, ClusterEventType) else event_type
        sub_id = f"sub-{next(self._ids)}"
        self._handlers.setdefault(key, {})[sub_id] = handler
        return sub_id

    def unsubscribe(self, sub_id: str) -> bool:
        for handlers in self._handlers.values():
            if handlers.pop(sub_id, None) is not None:
                return True
        return False

    async def publish(self, event: ClusterEvent) -> None:
        """Deliver ``event`` to its subscribers, then to wildcard subscribers."""
        self._history.append(event)
        handlers = list(self._handlers.get(event.event_type.value, {}).values())
        handlers += list(self._handlers.get(ALL_EVENTS, {}).values())

        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._handler_errors += 1
                logger.error(
                    f"[ClusterEventBus] Handler {getattr(handler, '__qualname__', handler)} "
                    f"failed on {event.event_type.value}: {e}",
                    exc_info=True,
                )

    def history(
        self,
        event_type: ClusterEventType | None = None,
        instance_id: str | None = None,
    ) -> list[ClusterEvent]:
        """Recent events, optionally filtered."""
        return [
            event
            for event in self._history
            if (event_type is None or event.event_type == event_type)
            and (instance_id is None or event.instance_id == instance_id)
        ]

    def get_stats(self) -> dict[str, Any]:
        return {
            "subscriptions": sum(len(h) for h in self._handlers.values()),
            "events_recorded": len(self._history),
            "handler_errors": self._handler_errors,
        }
