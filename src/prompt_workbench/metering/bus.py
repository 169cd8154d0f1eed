"""Minimal in-process publish/subscribe bus for domain events.

Publishers do not know who listens. A failing subscriber is logged and
skipped; it never propagates into the publisher, so a metering problem
cannot undo the action that triggered it.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

EventT = TypeVar("EventT")
Handler = Callable[[Any], Awaitable[None]]


class EventBus:
    """Dispatch events to handlers registered for their exact type."""

    def __init__(self) -> None:
        self._handlers: defaultdict[type, list[Handler]] = defaultdict(list)

    def subscribe(
        self,
        event_type: type[EventT],
        handler: Callable[[EventT], Awaitable[None]],
    ) -> None:
        self._handlers[event_type].append(handler)

    def handlers_for(self, event_type: type) -> list[Handler]:
        return list(self._handlers.get(event_type, []))

    async def publish(self, event: object) -> None:
        """Deliver *event* to each subscriber in registration order."""
        for handler in self.handlers_for(type(event)):
            try:
                await handler(event)
            except Exception:
                structlog.get_logger().error(
                    "event_handler_failed",
                    event_type=type(event).__name__,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    exc_info=True,
                )
