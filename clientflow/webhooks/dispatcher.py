"""Webhook event dispatcher — routes verified events to their handler.

Unknown event types are acknowledged as a successful no-op so the
provider stops redelivering them. Handler exceptions propagate to the
processor, which turns them into dead letters.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from clientflow.webhooks.models import HandlerResult, InboundEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[InboundEvent], Awaitable[HandlerResult]]


class EventDispatcher:
    """Registry mapping event type -> async handler."""

    def __init__(self) -> None:
        self._handlers: dict[str, EventHandler] = {}

    def register(self, event_type: str, handler: EventHandler) -> None:
        if event_type in self._handlers:
            raise ValueError(f"Handler already registered for {event_type}")
        self._handlers[event_type] = handler

    def handles(self, event_type: str) -> bool:
        return event_type in self._handlers

    @property
    def event_types(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, event: InboundEvent) -> HandlerResult:
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info("Unhandled webhook event type: %s (%s)", event.type, event.id)
            return HandlerResult(success=True, message=f"Event type {event.type} not handled")

        logger.info("Dispatching webhook %s (%s)", event.type, event.id)
        return await handler(event)
