"""Event bus for notifications and session signals.

Usage:
    bus = EventBus()

    async def on_session_ended(event):
        redirect_to_sign_in(event.data["reason"])

    bus.subscribe(SESSION_ENDED, on_session_ended)
    await bus.publish(SESSION_ENDED, {"reason": "token expired"})
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


@dataclass
class Event:
    """Event data container."""

    name: str
    data: dict[str, Any]
    source: str | None = None


class EventBus:
    """Publish/subscribe hub owned by one session.

    Each session builds its own bus so independent sessions (and tests) never
    observe each other's events.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callable]] = {}

    def subscribe(self, event_name: str, handler: Callable) -> None:
        """Subscribe a sync or async handler to an event name."""
        self._subscribers.setdefault(event_name, []).append(handler)
        LOGGER.debug(
            "events.subscribed",
            extra={"event": "events.subscribed", "event_name": event_name},
        )

    def unsubscribe(self, event_name: str, handler: Callable) -> None:
        if event_name in self._subscribers:
            try:
                self._subscribers[event_name].remove(handler)
            except ValueError:
                pass

    async def publish(
        self, event_name: str, data: dict[str, Any], source: str | None = None
    ) -> None:
        """Publish an event to all subscribers.

        A failing handler is logged and does not stop delivery to the others.
        """
        event = Event(name=event_name, data=data, source=source)
        handlers = list(self._subscribers.get(event_name, []))

        if not handlers:
            LOGGER.debug(
                "events.unhandled",
                extra={"event": "events.unhandled", "event_name": event_name},
            )
            return

        for handler in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                LOGGER.error(
                    "events.handler.failed",
                    extra={
                        "event": "events.handler.failed",
                        "event_name": event_name,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )

    def clear(self, event_name: str | None = None) -> None:
        if event_name:
            self._subscribers.pop(event_name, None)
        else:
            self._subscribers.clear()
