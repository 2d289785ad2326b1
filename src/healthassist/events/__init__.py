"""Publish/subscribe channel between the conversation core and its view layer."""

from .bus import Event, EventBus
from .domain import (
    CONVERSATION_CREATED,
    CONVERSATION_DELETED,
    NOTIFICATION,
    SESSION_ENDED,
    Notification,
)

__all__ = [
    "CONVERSATION_CREATED",
    "CONVERSATION_DELETED",
    "Event",
    "EventBus",
    "NOTIFICATION",
    "Notification",
    "SESSION_ENDED",
]
