from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

NOTIFICATION = "notification"
SESSION_ENDED = "session.ended"
CONVERSATION_CREATED = "conversation.created"
CONVERSATION_DELETED = "conversation.deleted"


@dataclass
class Notification:
    """Toast-equivalent message for the view layer."""

    title: str
    description: str
    variant: Literal["default", "destructive"] = "default"
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def as_data(self) -> dict[str, Any]:
        return asdict(self)
