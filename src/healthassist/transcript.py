"""Reactive transcript state for the active conversation."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
import logging

from .models import Message

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatState:
    """Immutable view of the active conversation handed to the view layer."""

    conversation_id: str | None
    messages: tuple[Message, ...]
    is_loading: bool
    error: str | None


StateListener = Callable[[ChatState], None]


class Transcript:
    """Messages, loading flag and last error of the current conversation.

    Switching conversations goes through ``reset``: the previous transcript is
    discarded entirely, never diffed.
    """

    def __init__(self) -> None:
        self._conversation_id: str | None = None
        self._messages: list[Message] = []
        self._is_loading = False
        self._error: str | None = None
        self._listeners: list[StateListener] = []

    @property
    def conversation_id(self) -> str | None:
        return self._conversation_id

    @property
    def messages(self) -> list[Message]:
        """Return a shallow copy of the ordered message list."""
        return list(self._messages)

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def error(self) -> str | None:
        return self._error

    def is_current(self, conversation_id: str) -> bool:
        return self._conversation_id == conversation_id

    def snapshot(self) -> ChatState:
        return ChatState(
            conversation_id=self._conversation_id,
            messages=tuple(m.model_copy(deep=True) for m in self._messages),
            is_loading=self._is_loading,
            error=self._error,
        )

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener called with a snapshot after every change.

        Returns a callable that removes the listener.
        """
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def reset(
        self,
        conversation_id: str | None,
        messages: Iterable[Message] = (),
        *,
        is_loading: bool = False,
    ) -> None:
        """Replace the whole state with the given conversation's messages."""
        self._conversation_id = conversation_id
        self._messages = list(messages)
        self._is_loading = is_loading
        self._error = None
        self._notify()

    def find(self, client_id: str) -> Message | None:
        for message in self._messages:
            if message.client_id == client_id:
                return message
        return None

    def append(self, message: Message) -> bool:
        """Append a message at the end of the transcript.

        A confirmed message whose ``server_id`` is already present (for example
        after a reload raced with the pipeline) is not appended twice.
        """
        if self._has_server_copy(message):
            return False
        self._messages.append(message)
        self._notify()
        return True

    def reconcile(self, client_id: str, server_id: str | None) -> bool:
        """Attach the store-assigned id to an optimistic message."""
        message = self.find(client_id)
        if message is None:
            return False
        message.server_id = server_id
        self._notify()
        return True

    def replace_content(self, client_id: str, content: str) -> bool:
        message = self.find(client_id)
        if message is None:
            return False
        message.content = content
        self._notify()
        return True

    def start_turn(self, message: Message) -> None:
        """Optimistically append a user turn and enter the loading state."""
        self._messages.append(message)
        self._is_loading = True
        self._error = None
        self._notify()

    def finish_turn(self, reply: Message | None = None, error: str | None = None) -> None:
        """Leave the loading state, appending the reply and/or recording an error."""
        if reply is not None and not self._has_server_copy(reply):
            self._messages.append(reply)
        self._is_loading = False
        self._error = error
        self._notify()

    def set_loading(self, is_loading: bool) -> None:
        if self._is_loading != is_loading:
            self._is_loading = is_loading
            self._notify()

    def set_error(self, error: str | None) -> None:
        self._error = error
        self._notify()

    def clear_error(self) -> None:
        if self._error is not None:
            self._error = None
            self._notify()

    def _has_server_copy(self, message: Message) -> bool:
        return message.server_id is not None and any(
            m.server_id == message.server_id for m in self._messages
        )

    def responder_context(self) -> list[dict[str, str]]:
        """Map the transcript to ``{role, content}`` pairs; ids and files are dropped."""
        return [message.to_responder_payload() for message in self._messages]

    def _notify(self) -> None:
        if not self._listeners:
            return
        state = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as exc:
                LOGGER.error(
                    "transcript.listener.failed",
                    extra={
                        "event": "transcript.listener.failed",
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
