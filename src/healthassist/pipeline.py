"""Send pipeline: one coordinated unit of work per user turn.

Order of a turn:

1. optimistic append of the user message and ``is_loading = True``
   (synchronous, before the first ``await``)
2. persist the user message and reconcile its server id
3. call the responder with the whole transcript as ``{role, content}`` pairs
4. persist the assistant reply, then append it and clear ``is_loading``

A failure at any step clears ``is_loading`` and records a user-facing error;
the user turn stays visible and nothing is retried.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
import logging
from typing import Any

from .events import NOTIFICATION, SESSION_ENDED, EventBus, Notification
from .exceptions import (
    AuthError,
    BusyError,
    NoActiveConversationError,
    NotFoundError,
    ResponderError,
    StoreError,
)
from .models import Attachment, Message, Role, validate_outgoing
from .responder import Responder
from .store import ConversationStore
from .transcript import Transcript

LOGGER = logging.getLogger(__name__)

RESPONDER_ERROR_MESSAGE = "Sorry, I couldn't get a response right now. Please try again."
PERSIST_ERROR_MESSAGE = "Your message could not be saved. Please try again."
REPLY_PERSIST_ERROR_MESSAGE = "The assistant's reply could not be saved."
UNEXPECTED_ERROR_MESSAGE = "Something went wrong. Please try again."


@dataclass
class _Turn:
    """State carried from the synchronous start of a send to its completion."""

    conversation_id: str
    user_message: Message
    context: list[dict[str, str]]


class SendPipeline:
    """Runs user turns against the transcript's current conversation.

    At most one send may be in flight per conversation; a second one is
    rejected with ``BusyError``. Each turn is bound to the conversation it
    started on: if the user switches away before it completes, the reply is
    still persisted to that conversation but not written into the transcript
    now on screen.
    """

    def __init__(
        self,
        store: ConversationStore,
        responder: Responder,
        transcript: Transcript,
        bus: EventBus | None = None,
        *,
        error_message: str = RESPONDER_ERROR_MESSAGE,
    ) -> None:
        self.store = store
        self.responder = responder
        self.transcript = transcript
        self.bus = bus or EventBus()
        self.error_message = error_message
        self._in_flight: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    def is_busy(self, conversation_id: str) -> bool:
        return conversation_id in self._in_flight

    async def send(
        self, content: str, attachments: Sequence[Attachment] = ()
    ) -> None:
        """Send one user turn and wait for the whole round trip.

        Raises:
            NoActiveConversationError: there is no current conversation
            BusyError: a send is already in flight for this conversation
            ValueError: no content and no attachments
        """
        turn = self._begin(content, attachments)
        await self._complete(turn)

    def dispatch(
        self, content: str, attachments: Sequence[Attachment] = ()
    ) -> asyncio.Task[None]:
        """Start a send in the background and return its task.

        The optimistic append happens before this method returns; precondition
        errors are raised here rather than inside the task.
        """
        turn = self._begin(content, attachments)
        task = asyncio.create_task(self._complete(turn))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(self._log_task_exception)
        return task

    async def aclose(self) -> None:
        """Wait for background sends to finish."""
        pending = [task for task in self._tasks if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _begin(self, content: str, attachments: Sequence[Attachment]) -> _Turn:
        conversation_id = self.transcript.conversation_id
        if conversation_id is None:
            raise NoActiveConversationError("Start a consultation before sending.")
        if conversation_id in self._in_flight:
            raise BusyError("Please wait for the current reply.")
        normalized = validate_outgoing(content, attachments)

        user_message = Message(
            conversation_id=conversation_id,
            role=Role.USER,
            content=normalized,
            attachments=list(attachments),
        )
        self._in_flight.add(conversation_id)
        self.transcript.start_turn(user_message)
        LOGGER.info(
            "pipeline.turn.started",
            extra={
                "event": "pipeline.turn.started",
                "conversation_id": conversation_id,
                "client_id": user_message.client_id,
                "attachments": len(user_message.attachments),
            },
        )
        return _Turn(
            conversation_id=conversation_id,
            user_message=user_message,
            context=self.transcript.responder_context(),
        )

    async def _complete(self, turn: _Turn) -> None:
        try:
            await self._run(turn)
        except asyncio.CancelledError:
            if self.transcript.is_current(turn.conversation_id):
                self.transcript.finish_turn(error=UNEXPECTED_ERROR_MESSAGE)
            raise
        except AuthError as exc:
            await self._fail(turn, str(exc))
            await self.bus.publish(
                SESSION_ENDED, {"reason": str(exc)}, source="pipeline"
            )
        except Exception as exc:
            LOGGER.exception(
                "pipeline.turn.crashed",
                extra={
                    "event": "pipeline.turn.crashed",
                    "conversation_id": turn.conversation_id,
                    "error_type": type(exc).__name__,
                },
            )
            await self._fail(turn, UNEXPECTED_ERROR_MESSAGE)
        finally:
            self._in_flight.discard(turn.conversation_id)

    async def _run(self, turn: _Turn) -> None:
        conversation_id = turn.conversation_id
        user_message = turn.user_message

        try:
            stored = await self.store.append_message(
                conversation_id, Role.USER, user_message.content
            )
        except StoreError as exc:
            LOGGER.warning(
                "pipeline.persist.failed",
                extra={
                    "event": "pipeline.persist.failed",
                    "conversation_id": conversation_id,
                    "error": str(exc),
                },
            )
            await self._fail(turn, PERSIST_ERROR_MESSAGE)
            return

        if self.transcript.is_current(conversation_id):
            self.transcript.reconcile(user_message.client_id, stored.server_id)
        else:
            user_message.server_id = stored.server_id
        await self._link_attachments(user_message, stored.server_id)

        try:
            reply = await self.responder.reply(turn.context)
        except ResponderError as exc:
            LOGGER.warning(
                "pipeline.responder.failed",
                extra={
                    "event": "pipeline.responder.failed",
                    "conversation_id": conversation_id,
                    "reason": exc.reason,
                    "error": str(exc),
                },
            )
            await self._fail(turn, self.error_message)
            return

        error: str | None = None
        try:
            assistant_message = await self.store.append_message(
                conversation_id, Role.ASSISTANT, reply
            )
        except StoreError as exc:
            # Show the reply anyway; it will be missing after a reload.
            LOGGER.warning(
                "pipeline.reply_persist.failed",
                extra={
                    "event": "pipeline.reply_persist.failed",
                    "conversation_id": conversation_id,
                    "error": str(exc),
                },
            )
            assistant_message = Message(
                conversation_id=conversation_id, role=Role.ASSISTANT, content=reply
            )
            error = REPLY_PERSIST_ERROR_MESSAGE

        if not self.transcript.is_current(conversation_id):
            LOGGER.info(
                "pipeline.turn.discarded",
                extra={
                    "event": "pipeline.turn.discarded",
                    "conversation_id": conversation_id,
                    "current_conversation_id": self.transcript.conversation_id,
                },
            )
            return

        self.transcript.finish_turn(assistant_message, error=error)
        LOGGER.info(
            "pipeline.turn.completed",
            extra={
                "event": "pipeline.turn.completed",
                "conversation_id": conversation_id,
                "message_id": assistant_message.server_id,
            },
        )

    async def _link_attachments(self, message: Message, server_id: str | None) -> None:
        ids = [a.id for a in message.attachments if a.id]
        if not ids or server_id is None:
            return
        try:
            await self.store.link_attachments(ids, server_id)
        except StoreError as exc:
            LOGGER.warning(
                "pipeline.attachments.link_failed",
                extra={
                    "event": "pipeline.attachments.link_failed",
                    "message_id": server_id,
                    "error": str(exc),
                },
            )
            await self._notify("Attachments could not be linked to your message.")
            return
        for attachment in message.attachments:
            if attachment.id:
                attachment.message_id = server_id

    async def _fail(self, turn: _Turn, error: str) -> None:
        if self.transcript.is_current(turn.conversation_id):
            self.transcript.finish_turn(error=error)
        else:
            await self._notify(error)

    async def _notify(self, description: str) -> None:
        notification = Notification(
            title="Error", description=description, variant="destructive"
        )
        await self.bus.publish(NOTIFICATION, notification.as_data(), source="pipeline")

    async def edit_message(self, client_id: str, new_content: str) -> bool:
        """Replace the content of a persisted user message.

        Role, ids and position are unchanged. Returns False when the store
        update failed; the failure is recorded as the transcript error.

        Raises:
            NotFoundError: the message is not in the current transcript
            ValueError: the message is not an editable user turn, or the new
                content is blank
        """
        message = self.transcript.find(client_id)
        if message is None:
            raise NotFoundError(f"Message {client_id} is not in this conversation.")
        if message.role is not Role.USER:
            raise ValueError("Only user messages can be edited.")
        if message.server_id is None:
            raise ValueError("The message has not been saved yet.")
        normalized = new_content.strip()
        if not normalized:
            raise ValueError("Message content must not be empty.")

        try:
            await self.store.update_message_content(message.server_id, normalized)
        except AuthError as exc:
            self.transcript.set_error(str(exc))
            await self.bus.publish(
                SESSION_ENDED, {"reason": str(exc)}, source="pipeline"
            )
            return False
        except StoreError as exc:
            LOGGER.warning(
                "pipeline.edit.failed",
                extra={
                    "event": "pipeline.edit.failed",
                    "message_id": message.server_id,
                    "error": str(exc),
                },
            )
            self.transcript.set_error("Your edit could not be saved.")
            return False

        self.transcript.replace_content(client_id, normalized)
        return True

    @staticmethod
    def _log_task_exception(task: asyncio.Task[Any]) -> None:
        """Log exceptions escaping background sends so they are not silently lost."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.warning(
                "pipeline.task.exception",
                extra={
                    "event": "pipeline.task.exception",
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
