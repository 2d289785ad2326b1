"""Conversation lifecycle: bootstrap, intake, create/select/delete.

The conversation list mirrors the store query order (newest first). Local
mutations keep that order without re-sorting: creating prepends, deleting
filters.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from pydantic import ValidationError

from .events import (
    CONVERSATION_CREATED,
    CONVERSATION_DELETED,
    NOTIFICATION,
    SESSION_ENDED,
    Event,
    EventBus,
    Notification,
)
from .exceptions import (
    AuthError,
    IntakeValidationError,
    LifecycleError,
    NotFoundError,
    StoreError,
)
from .models import Conversation, IntakeDetails
from .pipeline import SendPipeline
from .session import SessionContext
from .state import LifecycleState, StateManager
from .store import ConversationStore
from .transcript import Transcript

LOGGER = logging.getLogger(__name__)

DEFAULT_TITLE = "New Consultation"


class ConversationLifecycleManager:
    """Owns the conversation list and the current conversation of one session."""

    def __init__(
        self,
        session: SessionContext,
        store: ConversationStore,
        pipeline: SendPipeline,
        *,
        default_title: str = DEFAULT_TITLE,
    ) -> None:
        self.session = session
        self.store = store
        self.pipeline = pipeline
        self.bus: EventBus = pipeline.bus
        self.transcript: Transcript = pipeline.transcript
        self.default_title = default_title
        self.state = StateManager()
        self.error: str | None = None
        self._conversations: list[Conversation] = []
        self._current_id: str | None = None
        self._select_token = 0
        self.bus.subscribe(SESSION_ENDED, self._on_session_ended)

    @property
    def conversations(self) -> list[Conversation]:
        """Return the conversation list, newest first."""
        return list(self._conversations)

    @property
    def current_conversation_id(self) -> str | None:
        return self._current_id

    @property
    def lifecycle_state(self) -> LifecycleState:
        return self.state.current

    async def bootstrap(self) -> LifecycleState:
        """Decide between the intake flow and resuming a conversation."""
        await self.state.transition_to(LifecycleState.BOOTSTRAPPING)
        self.error = None
        try:
            intake = await self.store.get_intake(self.session.user_id)
        except (AuthError, StoreError) as exc:
            return await self._enter_error(exc, "We couldn't load your profile.")

        if intake is None:
            return await self.state.transition_to(LifecycleState.AWAITING_INTAKE)

        try:
            self._conversations = await self.store.list_conversations(
                self.session.user_id
            )
        except (AuthError, StoreError) as exc:
            return await self._enter_error(exc, "We couldn't load your consultations.")

        await self.state.transition_to(LifecycleState.ACTIVE)
        if self._conversations:
            await self.select_conversation(self._conversations[0].id)
        else:
            await self.create_conversation()
        return self.state.current

    async def submit_intake(self, details: IntakeDetails | dict[str, Any]) -> bool:
        """Save intake details, open the first consultation and send the symptoms.

        Returns False when the details could not be saved; the session then
        stays in the intake flow.

        Raises:
            IntakeValidationError: the details fail validation
            LifecycleError: the session is not awaiting intake
        """
        if self.state.current is not LifecycleState.AWAITING_INTAKE:
            raise LifecycleError(
                f"Intake cannot be submitted in state {self.state.current.value}."
            )
        if not isinstance(details, IntakeDetails):
            try:
                details = IntakeDetails.model_validate(details)
            except ValidationError as exc:
                messages = "; ".join(str(error["msg"]) for error in exc.errors())
                raise IntakeValidationError(messages) from exc

        try:
            await self.store.save_intake(self.session.user_id, details)
        except (AuthError, StoreError) as exc:
            await self._report(exc, "Failed to save your details. Please try again.")
            return False

        await self._notify(
            "Details saved successfully!",
            "Thank you for providing your information.",
        )
        await self.state.transition_to(LifecycleState.ACTIVE)
        conversation = await self.create_conversation()
        if conversation is None:
            if self.state.current is not LifecycleState.ACTIVE:
                return True
            await self._enter_error(
                StoreError("conversation creation failed"),
                "We couldn't start your consultation.",
            )
            return True

        if details.symptoms.strip():
            await self.pipeline.send(details.symptoms)
        return True

    async def create_conversation(self) -> Conversation | None:
        """Create, prepend and select a new conversation.

        Returns None when the store rejected the insert.
        """
        await self._require_active()
        try:
            conversation = await self.store.create_conversation(
                self.session.user_id, self.default_title
            )
        except (AuthError, StoreError) as exc:
            await self._report(exc, "Failed to create a new consultation.")
            return None

        self._conversations = [conversation] + [
            c for c in self._conversations if c.id != conversation.id
        ]
        self._select_token += 1
        self._current_id = conversation.id
        self.transcript.reset(conversation.id)
        await self.bus.publish(
            CONVERSATION_CREATED, {"conversation_id": conversation.id}, source="lifecycle"
        )
        return conversation

    async def select_conversation(self, conversation_id: str) -> bool:
        """Make a conversation current and load its messages into the transcript.

        Returns False when the messages could not be loaded; the conversation
        is still current and the transcript carries the error.
        """
        await self._require_active()
        if not any(c.id == conversation_id for c in self._conversations):
            raise NotFoundError(f"Conversation {conversation_id} is not in the list.")

        self._select_token += 1
        token = self._select_token
        self._current_id = conversation_id
        busy = self.pipeline.is_busy(conversation_id)
        self.transcript.reset(conversation_id, is_loading=busy)

        try:
            messages = await self.store.list_messages(conversation_id)
        except (AuthError, StoreError) as exc:
            if token == self._select_token:
                self.transcript.set_error("Failed to load messages.")
            await self._report(exc, "Failed to load messages.")
            return False

        if token != self._select_token:
            # Another selection happened while this one was loading.
            return False
        self.transcript.reset(
            conversation_id, messages, is_loading=self.pipeline.is_busy(conversation_id)
        )
        return True

    async def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation; deleting the current one opens a new one."""
        await self._require_active()
        try:
            await self.store.delete_conversation(conversation_id)
        except (AuthError, StoreError) as exc:
            await self._report(exc, "Failed to delete the consultation.")
            return False

        self._conversations = [
            c for c in self._conversations if c.id != conversation_id
        ]
        await self.bus.publish(
            CONVERSATION_DELETED, {"conversation_id": conversation_id}, source="lifecycle"
        )
        if conversation_id == self._current_id:
            self._current_id = None
            if await self.create_conversation() is None:
                await self._fall_back_after_delete()
        return True

    async def _fall_back_after_delete(self) -> None:
        # The replacement could not be created; never leave the transcript
        # pointing at the deleted conversation.
        if not await self.state.is_active():
            return
        if self._conversations:
            await self.select_conversation(self._conversations[0].id)
            return
        self._select_token += 1
        self.transcript.reset(None)

    async def rename_conversation(self, conversation_id: str, title: str) -> bool:
        await self._require_active()
        normalized = title.strip()
        if not normalized:
            raise ValueError("Title must not be empty.")
        try:
            renamed = await self.store.rename_conversation(conversation_id, normalized)
        except (AuthError, StoreError) as exc:
            await self._report(exc, "Failed to rename the consultation.")
            return False
        self._conversations = [
            renamed if c.id == conversation_id else c for c in self._conversations
        ]
        return True

    async def end_session(self) -> None:
        """Forget all per-user state after sign-out or session expiry."""
        self._conversations = []
        self._current_id = None
        self._select_token += 1
        self.transcript.reset(None)
        await self.state.transition_to(LifecycleState.SIGNED_OUT)

    async def _on_session_ended(self, event: Event) -> None:
        LOGGER.info(
            "lifecycle.session.ended",
            extra={"event": "lifecycle.session.ended", "reason": event.data.get("reason")},
        )
        await self.end_session()

    async def _require_active(self) -> None:
        if not await self.state.is_active():
            raise LifecycleError(
                f"Conversations are unavailable in state {self.state.current.value}."
            )

    async def _enter_error(self, exc: Exception, message: str) -> LifecycleState:
        LOGGER.error(
            "lifecycle.error",
            extra={
                "event": "lifecycle.error",
                "error_type": type(exc).__name__,
                "error": str(exc),
            },
        )
        if isinstance(exc, AuthError):
            await self.bus.publish(SESSION_ENDED, {"reason": str(exc)}, source="lifecycle")
            return self.state.current
        self.error = message
        return await self.state.transition_to(LifecycleState.ERROR)

    async def _report(self, exc: Exception, description: str) -> None:
        LOGGER.warning(
            "lifecycle.operation.failed",
            extra={
                "event": "lifecycle.operation.failed",
                "error_type": type(exc).__name__,
                "error": str(exc),
            },
        )
        if isinstance(exc, AuthError):
            await self.bus.publish(SESSION_ENDED, {"reason": str(exc)}, source="lifecycle")
            return
        await self._notify("Error", description, variant="destructive")

    async def _notify(
        self,
        title: str,
        description: str,
        variant: Literal["default", "destructive"] = "default",
    ) -> None:
        notification = Notification(title=title, description=description, variant=variant)
        await self.bus.publish(NOTIFICATION, notification.as_data(), source="lifecycle")
