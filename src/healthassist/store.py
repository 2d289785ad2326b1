"""Conversation store adapter over a PostgREST-style HTTP API."""

from __future__ import annotations

from collections.abc import Sequence
import logging
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from .exceptions import AuthError, NotFoundError, StoreError
from .models import Attachment, Conversation, IntakeDetails, Message, Role

LOGGER = logging.getLogger(__name__)

REST_PREFIX = "/rest/v1"
AUTH_STATUSES = frozenset({401, 403})


class ConversationStore(Protocol):
    """CRUD surface used by the lifecycle manager and the send pipeline."""

    async def list_conversations(self, owner_id: str) -> list[Conversation]: ...

    async def create_conversation(self, owner_id: str, title: str) -> Conversation: ...

    async def rename_conversation(self, conversation_id: str, title: str) -> Conversation: ...

    async def delete_conversation(self, conversation_id: str) -> None: ...

    async def list_messages(self, conversation_id: str) -> list[Message]: ...

    async def append_message(
        self, conversation_id: str, role: Role, content: str
    ) -> Message: ...

    async def update_message_content(self, message_id: str, new_content: str) -> None: ...

    async def get_intake(self, user_id: str) -> dict[str, Any] | None: ...

    async def save_intake(self, user_id: str, details: IntakeDetails) -> None: ...

    async def insert_attachment(self, attachment: Attachment) -> Attachment: ...

    async def link_attachments(
        self, attachment_ids: Sequence[str], message_id: str
    ) -> None: ...


class RestConversationStore:
    """``ConversationStore`` backed by PostgREST table endpoints.

    Ordering is part of each query (``order=created_at.desc`` for
    conversations, ``order=created_at.asc`` for messages); results are never
    re-sorted here.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        conversations_table: str = "conversations",
        messages_table: str = "chat_messages",
        attachments_table: str = "chat_attachments",
        intake_table: str = "patient_details",
    ) -> None:
        self._client = client
        self.conversations_table = conversations_table
        self.messages_table = messages_table
        self.attachments_table = attachments_table
        self.intake_table = intake_table

    @classmethod
    def from_config(
        cls, client: httpx.AsyncClient, store_config: dict[str, Any]
    ) -> RestConversationStore:
        return cls(
            client,
            conversations_table=store_config["conversations_table"],
            messages_table=store_config["messages_table"],
            attachments_table=store_config["attachments_table"],
            intake_table=store_config["intake_table"],
        )

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        returning: bool = False,
    ) -> list[dict[str, Any]]:
        headers = {"Prefer": "return=representation"} if returning else None
        try:
            response = await self._client.request(
                method,
                f"{REST_PREFIX}/{table}",
                params=params,
                json=json,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            LOGGER.warning(
                "store.request.failed",
                extra={
                    "event": "store.request.failed",
                    "method": method,
                    "table": table,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            raise StoreError(f"Unable to reach the conversation store: {exc}") from exc

        if response.status_code in AUTH_STATUSES:
            raise AuthError("Your session has expired. Please sign in again.")
        if response.is_error:
            LOGGER.warning(
                "store.request.rejected",
                extra={
                    "event": "store.request.rejected",
                    "method": method,
                    "table": table,
                    "status": response.status_code,
                    "body": response.text[:500],
                },
            )
            raise StoreError(
                f"Conversation store rejected {method} {table} "
                f"(HTTP {response.status_code})."
            )

        if method == "GET" or returning:
            try:
                payload = response.json() if response.content else []
            except ValueError as exc:
                LOGGER.warning(
                    "store.response.malformed",
                    extra={
                        "event": "store.response.malformed",
                        "method": method,
                        "table": table,
                        "body": response.text[:500],
                    },
                )
                raise StoreError(f"Malformed response from {table}.") from exc
            if not isinstance(payload, list):
                raise StoreError(f"Unexpected payload from {table}.")
            return [row for row in payload if isinstance(row, dict)]
        return []

    @staticmethod
    def _first(rows: list[dict[str, Any]], table: str) -> dict[str, Any]:
        if not rows:
            raise StoreError(f"Store returned no row for {table}.")
        return rows[0]

    async def list_conversations(self, owner_id: str) -> list[Conversation]:
        rows = await self._request(
            "GET",
            self.conversations_table,
            params={
                "select": "id,title,user_id,created_at",
                "user_id": f"eq.{owner_id}",
                "order": "created_at.desc",
            },
        )
        try:
            return [Conversation.model_validate(row) for row in rows]
        except ValidationError as exc:
            raise StoreError(f"Malformed conversation row: {exc}") from exc

    async def create_conversation(self, owner_id: str, title: str) -> Conversation:
        rows = await self._request(
            "POST",
            self.conversations_table,
            json={"user_id": owner_id, "title": title},
            returning=True,
        )
        try:
            conversation = Conversation.model_validate(
                self._first(rows, self.conversations_table)
            )
        except ValidationError as exc:
            raise StoreError(f"Malformed conversation row: {exc}") from exc
        LOGGER.info(
            "store.conversation.created",
            extra={"event": "store.conversation.created", "conversation_id": conversation.id},
        )
        return conversation

    async def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        rows = await self._request(
            "PATCH",
            self.conversations_table,
            params={"id": f"eq.{conversation_id}"},
            json={"title": title},
            returning=True,
        )
        if not rows:
            raise NotFoundError(f"Conversation {conversation_id} not found.")
        try:
            return Conversation.model_validate(rows[0])
        except ValidationError as exc:
            raise StoreError(f"Malformed conversation row: {exc}") from exc

    async def delete_conversation(self, conversation_id: str) -> None:
        # Messages and attachment rows are removed by the store's cascade.
        await self._request(
            "DELETE",
            self.conversations_table,
            params={"id": f"eq.{conversation_id}"},
        )
        LOGGER.info(
            "store.conversation.deleted",
            extra={"event": "store.conversation.deleted", "conversation_id": conversation_id},
        )

    async def list_messages(self, conversation_id: str) -> list[Message]:
        rows = await self._request(
            "GET",
            self.messages_table,
            params={
                "select": f"*,{self.attachments_table}(*)",
                "conversation_id": f"eq.{conversation_id}",
                "order": "created_at.asc",
            },
        )
        messages: list[Message] = []
        for row in rows:
            if self.attachments_table != "chat_attachments":
                row = {**row, "chat_attachments": row.get(self.attachments_table)}
            try:
                messages.append(Message.from_row(row))
            except (KeyError, ValueError) as exc:
                raise StoreError(f"Malformed message row: {exc}") from exc
        return messages

    async def append_message(
        self, conversation_id: str, role: Role, content: str
    ) -> Message:
        rows = await self._request(
            "POST",
            self.messages_table,
            json={
                "conversation_id": conversation_id,
                "role": role.value,
                "content": content,
            },
            returning=True,
        )
        try:
            return Message.from_row(self._first(rows, self.messages_table))
        except (KeyError, ValueError) as exc:
            raise StoreError(f"Malformed message row: {exc}") from exc

    async def update_message_content(self, message_id: str, new_content: str) -> None:
        rows = await self._request(
            "PATCH",
            self.messages_table,
            params={"id": f"eq.{message_id}"},
            json={"content": new_content},
            returning=True,
        )
        if not rows:
            raise NotFoundError(f"Message {message_id} not found.")

    async def get_intake(self, user_id: str) -> dict[str, Any] | None:
        rows = await self._request(
            "GET",
            self.intake_table,
            params={"select": "*", "user_id": f"eq.{user_id}", "limit": "1"},
        )
        return rows[0] if rows else None

    async def save_intake(self, user_id: str, details: IntakeDetails) -> None:
        await self._request("POST", self.intake_table, json=[details.to_row(user_id)])

    async def insert_attachment(self, attachment: Attachment) -> Attachment:
        rows = await self._request(
            "POST",
            self.attachments_table,
            json=attachment.to_row(),
            returning=True,
        )
        row = self._first(rows, self.attachments_table)
        row_id = row.get("id")
        return attachment.model_copy(
            update={"id": str(row_id) if row_id is not None else None}
        )

    async def link_attachments(
        self, attachment_ids: Sequence[str], message_id: str
    ) -> None:
        ids = [i for i in attachment_ids if i]
        if not ids:
            return
        await self._request(
            "PATCH",
            self.attachments_table,
            params={"id": f"in.({','.join(ids)})"},
            json={"message_id": message_id},
        )
