"""Conversation, message, attachment and intake models."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime
from enum import Enum
import re
from typing import Any
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_client_id() -> str:
    """Return a locally generated id used as the display key of a message."""
    return uuid4().hex


def _coerce_id(value: Any) -> Any:
    # Store ids may be uuids or bigints depending on the table.
    if value is None or isinstance(value, str):
        return value
    return str(value)


class Role(str, Enum):
    """Author of a chat turn."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Attachment(BaseModel):
    """Reference to an uploaded file and its metadata row."""

    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    message_id: str | None = None
    file_name: str
    display_name: str = ""
    file_path: str
    content_type: str = "application/octet-stream"
    size_bytes: int = Field(default=0, ge=0, alias="size")

    @field_validator("id", "message_id", mode="before")
    @classmethod
    def _normalize_ids(cls, value: Any) -> Any:
        return _coerce_id(value)

    @model_validator(mode="after")
    def _default_display_name(self) -> Attachment:
        if not self.display_name:
            self.display_name = self.file_name
        return self

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Attachment | None:
        """Build from a metadata row; rows without a storage key are skipped."""
        file_path = row.get("file_path")
        if not isinstance(file_path, str) or not file_path.strip():
            return None
        payload = dict(row)
        if not payload.get("file_name"):
            payload["file_name"] = file_path
        if payload.get("size") is None:
            payload["size"] = 0
        if payload.get("content_type") is None:
            payload.pop("content_type", None)
        return cls.model_validate(payload)

    def to_row(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "file_name": self.file_name,
            "file_path": self.file_path,
            "content_type": self.content_type,
            "size": self.size_bytes,
        }


class Message(BaseModel):
    """One chat turn.

    ``client_id`` is assigned locally and never changes; it is the key the view
    renders by. ``server_id`` stays ``None`` until the store confirms the write.
    """

    client_id: str = Field(default_factory=new_client_id)
    server_id: str | None = None
    conversation_id: str
    role: Role
    content: str = ""
    timestamp: datetime = Field(default_factory=utc_now)
    attachments: list[Attachment] = Field(default_factory=list)

    @field_validator("server_id", "conversation_id", mode="before")
    @classmethod
    def _normalize_ids(cls, value: Any) -> Any:
        return _coerce_id(value)

    @property
    def persisted(self) -> bool:
        return self.server_id is not None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Message:
        """Build a confirmed message from a ``chat_messages`` row."""
        server_id = _coerce_id(row["id"])
        attachments: list[Attachment] = []
        for item in row.get("chat_attachments") or []:
            if isinstance(item, dict):
                attachment = Attachment.from_row(item)
                if attachment is not None:
                    attachments.append(attachment)
        return cls(
            client_id=server_id,
            server_id=server_id,
            conversation_id=row["conversation_id"],
            role=Role(str(row.get("role", "user")).strip().lower()),
            content=str(row.get("content") or ""),
            timestamp=row.get("created_at") or utc_now(),
            attachments=attachments,
        )

    def to_responder_payload(self) -> dict[str, str]:
        """Return the ``{role, content}`` pair sent to the responder."""
        return {"role": self.role.value, "content": self.content}


def validate_outgoing(content: str, attachments: Sequence[Attachment]) -> str:
    """Normalize user input; a turn needs text or at least one attachment."""
    normalized = content.strip()
    if not normalized and not attachments:
        raise ValueError("Message must have content or at least one attachment.")
    return normalized


class Conversation(BaseModel):
    """A named consultation owned by exactly one user."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    owner_id: str = Field(alias="user_id")
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("id", "owner_id", mode="before")
    @classmethod
    def _normalize_ids(cls, value: Any) -> Any:
        return _coerce_id(value)


class IntakeDetails(BaseModel):
    """Patient details collected once before the first consultation."""

    full_name: str
    phone_number: str
    email: str
    symptoms: str
    age: int | None = None
    height: float | None = None
    weight: float | None = None

    @field_validator("full_name", mode="before")
    @classmethod
    def _validate_name(cls, value: Any) -> str:
        normalized = str(value or "").strip()
        if len(normalized) < 2:
            raise ValueError("Name must be at least 2 characters")
        return normalized

    @field_validator("phone_number", mode="before")
    @classmethod
    def _validate_phone(cls, value: Any) -> str:
        normalized = str(value or "").strip()
        if len(normalized) < 10:
            raise ValueError("Please enter a valid phone number")
        return normalized

    @field_validator("email", mode="before")
    @classmethod
    def _validate_email(cls, value: Any) -> str:
        normalized = str(value or "").strip()
        if not EMAIL_PATTERN.match(normalized):
            raise ValueError("Please enter a valid email address")
        return normalized

    @field_validator("symptoms", mode="before")
    @classmethod
    def _validate_symptoms(cls, value: Any) -> str:
        normalized = str(value or "").strip()
        if len(normalized) < 10:
            raise ValueError("Please describe your symptoms in more detail")
        return normalized

    @field_validator("age", "height", "weight", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        # Form fields arrive as strings; an empty field means "not provided".
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def to_row(self, user_id: str) -> dict[str, Any]:
        return {
            "user_id": user_id,
            "full_name": self.full_name,
            "phone_number": self.phone_number,
            "email": self.email,
            "initial_symptoms": self.symptoms,
            "age": self.age,
            "height": self.height,
            "weight": self.weight,
        }
