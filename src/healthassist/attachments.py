"""Attachment upload pipeline.

Validates a local file, uploads it to the attachment store and returns an
``Attachment`` reference that a message can carry. Uploads may run before the
owning message exists; the metadata row is then tagged with a staging message
id and re-linked by the send pipeline once the message is persisted.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from pathlib import Path
import re
from typing import Any, Protocol
from uuid import uuid4

import httpx

from .exceptions import AuthError, StoreError, UploadError
from .models import Attachment
from .store import ConversationStore

LOGGER = logging.getLogger(__name__)

STAGING_MESSAGE_ID = "temp"

# UI-level filter for the file picker; the store itself accepts any type.
IMAGE_EXTENSIONS: frozenset[str] = frozenset(
    {".png", ".jpg", ".jpeg", ".gif", ".bmp", ".webp", ".tiff", ".tif"}
)
ACCEPTED_EXTENSIONS: frozenset[str] = IMAGE_EXTENSIONS | {".pdf"}

_NON_ASCII = re.compile(r"[^\x00-\x7F]")
_UNSAFE_EXTENSION = re.compile(r"[^A-Za-z0-9]")


def sanitize_file_name(file_name: str) -> str:
    """Strip non-ASCII characters from a file name."""
    return _NON_ASCII.sub("", file_name).strip()


def storage_extension(file_name: str) -> str:
    """Return the lowercased extension of the sanitized name, or ``""``."""
    sanitized = sanitize_file_name(file_name)
    if "." not in sanitized:
        return ""
    return _UNSAFE_EXTENSION.sub("", sanitized.rsplit(".", 1)[-1]).lower()


def build_storage_key(file_name: str) -> str:
    """Return a fresh object key: a random uuid plus the original extension."""
    extension = storage_extension(file_name)
    return f"{uuid4()}.{extension}" if extension else str(uuid4())


def guess_content_type(file_name: str) -> str:
    guessed, _ = mimetypes.guess_type(file_name)
    return guessed or "application/octet-stream"


def is_accepted(file_name: str, content_type: str | None = None) -> bool:
    """Return True for images and PDFs (the file picker's accept list)."""
    if content_type:
        normalized = content_type.split(";", 1)[0].strip().lower()
        if normalized.startswith("image/") or normalized == "application/pdf":
            return True
    return Path(file_name).suffix.lower() in ACCEPTED_EXTENSIONS


class AttachmentBackend(Protocol):
    async def store(
        self, data: bytes, file_name: str, content_type: str, message_id: str
    ) -> Attachment: ...


class StorageBackend:
    """Writes the object to bucket storage, then inserts its metadata row."""

    def __init__(
        self, client: httpx.AsyncClient, store: ConversationStore, bucket: str
    ) -> None:
        self._client = client
        self._store = store
        self.bucket = bucket

    async def store(
        self, data: bytes, file_name: str, content_type: str, message_id: str
    ) -> Attachment:
        key = build_storage_key(file_name)
        try:
            response = await self._client.post(
                f"/storage/v1/object/{self.bucket}/{key}",
                content=data,
                headers={"Content-Type": content_type, "x-upsert": "false"},
            )
        except httpx.HTTPError as exc:
            raise UploadError(f"Unable to reach storage: {exc}", reason="network") from exc

        if response.status_code in {401, 403}:
            raise AuthError("Your session has expired. Please sign in again.")
        if response.is_error:
            raise UploadError(
                f"Storage rejected the upload (HTTP {response.status_code}).",
                reason="store-rejected",
            )

        attachment = Attachment(
            message_id=message_id,
            file_name=sanitize_file_name(file_name) or key,
            display_name=file_name,
            file_path=key,
            content_type=content_type,
            size_bytes=len(data),
        )
        try:
            return await self._store.insert_attachment(attachment)
        except StoreError as exc:
            # The object now exists without metadata; it is left for cleanup.
            raise UploadError(
                f"Failed to save file metadata: {exc}", reason="store-rejected"
            ) from exc


class UploadFunctionBackend:
    """Delegates both steps to the server-side ``upload`` function.

    The function answers ``{filePath, fileName}`` on success and
    ``{error, details?}`` with HTTP 400 (missing fields) or 500 (storage or
    database failure) otherwise. It does not return the metadata row id.
    """

    def __init__(self, client: httpx.AsyncClient, url: str) -> None:
        self._client = client
        self.url = url

    @staticmethod
    def _error_text(response: httpx.Response) -> str:
        try:
            payload: Any = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(payload, dict) and isinstance(payload.get("error"), str):
            return payload["error"]
        return f"HTTP {response.status_code}"

    async def store(
        self, data: bytes, file_name: str, content_type: str, message_id: str
    ) -> Attachment:
        try:
            response = await self._client.post(
                self.url,
                files={"file": (file_name, data, content_type)},
                data={"messageId": message_id},
            )
        except httpx.HTTPError as exc:
            raise UploadError(
                f"Unable to reach the upload function: {exc}", reason="network"
            ) from exc

        if response.status_code in {401, 403}:
            raise AuthError("Your session has expired. Please sign in again.")
        if response.status_code == 400:
            raise UploadError(self._error_text(response), reason="invalid-request")
        if response.is_error:
            raise UploadError(self._error_text(response), reason="store-rejected")

        try:
            payload = response.json()
            file_path = payload["filePath"]
            stored_name = payload.get("fileName") or file_path
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise UploadError(
                "Upload function returned an invalid response.", reason="store-rejected"
            ) from exc

        return Attachment(
            message_id=message_id,
            file_name=stored_name,
            display_name=file_name,
            file_path=file_path,
            content_type=content_type,
            size_bytes=len(data),
        )


class AttachmentPipeline:
    """Validate and upload single files; one attempt, no retry."""

    def __init__(
        self,
        backend: AttachmentBackend,
        *,
        max_bytes: int = 10 * 1024 * 1024,  # 10 MB
        enforce_content_types: bool = False,
    ) -> None:
        self.backend = backend
        self.max_bytes = max_bytes
        self.enforce_content_types = enforce_content_types

    def validate(
        self, data: bytes, file_name: str, content_type: str
    ) -> tuple[bool, str, str]:
        """Validate an upload.

        Returns:
            Tuple of (success, error_message, reason)
        """
        if not data:
            return False, f"File is empty: {file_name}", "empty-file"
        if len(data) > self.max_bytes:
            max_mb = self.max_bytes / (1024 * 1024)
            return False, f"File too large (max {max_mb:.1f}MB)", "too-large"
        if self.enforce_content_types and not is_accepted(file_name, content_type):
            return False, "Only images and PDF files can be attached", "unsupported-type"
        return True, "", ""

    async def upload(
        self,
        data: bytes,
        file_name: str,
        content_type: str | None = None,
        message_id: str = STAGING_MESSAGE_ID,
    ) -> Attachment:
        """Upload one file and return its reference.

        The returned reference keeps ``file_name`` as its display name.

        Raises:
            UploadError: validation, network or store failure
            AuthError: the session is no longer valid
        """
        resolved_type = content_type or guess_content_type(file_name)
        ok, message, reason = self.validate(data, file_name, resolved_type)
        if not ok:
            LOGGER.warning(
                "attachment.validation.failed",
                extra={"event": "attachment.validation.failed", "reason": reason},
            )
            raise UploadError(message, reason=reason)

        try:
            attachment = await self.backend.store(
                data, file_name, resolved_type, message_id
            )
        except UploadError as exc:
            LOGGER.warning(
                "attachment.upload.failed",
                extra={
                    "event": "attachment.upload.failed",
                    "reason": exc.reason,
                    "error": str(exc),
                },
            )
            raise

        LOGGER.info(
            "attachment.upload.complete",
            extra={
                "event": "attachment.upload.complete",
                "file_path": attachment.file_path,
                "size": attachment.size_bytes,
            },
        )
        return attachment

    async def upload_path(
        self, path: str | Path, message_id: str = STAGING_MESSAGE_ID
    ) -> Attachment:
        """Read a local file and upload it under its own name."""
        resolved = Path(path).expanduser()
        try:
            data = await asyncio.to_thread(resolved.read_bytes)
        except OSError as exc:
            raise UploadError(f"Unable to read {resolved}: {exc}", reason="unreadable") from exc
        return await self.upload(data, resolved.name, message_id=message_id)
