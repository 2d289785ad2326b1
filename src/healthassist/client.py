"""Wiring of one signed-in session: HTTP client, adapters and managers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import httpx

from .attachments import (
    AttachmentBackend,
    AttachmentPipeline,
    StorageBackend,
    UploadFunctionBackend,
)
from .config import load_config
from .events import EventBus
from .lifecycle import ConversationLifecycleManager
from .logging_utils import bind_session, unbind_session
from .pipeline import SendPipeline
from .responder import HttpResponder
from .session import IdentityProvider, SessionContext
from .store import RestConversationStore
from .transcript import Transcript

LOGGER = logging.getLogger(__name__)


def build_http_client(
    session: SessionContext,
    store_config: dict[str, Any],
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Return an ``httpx.AsyncClient`` authorized for the session's user."""
    api_key = store_config["api_key"]
    bearer = session.access_token or api_key
    headers = {"apikey": api_key}
    if bearer:
        headers["Authorization"] = f"Bearer {bearer}"
    return httpx.AsyncClient(
        base_url=store_config["url"],
        headers=headers,
        timeout=store_config["timeout"],
        transport=transport,
    )


def build_attachment_backend(
    client: httpx.AsyncClient,
    store: RestConversationStore,
    attachments_config: dict[str, Any],
) -> AttachmentBackend:
    if attachments_config["upload_mode"] == "function":
        return UploadFunctionBackend(client, attachments_config["function_url"])
    return StorageBackend(client, store, attachments_config["bucket"])


class HealthAssistClient:
    """Everything one session needs, sharing a single HTTP connection pool.

    Usage:
        async with HealthAssistClient(SessionContext(user_id="u1")) as app:
            await app.lifecycle.bootstrap()
            await app.pipeline.send("I have a headache")
    """

    def __init__(
        self,
        session: SessionContext,
        config: dict[str, dict[str, Any]] | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.session = session
        self.config = config or load_config()
        self.http = build_http_client(session, self.config["store"], transport)
        self.bus = EventBus()
        self.transcript = Transcript()
        self.store = RestConversationStore.from_config(self.http, self.config["store"])
        self.responder = HttpResponder.from_config(self.http, self.config["responder"])
        attachments_config = self.config["attachments"]
        self.attachments = AttachmentPipeline(
            build_attachment_backend(self.http, self.store, attachments_config),
            max_bytes=attachments_config["max_bytes"],
            enforce_content_types=attachments_config["enforce_content_types"],
        )
        self.pipeline = SendPipeline(
            self.store,
            self.responder,
            self.transcript,
            self.bus,
            error_message=self.config["responder"]["error_message"],
        )
        self.lifecycle = ConversationLifecycleManager(
            session,
            self.store,
            self.pipeline,
            default_title=self.config["conversations"]["default_title"],
        )

    @classmethod
    def from_identity(
        cls,
        identity: IdentityProvider,
        config_path: Path | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> HealthAssistClient:
        """Build a client for the identity's current user.

        Raises:
            AuthError: nobody is signed in
        """
        session = SessionContext.from_identity(identity)
        return cls(session, load_config(config_path), transport=transport)

    async def aclose(self) -> None:
        """Wait for background sends, then close the HTTP connection pool."""
        await self.pipeline.aclose()
        await self.http.aclose()
        LOGGER.info("client.closed", extra={"event": "client.closed"})
        unbind_session()

    async def __aenter__(self) -> HealthAssistClient:
        bind_session(self.session.user_id)
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
