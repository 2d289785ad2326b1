"""Client for the external responder that turns a transcript into one reply."""

from __future__ import annotations

import logging
import time
from typing import Any, Protocol

import httpx

from .exceptions import AuthError, ResponderError

LOGGER = logging.getLogger(__name__)


class Responder(Protocol):
    async def reply(self, messages: list[dict[str, str]]) -> str: ...


def extract_reply(payload: Any) -> str:
    """Return ``choices[0].message.content`` from a responder payload.

    A payload without choices is an explicit ``empty-response`` failure, not a
    silent no-op.
    """
    choices = payload.get("choices") if isinstance(payload, dict) else None
    if not isinstance(choices, list) or not choices:
        raise ResponderError("Responder returned no choices.", reason="empty-response")

    first = choices[0]
    message = first.get("message") if isinstance(first, dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str):
        raise ResponderError(
            "Responder returned a malformed choice.", reason="invalid-response"
        )
    if not content.strip():
        raise ResponderError("Responder returned an empty reply.", reason="empty-response")
    return content


class HttpResponder:
    """Single-attempt responder call over HTTP.

    Request body is ``{"messages": [{role, content}, ...], "context": persona}``.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        persona: str,
        timeout: float = 120,
    ) -> None:
        self._client = client
        self.url = url
        self.persona = persona
        self.timeout = timeout

    @classmethod
    def from_config(
        cls, client: httpx.AsyncClient, responder_config: dict[str, Any]
    ) -> HttpResponder:
        return cls(
            client,
            url=responder_config["url"],
            persona=responder_config["persona"],
            timeout=responder_config["timeout"],
        )

    async def reply(self, messages: list[dict[str, str]]) -> str:
        started = time.perf_counter()
        try:
            response = await self._client.post(
                self.url,
                json={"messages": messages, "context": self.persona},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as exc:
            raise ResponderError("Responder timed out.", reason="timeout") from exc
        except httpx.HTTPError as exc:
            raise ResponderError(
                f"Unable to reach the responder: {exc}", reason="network"
            ) from exc

        if response.status_code in {401, 403}:
            raise AuthError("Your session has expired. Please sign in again.")
        if response.is_error:
            raise ResponderError(
                f"Responder rejected the request (HTTP {response.status_code}).",
                reason="rejected",
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ResponderError(
                "Responder returned invalid JSON.", reason="invalid-response"
            ) from exc

        reply = extract_reply(payload)
        LOGGER.info(
            "responder.reply.received",
            extra={
                "event": "responder.reply.received",
                "turns": len(messages),
                "elapsed_ms": round((time.perf_counter() - started) * 1000),
            },
        )
        return reply
