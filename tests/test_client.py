"""End-to-end tests of a wired session against a mocked HTTP backend."""

from __future__ import annotations

from copy import deepcopy
import itertools
import json
import unittest

import httpx

from healthassist.attachments import StorageBackend, UploadFunctionBackend
from healthassist.client import HealthAssistClient
from healthassist.config import DEFAULT_CONFIG
from healthassist.exceptions import AuthError
from healthassist.models import Role
from healthassist.session import SessionContext, StaticIdentity
from healthassist.state import LifecycleState


class FakeBackend:
    """Minimal PostgREST, storage and chat function endpoints."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.messages: list[dict[str, object]] = []
        self.conversations = [
            {
                "id": "c1",
                "title": "New Consultation",
                "user_id": "u1",
                "created_at": "2026-01-01T00:00:00Z",
            }
        ]
        self._ids = itertools.count(100)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/rest/v1/patient_details":
            return httpx.Response(200, json=[{"user_id": "u1"}])
        if path == "/rest/v1/conversations":
            return httpx.Response(200, json=self.conversations)
        if path == "/rest/v1/chat_messages" and request.method == "GET":
            return httpx.Response(200, json=self.messages)
        if path == "/rest/v1/chat_messages" and request.method == "POST":
            body = json.loads(request.content)
            row = {
                **body,
                "id": next(self._ids),
                "created_at": "2026-01-01T00:01:00Z",
            }
            self.messages.append(row)
            return httpx.Response(201, json=[row])
        if path == "/functions/v1/chat":
            return httpx.Response(
                200, json={"choices": [{"message": {"content": "Rest and hydrate."}}]}
            )
        return httpx.Response(404, json={"message": f"unexpected {path}"})


def make_config(**attachments: object) -> dict[str, dict[str, object]]:
    config = deepcopy(DEFAULT_CONFIG)
    config["store"]["api_key"] = "anon"
    config["attachments"].update(attachments)
    return config


class HealthAssistClientTests(unittest.IsolatedAsyncioTestCase):
    """Validate that config and session flow into one working client."""

    async def test_bootstrap_and_send_round_trip(self) -> None:
        backend = FakeBackend()
        async with HealthAssistClient(
            SessionContext(user_id="u1", access_token="jwt"),
            make_config(),
            transport=httpx.MockTransport(backend),
        ) as app:
            state = await app.lifecycle.bootstrap()
            self.assertEqual(state, LifecycleState.ACTIVE)
            self.assertEqual(app.lifecycle.current_conversation_id, "c1")

            await app.pipeline.send("I have a headache")

            self.assertEqual(
                [m.role for m in app.transcript.messages], [Role.USER, Role.ASSISTANT]
            )
            self.assertEqual(app.transcript.messages[1].content, "Rest and hydrate.")

        self.assertTrue(app.http.is_closed)
        first = backend.requests[0]
        self.assertEqual(first.headers["apikey"], "anon")
        self.assertEqual(first.headers["Authorization"], "Bearer jwt")
        chat_request = next(
            r for r in backend.requests if r.url.path == "/functions/v1/chat"
        )
        body = json.loads(chat_request.content)
        self.assertEqual(
            body["messages"], [{"role": "user", "content": "I have a headache"}]
        )
        self.assertEqual(body["context"], DEFAULT_CONFIG["responder"]["persona"])

    async def test_upload_mode_selects_backend(self) -> None:
        transport = httpx.MockTransport(FakeBackend())
        session = SessionContext(user_id="u1")

        storage = HealthAssistClient(session, make_config(), transport=transport)
        function = HealthAssistClient(
            session, make_config(upload_mode="function"), transport=transport
        )
        try:
            self.assertIsInstance(storage.attachments.backend, StorageBackend)
            self.assertIsInstance(function.attachments.backend, UploadFunctionBackend)
            self.assertEqual(storage.http.headers["Authorization"], "Bearer anon")
        finally:
            await storage.aclose()
            await function.aclose()

    def test_from_identity_requires_signed_in_user(self) -> None:
        with self.assertRaises(AuthError):
            HealthAssistClient.from_identity(StaticIdentity(user_id=""))


if __name__ == "__main__":
    unittest.main()
