"""Tests for the send pipeline: optimistic turns, persistence and failures."""

from __future__ import annotations

import asyncio
import unittest

import httpx

from fakes import FakeResponder, InMemoryStore
from healthassist.events import NOTIFICATION, SESSION_ENDED, Event, EventBus
from healthassist.exceptions import (
    AuthError,
    BusyError,
    NoActiveConversationError,
    NotFoundError,
    ResponderError,
    StoreError,
)
from healthassist.models import Attachment, Role
from healthassist.pipeline import (
    PERSIST_ERROR_MESSAGE,
    REPLY_PERSIST_ERROR_MESSAGE,
    RESPONDER_ERROR_MESSAGE,
    SendPipeline,
)
from healthassist.responder import HttpResponder
from healthassist.transcript import ChatState, Transcript


class SendPipelineTests(unittest.IsolatedAsyncioTestCase):
    """Validate one user turn end to end against in-memory collaborators."""

    def setUp(self) -> None:
        self.store = InMemoryStore()
        self.responder = FakeResponder()
        self.transcript = Transcript()
        self.bus = EventBus()
        self.pipeline = SendPipeline(
            self.store, self.responder, self.transcript, self.bus
        )
        self.conversation = self.store.add_conversation("u1", "New Consultation")
        self.transcript.reset(self.conversation.id)

    async def test_headache_turn_persists_both_messages(self) -> None:
        self.responder.replies = ["How long have you had it?"]

        await self.pipeline.send("I have a headache")

        stored = self.store.messages[self.conversation.id]
        self.assertEqual(
            [(m.role, m.content) for m in stored],
            [
                (Role.USER, "I have a headache"),
                (Role.ASSISTANT, "How long have you had it?"),
            ],
        )
        self.assertEqual(len(self.transcript.messages), 2)
        self.assertFalse(self.transcript.is_loading)
        self.assertIsNone(self.transcript.error)
        self.assertFalse(self.pipeline.is_busy(self.conversation.id))

    async def test_user_turn_is_visible_before_first_await(self) -> None:
        states: list[ChatState] = []
        self.transcript.subscribe(states.append)

        task = self.pipeline.dispatch("hello")
        # Nothing has been awaited yet.
        self.assertEqual(len(states), 1)
        self.assertTrue(states[0].is_loading)
        self.assertEqual(states[0].messages[-1].content, "hello")
        self.assertIsNone(states[0].messages[-1].server_id)

        await task
        self.assertFalse(self.transcript.is_loading)

    async def test_client_id_survives_reconciliation(self) -> None:
        task = self.pipeline.dispatch("hello")
        optimistic = self.transcript.messages[0]
        client_id = optimistic.client_id
        self.assertIsNone(optimistic.server_id)

        await task

        confirmed = self.transcript.messages[0]
        self.assertEqual(confirmed.client_id, client_id)
        self.assertEqual(
            confirmed.server_id, self.store.messages[self.conversation.id][0].server_id
        )

    async def test_responder_receives_whole_transcript(self) -> None:
        self.store.add_message(self.conversation.id, Role.USER, "I feel dizzy")
        self.store.add_message(self.conversation.id, Role.ASSISTANT, "Since when?")
        self.transcript.reset(
            self.conversation.id, await self.store.list_messages(self.conversation.id)
        )

        await self.pipeline.send("  Since this morning  ")

        self.assertEqual(
            self.responder.calls[0],
            [
                {"role": "user", "content": "I feel dizzy"},
                {"role": "assistant", "content": "Since when?"},
                {"role": "user", "content": "Since this morning"},
            ],
        )

    async def test_second_send_while_in_flight_is_rejected(self) -> None:
        self.responder.gate = asyncio.Event()
        task = self.pipeline.dispatch("first")

        with self.assertRaises(BusyError):
            self.pipeline.dispatch("second")
        with self.assertRaises(BusyError):
            await self.pipeline.send("second")
        self.assertEqual(len(self.transcript.messages), 1)
        self.assertTrue(self.pipeline.is_busy(self.conversation.id))

        self.responder.gate.set()
        await task
        self.assertFalse(self.pipeline.is_busy(self.conversation.id))
        await self.pipeline.send("second")
        self.assertEqual(len(self.transcript.messages), 4)

    async def test_send_without_conversation_raises(self) -> None:
        self.transcript.reset(None)
        with self.assertRaises(NoActiveConversationError):
            await self.pipeline.send("hello")
        self.assertEqual(self.transcript.messages, [])

    async def test_blank_message_without_attachments_raises(self) -> None:
        with self.assertRaises(ValueError):
            await self.pipeline.send("   ")
        self.assertEqual(self.transcript.messages, [])
        self.assertFalse(self.transcript.is_loading)

    async def test_persist_failure_skips_responder(self) -> None:
        self.store.fail("append_message", StoreError("store down"))

        await self.pipeline.send("hello")

        self.assertEqual(self.responder.calls, [])
        self.assertEqual(self.transcript.error, PERSIST_ERROR_MESSAGE)
        self.assertFalse(self.transcript.is_loading)
        # The optimistic turn stays visible, unconfirmed.
        self.assertEqual(len(self.transcript.messages), 1)
        self.assertIsNone(self.transcript.messages[0].server_id)

    async def test_responder_failure_keeps_user_turn(self) -> None:
        self.responder.error = ResponderError("timed out", reason="timeout")

        await self.pipeline.send("hello")

        self.assertEqual(self.transcript.error, RESPONDER_ERROR_MESSAGE)
        self.assertFalse(self.transcript.is_loading)
        self.assertEqual([m.role for m in self.transcript.messages], [Role.USER])
        self.assertEqual(len(self.store.messages[self.conversation.id]), 1)

    async def test_configured_error_message_is_used(self) -> None:
        pipeline = SendPipeline(
            self.store,
            FakeResponder(error=ResponderError("boom")),
            self.transcript,
            self.bus,
            error_message="Assistant unavailable.",
        )
        await pipeline.send("hello")
        self.assertEqual(self.transcript.error, "Assistant unavailable.")

    async def test_empty_choices_surface_as_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"choices": []})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            responder = HttpResponder(client, "http://responder.test/chat", "persona")
            pipeline = SendPipeline(self.store, responder, self.transcript, self.bus)
            await pipeline.send("hello")

        self.assertEqual(self.transcript.error, RESPONDER_ERROR_MESSAGE)
        self.assertFalse(self.transcript.is_loading)
        self.assertEqual(len(self.store.messages[self.conversation.id]), 1)

    async def test_reply_persist_failure_still_shows_reply(self) -> None:
        self.store.script("append_message", None, StoreError("write failed"))

        await self.pipeline.send("hello")

        messages = self.transcript.messages
        self.assertEqual([m.role for m in messages], [Role.USER, Role.ASSISTANT])
        self.assertIsNone(messages[1].server_id)
        self.assertEqual(self.transcript.error, REPLY_PERSIST_ERROR_MESSAGE)
        self.assertFalse(self.transcript.is_loading)

    async def test_switching_away_discards_late_reply(self) -> None:
        other = self.store.add_conversation("u1", "Other")
        self.responder.gate = asyncio.Event()
        task = self.pipeline.dispatch("hello")
        await self.responder.started.wait()

        self.transcript.reset(other.id)
        self.responder.gate.set()
        await task

        self.assertEqual(self.transcript.conversation_id, other.id)
        self.assertEqual(self.transcript.messages, [])
        self.assertFalse(self.transcript.is_loading)
        stored = self.store.messages[self.conversation.id]
        self.assertEqual([m.role for m in stored], [Role.USER, Role.ASSISTANT])
        self.assertFalse(self.pipeline.is_busy(self.conversation.id))

    async def test_failure_after_switch_becomes_notification(self) -> None:
        other = self.store.add_conversation("u1", "Other")
        notifications: list[Event] = []
        self.bus.subscribe(NOTIFICATION, notifications.append)
        self.responder.gate = asyncio.Event()
        self.responder.error = ResponderError("down")
        task = self.pipeline.dispatch("hello")
        await self.responder.started.wait()

        self.transcript.reset(other.id)
        self.responder.gate.set()
        await task

        self.assertIsNone(self.transcript.error)
        self.assertEqual(len(notifications), 1)
        self.assertEqual(notifications[0].data["variant"], "destructive")

    async def test_auth_failure_ends_session(self) -> None:
        ended: list[Event] = []
        self.bus.subscribe(SESSION_ENDED, ended.append)
        self.store.fail("append_message", AuthError("expired"))

        await self.pipeline.send("hello")

        self.assertEqual(len(ended), 1)
        self.assertEqual(ended[0].data["reason"], "expired")
        self.assertFalse(self.transcript.is_loading)
        self.assertIsNotNone(self.transcript.error)

    async def test_attachment_only_turn_links_attachments(self) -> None:
        staged = await self.store.insert_attachment(
            Attachment(
                message_id="temp",
                file_name="rash.png",
                file_path="k1.png",
                content_type="image/png",
                size_bytes=3,
            )
        )

        await self.pipeline.send("", [staged])

        user_message = self.transcript.messages[0]
        self.assertEqual(user_message.content, "")
        self.assertEqual(self.store.attachments[staged.id].message_id, user_message.server_id)
        self.assertEqual(user_message.attachments[0].message_id, user_message.server_id)

    async def test_link_failure_does_not_fail_turn(self) -> None:
        notifications: list[Event] = []
        self.bus.subscribe(NOTIFICATION, notifications.append)
        self.store.fail("link_attachments", StoreError("patch failed"))
        attachment = Attachment(id="a9", file_name="scan.pdf", file_path="k.pdf")

        await self.pipeline.send("see attached", [attachment])

        self.assertIsNone(self.transcript.error)
        self.assertEqual(len(self.transcript.messages), 2)
        self.assertEqual(len(notifications), 1)

    async def test_edit_message_updates_store_and_transcript(self) -> None:
        await self.pipeline.send("I have a headache")
        user_message = self.transcript.messages[0]

        changed = await self.pipeline.edit_message(
            user_message.client_id, "I have a migraine"
        )

        self.assertTrue(changed)
        self.assertEqual(self.transcript.messages[0].content, "I have a migraine")
        self.assertEqual(self.transcript.messages[0].client_id, user_message.client_id)
        self.assertEqual(
            self.store.messages[self.conversation.id][0].content, "I have a migraine"
        )

    async def test_edit_message_rejects_invalid_targets(self) -> None:
        await self.pipeline.send("hello")
        assistant = self.transcript.messages[1]

        with self.assertRaises(NotFoundError):
            await self.pipeline.edit_message("missing", "text")
        with self.assertRaises(ValueError):
            await self.pipeline.edit_message(assistant.client_id, "text")
        with self.assertRaises(ValueError):
            await self.pipeline.edit_message(self.transcript.messages[0].client_id, " ")

    async def test_edit_message_store_failure_sets_error(self) -> None:
        await self.pipeline.send("hello")
        self.store.fail("update_message_content", StoreError("nope"))

        changed = await self.pipeline.edit_message(
            self.transcript.messages[0].client_id, "changed"
        )

        self.assertFalse(changed)
        self.assertEqual(self.transcript.messages[0].content, "hello")
        self.assertIsNotNone(self.transcript.error)

    async def test_aclose_waits_for_background_sends(self) -> None:
        self.responder.gate = asyncio.Event()
        task = self.pipeline.dispatch("hello")
        await self.responder.started.wait()

        closing = asyncio.create_task(self.pipeline.aclose())
        await asyncio.sleep(0)
        self.assertFalse(closing.done())

        self.responder.gate.set()
        await closing
        self.assertTrue(task.done())
        self.assertEqual(len(self.transcript.messages), 2)


if __name__ == "__main__":
    unittest.main()
