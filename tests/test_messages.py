import random
import unittest

from chatsync.memory_service import InMemoryRealtimeService
from chatsync.messages import (
    NEW_MESSAGE_EVENT,
    MessageStream,
    apply_change,
    apply_delete,
    apply_insert,
    apply_update,
    receiver_for,
)
from chatsync.models import DIRECT_MESSAGES, GLOBAL_MESSAGES, GROUP_MESSAGES, Message, Scope, UserProfile
from chatsync.service import ChangeEvent, ChangeKind, ServiceError, WriteFailed

from tests.chat_helpers import seed_message


def _message(message_id: str, text: str = "hi", **extra) -> Message:
    return Message.from_row({"id": message_id, "sender_id": "u2", "message_text": text, **extra})


class ReducerTests(unittest.TestCase):
    def test_insert_appends_and_ignores_duplicates(self):
        messages = apply_insert([], _message("m1"))
        messages = apply_insert(messages, _message("m2"))
        again = apply_insert(messages, _message("m1", "changed"))

        self.assertEqual([m.id for m in again], ["m1", "m2"])
        self.assertEqual(again[0].message_text, "hi")

    def test_update_merges_only_given_fields(self):
        messages = [_message("m1", "first", sender_name="Bo", is_pinned=True), _message("m2")]

        updated = apply_update(messages, {"id": "m1", "message_text": "edited", "is_edited": True})

        self.assertEqual(updated[0].message_text, "edited")
        self.assertTrue(updated[0].is_edited)
        self.assertTrue(updated[0].is_pinned)
        self.assertEqual(updated[0].sender_name, "Bo")
        self.assertIs(updated[1], messages[1])

    def test_update_for_unknown_id_is_a_no_op(self):
        messages = [_message("m1")]
        self.assertEqual(apply_update(messages, {"id": "missing", "message_text": "x"}), messages)

    def test_delete_removes_by_id(self):
        messages = [_message("m1"), _message("m2")]
        self.assertEqual([m.id for m in apply_delete(messages, "m1")], ["m2"])
        self.assertEqual([m.id for m in apply_delete(messages, "nope")], ["m1", "m2"])

    def test_apply_change_dispatches_by_kind(self):
        table = DIRECT_MESSAGES
        messages = apply_change([], ChangeEvent(table, ChangeKind.INSERT, new={"id": "m1", "message_text": "a"}))
        messages = apply_change(messages, ChangeEvent(table, ChangeKind.UPDATE, new={"id": "m1", "message_text": "b"}))
        self.assertEqual(messages[0].message_text, "b")
        messages = apply_change(messages, ChangeEvent(table, ChangeKind.DELETE, old={"id": "m1"}))
        self.assertEqual(messages, [])

    def test_insert_event_without_id_is_rejected(self):
        with self.assertRaises(ValueError):
            apply_change([], ChangeEvent(DIRECT_MESSAGES, ChangeKind.INSERT, new={"message_text": "a"}))

    def test_random_event_sequences_match_a_keyed_model(self):
        rng = random.Random(7)
        for _ in range(25):
            messages = []
            model = {}
            for step in range(40):
                message_id = f"m{rng.randint(0, 6)}"
                roll = rng.random()
                if roll < 0.5:
                    event = ChangeEvent(DIRECT_MESSAGES, ChangeKind.INSERT, new={"id": message_id, "message_text": str(step)})
                    model.setdefault(message_id, str(step))
                elif roll < 0.8:
                    event = ChangeEvent(DIRECT_MESSAGES, ChangeKind.UPDATE, new={"id": message_id, "message_text": str(step)})
                    if message_id in model:
                        model[message_id] = str(step)
                else:
                    event = ChangeEvent(DIRECT_MESSAGES, ChangeKind.DELETE, old={"id": message_id})
                    model.pop(message_id, None)
                messages = apply_change(messages, event)

                ids = [m.id for m in messages]
                self.assertEqual(len(ids), len(set(ids)))
                self.assertEqual(ids, list(model))
                self.assertEqual([m.message_text for m in messages], list(model.values()))

    def test_receiver_is_the_other_participant(self):
        self.assertEqual(receiver_for("u1_u2", "u1"), "u2")
        self.assertEqual(receiver_for("u1_u2", "u2"), "u1")
        self.assertIsNone(receiver_for("u1", "u1"))


class MessageStreamTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.service = InMemoryRealtimeService()
        self.stream = MessageStream(self.service)
        self.sender = UserProfile(id="p-u1", user_id="u1", display_name="Ana")

    async def test_history_is_chronological_and_skips_deleted_rows(self):
        scope = Scope.direct("u1_u2")
        await seed_message(self.service, scope, "m2", "second", created_at_ms=2000)
        await seed_message(self.service, scope, "m1", "first", created_at_ms=1000)
        await seed_message(self.service, scope, "gone", "deleted", created_at_ms=1500, is_deleted=True)
        await seed_message(self.service, Scope.direct("u1_u3"), "other", "elsewhere", created_at_ms=1200)

        history = await self.stream.load_history(scope)

        self.assertEqual([m.id for m in history], ["m1", "m2"])

    async def test_global_history_keeps_the_newest_fifty(self):
        scope = Scope.global_feed()
        for i in range(60):
            await seed_message(self.service, scope, f"m{i}", str(i), created_at_ms=1000 + i)

        history = await self.stream.load_history(scope)

        self.assertEqual(len(history), 50)
        self.assertEqual(history[0].id, "m10")
        self.assertEqual(history[-1].id, "m59")

    async def test_scoped_history_is_unbounded_by_default(self):
        scope = Scope.group("g1")
        for i in range(60):
            await seed_message(self.service, scope, f"m{i}", str(i), created_at_ms=1000 + i)

        history = await self.stream.load_history(scope)

        self.assertEqual(len(history), 60)

    async def test_history_failure_raises(self):
        self.service.failing_tables.add(DIRECT_MESSAGES)
        with self.assertRaises(ServiceError):
            await self.stream.load_history(Scope.direct("u1_u2"))

    async def test_direct_send_sets_receiver_and_broadcasts(self):
        scope = Scope.direct("u1_u2")
        payloads = []
        await self.service.subscribe_broadcast(scope.channel_name, NEW_MESSAGE_EVENT, payloads.append)

        message = await self.stream.send(scope, self.sender, "hello")

        self.assertEqual(message.receiver_id, "u2")
        self.assertEqual(message.sender_name, "Ana")
        self.assertEqual(message.conversation_id, "u1_u2")
        self.assertEqual(len(payloads), 1)
        self.assertEqual(payloads[0]["message"]["id"], message.id)
        rows = await self.service.select(DIRECT_MESSAGES, {"id": message.id})
        self.assertFalse(rows[0]["is_deleted"])

    async def test_group_and_global_sends_use_their_tables(self):
        group_message = await self.stream.send(Scope.group("g1"), self.sender, "to the group")
        global_message = await self.stream.send(Scope.global_feed(), self.sender, "to everyone")

        self.assertEqual(group_message.group_id, "g1")
        self.assertIsNone(group_message.receiver_id)
        self.assertEqual(len(await self.service.select(GROUP_MESSAGES)), 1)
        self.assertEqual((await self.service.select(GLOBAL_MESSAGES))[0]["id"], global_message.id)

    async def test_sender_without_display_name_is_unknown_user(self):
        anonymous = UserProfile(id="p-u9", user_id="u9")
        message = await self.stream.send(Scope.group("g1"), anonymous, "hey")
        self.assertEqual(message.sender_name, "Unknown User")

    async def test_invalid_sends_write_nothing(self):
        with self.assertRaises(ValueError):
            await self.stream.send(Scope.group("g1"), self.sender, "   ")
        with self.assertRaises(ValueError):
            await self.stream.send(Scope.group("g1"), self.sender, "hi", message_type="sticker")
        self.assertEqual(await self.service.select(GROUP_MESSAGES), [])

    async def test_write_failure_propagates(self):
        self.service.failing_tables.add(GROUP_MESSAGES)
        with self.assertRaises(WriteFailed):
            await self.stream.send(Scope.group("g1"), self.sender, "hi")

    async def test_broadcast_failure_is_only_logged(self):
        async def failing_broadcast(channel, event, payload):
            raise ServiceError("broadcast down")

        self.service.broadcast = failing_broadcast
        with self.assertLogs("chatsync.messages", level="WARNING"):
            message = await self.stream.send(Scope.group("g1"), self.sender, "still stored")

        self.assertEqual((await self.service.select(GROUP_MESSAGES))[0]["id"], message.id)


if __name__ == "__main__":
    unittest.main()
