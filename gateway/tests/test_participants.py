import unittest
from unittest import mock

from msg_gateway.errors import Forbidden, InvalidRequest, NotFound
from msg_gateway.messages import MessageKind
from msg_gateway.participants import join_names, normalize_name, rename_text

from .messaging_fixtures import RuntimeFixture


class NameHelperTests(unittest.TestCase):
    def test_join_names(self):
        self.assertEqual(join_names([]), "")
        self.assertEqual(join_names(["a"]), "a")
        self.assertEqual(join_names(["a", "b"]), "a and b")
        self.assertEqual(join_names(["a", "b", "c"]), "a, b, and c")

    def test_normalize_name(self):
        self.assertIsNone(normalize_name(None))
        self.assertIsNone(normalize_name("   "))
        self.assertEqual(normalize_name("  Trip  "), "Trip")
        self.assertEqual(normalize_name("x" * 100), "x" * 80)
        self.assertEqual(normalize_name("abc   def", max_length=6), "abc")

    def test_rename_text(self):
        self.assertEqual(rename_text("alice", None, "Trip"), 'alice named the group "Trip".')
        self.assertEqual(
            rename_text("alice", "Trip", "Ski"), 'alice renamed the group from "Trip" to "Ski".'
        )
        self.assertEqual(rename_text("alice", "Ski", None), 'alice removed the group name (was "Ski").')


class ParticipantManagerTests(RuntimeFixture, unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.manager = self.runtime.participants

    def _history(self, conv_id):
        return self.runtime.messages.list_after(conv_id, None, 100)

    def test_add_participants_writes_system_message(self):
        group = self.group("u_alice", "bob", "carol")
        self.clock.advance()

        result = self.manager.add("u_alice", group.conv_id, ["erin", "u_frank", "bob", "ghost", "erin"])

        self.assertFalse(result.deleted)
        self.assertEqual(
            [user.user_id for user in result.participants],
            ["u_alice", "u_bob", "u_carol", "u_erin", "u_frank"],
        )
        history = self._history(group.conv_id)
        self.assertEqual(len(history), 1)
        self.assertIs(history[0].kind, MessageKind.SYSTEM)
        self.assertEqual(history[0].content, "alice added erin and frank to the conversation.")
        self.assertEqual(self.runtime.conversations.get(group.conv_id).updated_at_ms, history[0].created_at_ms)

    def test_add_rejections(self):
        direct = self.runtime.resolver.resolve("u_alice", ["bob"]).conversation
        with self.assertRaises(InvalidRequest):
            self.manager.add("u_alice", direct.conv_id, ["carol"])

        group = self.group("u_alice", "bob", "carol")
        with self.assertRaises(InvalidRequest):
            self.manager.add("u_alice", group.conv_id, ["bob", "alice", "ghost"])
        with self.assertRaises(Forbidden):
            self.manager.add("u_erin", group.conv_id, ["frank"])
        with self.assertRaises(NotFound):
            self.manager.add("u_alice", "conv_missing", ["frank"])
        self.assertEqual(self._history(group.conv_id), [])

    def test_remove_participant(self):
        group = self.group("u_alice", "bob", "carol", "erin")

        result = self.manager.remove("u_alice", group.conv_id, "carol")

        self.assertFalse(result.deleted)
        self.assertNotIn("u_carol", [user.user_id for user in result.participants])
        self.assertEqual(result.system_message.content, "alice removed carol from the conversation.")
        self.assertTrue(result.system_message.is_system)
        with self.assertRaises(Forbidden):
            self.runtime.gateway.list_messages("u_carol", conversation_id=group.conv_id)
        with self.assertRaises(InvalidRequest):
            self.manager.remove("u_alice", group.conv_id, "carol")

    def test_remove_down_to_one_tears_down(self):
        group = self.group("u_alice", "bob", "carol")
        self.send("u_bob", group.conv_id, "hello")

        self.manager.remove("u_alice", group.conv_id, "u_bob")
        result = self.manager.remove("u_alice", group.conv_id, "u_carol")

        self.assertTrue(result.deleted)
        self.assertIsNone(self.runtime.conversations.get(group.conv_id))
        remaining = self.backend.connection.execute(
            "SELECT COUNT(*) FROM messages WHERE conv_id=?", (group.conv_id,)
        ).fetchone()[0]
        self.assertEqual(remaining, 0)
        self.assertEqual(self.runtime.projector.project("u_alice"), [])

    def test_remove_self_is_leave(self):
        group = self.group("u_alice", "bob", "carol")
        result = self.manager.remove("u_bob", group.conv_id, "bob")
        self.assertEqual(result.system_message.content, "bob left the conversation.")

    def test_leave_group_then_teardown(self):
        group = self.group("u_dave", "bob", "carol")

        left = self.manager.leave("u_dave", group.conv_id)
        self.assertFalse(left.deleted)
        self.assertEqual(left.system_message.content, "Dave D. left the conversation.")
        self.assertEqual(sorted(user.user_id for user in left.participants), ["u_bob", "u_carol"])

        last = self.manager.leave("u_bob", group.conv_id)
        self.assertTrue(last.deleted)
        self.assertIsNone(self.runtime.conversations.get(group.conv_id))

    def test_leave_direct_deletes_for_both(self):
        direct = self.runtime.resolver.resolve("u_alice", ["bob"]).conversation
        self.send("u_alice", direct.conv_id, "hi")

        result = self.manager.leave("u_bob", direct.conv_id)

        self.assertTrue(result.deleted)
        self.assertEqual(self.runtime.projector.project("u_alice"), [])
        with self.assertRaises(NotFound):
            self.runtime.gateway.list_messages("u_alice", conversation_id=direct.conv_id)

    def test_rename_cycle(self):
        group = self.group("u_alice", "bob", "carol")

        named = self.manager.rename("u_alice", group.conv_id, "  Trip  ")
        renamed = self.manager.rename("u_bob", group.conv_id, "Ski")
        before = self.runtime.conversations.get(group.conv_id).updated_at_ms
        self.clock.advance()
        unchanged = self.manager.rename("u_bob", group.conv_id, " Ski ")
        self.assertEqual(self.runtime.conversations.get(group.conv_id).updated_at_ms, before)
        cleared = self.manager.rename("u_carol", group.conv_id, "   ")

        self.assertEqual((named.name, named.changed), ("Trip", True))
        self.assertEqual((renamed.name, renamed.changed), ("Ski", True))
        self.assertFalse(unchanged.changed)
        self.assertIsNone(unchanged.system_message)
        self.assertIsNone(cleared.name)
        self.assertEqual(
            [message.content for message in self._history(group.conv_id)],
            [
                'alice named the group "Trip".',
                'bob renamed the group from "Trip" to "Ski".',
                'carol removed the group name (was "Ski").',
            ],
        )
        self.assertIsNone(self.runtime.conversations.get(group.conv_id).name)

    def test_rename_rejections(self):
        direct = self.runtime.resolver.resolve("u_alice", ["bob"]).conversation
        with self.assertRaises(InvalidRequest):
            self.manager.rename("u_alice", direct.conv_id, "Pals")
        group = self.group("u_alice", "bob", "carol")
        with self.assertRaises(Forbidden):
            self.manager.rename("u_erin", group.conv_id, "Mine")
        long_name = self.manager.rename("u_alice", group.conv_id, "n" * 200)
        self.assertEqual(len(long_name.name), 80)


class ParticipantAtomicityTests(RuntimeFixture, unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.manager = self.runtime.participants
        self.group_conv = self.group("u_alice", "bob", "carol")
        self.manager.rename("u_alice", self.group_conv.conv_id, "Trip")
        self.clock.advance()

    def _snapshot(self, conv_id):
        conversation = self.runtime.conversations.get(conv_id)
        count = self.backend.connection.execute(
            "SELECT COUNT(*) FROM messages WHERE conv_id=?", (conv_id,)
        ).fetchone()[0]
        return (
            sorted(self.runtime.conversations.participants(conv_id)),
            conversation.name,
            conversation.updated_at_ms,
            count,
        )

    def _assert_unchanged_when_append_fails(self, action):
        conv_id = self.group_conv.conv_id
        before = self._snapshot(conv_id)
        with mock.patch.object(self.runtime.messages, "append", side_effect=RuntimeError("disk full")):
            with self.assertRaises(RuntimeError):
                action(conv_id)
        self.assertEqual(self._snapshot(conv_id), before)

    def test_add_rolls_back_when_system_message_fails(self):
        self._assert_unchanged_when_append_fails(
            lambda conv_id: self.manager.add("u_alice", conv_id, ["erin"])
        )

    def test_remove_rolls_back_when_system_message_fails(self):
        self._assert_unchanged_when_append_fails(
            lambda conv_id: self.manager.remove("u_alice", conv_id, "carol")
        )

    def test_leave_rolls_back_when_system_message_fails(self):
        self._assert_unchanged_when_append_fails(lambda conv_id: self.manager.leave("u_bob", conv_id))

    def test_rename_rolls_back_when_system_message_fails(self):
        self._assert_unchanged_when_append_fails(
            lambda conv_id: self.manager.rename("u_alice", conv_id, "Ski")
        )

    def test_teardown_rolls_back_when_delete_fails(self):
        conv_id = self.group_conv.conv_id
        self.manager.remove("u_alice", conv_id, "carol")
        before = self._snapshot(conv_id)

        with mock.patch.object(self.runtime.conversations, "delete", side_effect=RuntimeError("disk full")):
            with self.assertRaises(RuntimeError):
                self.manager.leave("u_bob", conv_id)

        self.assertEqual(self._snapshot(conv_id), before)
        self.assertEqual(before[0], ["u_alice", "u_bob"])


if __name__ == "__main__":
    unittest.main()
