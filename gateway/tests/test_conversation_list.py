import unittest

from msg_gateway.conversations import ConversationKind
from msg_gateway.directory import UserRecord
from msg_gateway.projector import ConversationSummary, collapse_direct_threads, group_display_name

from .messaging_fixtures import START_MS, RuntimeFixture


class DisplayNameTests(unittest.TestCase):
    def test_group_display_name(self):
        self.assertEqual(group_display_name(["a"]), "a")
        self.assertEqual(group_display_name(["a", "b", "c"]), "a, b, c")
        self.assertEqual(group_display_name(["a", "b", "c", "d", "e"]), "a, b, c +2 more")

    def test_collapse_keeps_newest_direct_row(self):
        bob = UserRecord("u_bob", "bob")
        older = ConversationSummary("c1", ConversationKind.DIRECT, None, "bob", 10, [bob])
        newer = ConversationSummary("c2", ConversationKind.DIRECT, None, "bob", 20, [bob])
        group = ConversationSummary("g1", ConversationKind.GROUP, None, "bob", 15, [bob])

        collapsed = collapse_direct_threads([older, group, newer])

        self.assertEqual([item.conv_id for item in collapsed], ["c2", "g1"])


class ConversationListProjectorTests(RuntimeFixture, unittest.TestCase):
    def _project(self, user_id="u_alice"):
        return self.runtime.projector.project(user_id)

    def test_orders_by_latest_activity(self):
        direct = self.runtime.resolver.resolve("u_alice", ["bob"]).conversation
        self.clock.advance()
        group = self.group("u_alice", "carol", "erin")
        self.clock.advance()
        self.send("u_bob", direct.conv_id, "newest")

        items = self._project()
        self.assertEqual([item.conv_id for item in items], [direct.conv_id, group.conv_id])
        self.assertEqual(items[0].sort_ts_ms, START_MS + 2000)
        self.assertIsNone(items[1].last_message)
        self.assertEqual(items[1].sort_ts_ms, START_MS + 1000)

    def test_summary_fields_for_direct_and_group(self):
        direct = self.runtime.resolver.resolve("u_alice", ["bob"]).conversation
        self.send("u_bob", direct.conv_id, "one")
        self.send("u_bob", direct.conv_id, "two")
        self.runtime.gateway.send_message("u_alice", conversation_id=direct.conv_id, image_urls=["/x.png"])
        big = self.group("u_alice", "bob", "carol", "u_dave", "erin", "frank")

        items = {item.conv_id: item for item in self._project()}

        dm = items[direct.conv_id]
        self.assertFalse(dm.is_group)
        self.assertEqual(dm.display_name, "bob")
        self.assertEqual(dm.other.user_id, "u_bob")
        self.assertEqual(dm.unread_count, 2)
        payload = dm.to_api_dict("u_alice")
        self.assertTrue(payload["last_message"]["has_images"])
        self.assertTrue(payload["last_message"]["is_mine"])
        self.assertEqual(payload["other"]["handle"], "bob")

        group = items[big.conv_id]
        self.assertTrue(group.is_group)
        self.assertIsNone(group.other)
        self.assertEqual(group.display_name, "bob, carol, Dave D. +2 more")

        self.runtime.participants.rename("u_alice", big.conv_id, "Team")
        renamed = {item.conv_id: item for item in self._project()}[big.conv_id]
        self.assertEqual(renamed.display_name, "Team")

    def test_unread_counts_skip_own_messages(self):
        group = self.group("u_alice", "bob", "carol")
        self.send("u_alice", group.conv_id, "hi all")
        self.send("u_bob", group.conv_id, "hi alice")

        self.assertEqual(self._project("u_alice")[0].unread_count, 1)
        self.assertEqual(self._project("u_carol")[0].unread_count, 2)
        self.runtime.gateway.list_messages("u_carol", conversation_id=group.conv_id)
        self.assertEqual(self._project("u_carol")[0].unread_count, 0)
        # Read state is a single stamp per message.
        self.assertEqual(self._project("u_alice")[0].unread_count, 0)

    def test_shrunken_group_stays_a_group(self):
        direct = self.runtime.resolver.resolve("u_alice", ["bob"]).conversation
        group = self.group("u_alice", "bob", "carol")
        self.runtime.participants.leave("u_carol", group.conv_id)

        items = {item.conv_id: item for item in self._project()}
        self.assertEqual(set(items), {direct.conv_id, group.conv_id})
        self.assertTrue(items[group.conv_id].is_group)
        self.assertEqual(items[group.conv_id].display_name, "bob")

    def test_legacy_duplicate_direct_rows_collapse(self):
        current = self.runtime.resolver.resolve("u_alice", ["bob"]).conversation
        with self.backend.transaction() as cursor:
            cursor.execute(
                "INSERT INTO conversations VALUES ('conv_legacy', 'direct', NULL, NULL, ?, ?)",
                (START_MS - 5000, START_MS - 5000),
            )
            cursor.executemany(
                "INSERT INTO conversation_participants VALUES ('conv_legacy', ?, ?)",
                [("u_alice", START_MS - 5000), ("u_bob", START_MS - 5000)],
            )
        self.clock.advance()
        self.send("u_bob", "conv_legacy", "from the old thread")

        items = self._project()
        self.assertEqual([item.conv_id for item in items], ["conv_legacy"])

        self.clock.advance()
        self.send("u_alice", current.conv_id, "from the new thread")
        self.assertEqual([item.conv_id for item in self._project()], [current.conv_id])


if __name__ == "__main__":
    unittest.main()
