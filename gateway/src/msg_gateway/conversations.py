from __future__ import annotations

import logging
import secrets
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List

from .sqlite_backend import SQLiteBackend
from .sqlite_sessions import _now_ms

logger = logging.getLogger(__name__)

_CONVERSATION_COLUMNS = "conv_id, kind, name, dm_key, created_at_ms, updated_at_ms"


class ConversationKind(str, Enum):
    DIRECT = "direct"
    GROUP = "group"


@dataclass
class Conversation:
    conv_id: str
    kind: ConversationKind
    name: str | None
    dm_key: str | None
    created_at_ms: int
    updated_at_ms: int

    @property
    def is_group(self) -> bool:
        return self.kind is ConversationKind.GROUP


def direct_key(user_a: str, user_b: str) -> str:
    """Order-independent key shared by both sides of a direct conversation."""

    return ":".join(sorted([user_a, user_b]))


def new_conv_id() -> str:
    return f"conv_{secrets.token_hex(8)}"


def _row_to_conversation(row: sqlite3.Row) -> Conversation:
    return Conversation(
        conv_id=row[0],
        kind=ConversationKind(row[1]),
        name=row[2],
        dm_key=row[3],
        created_at_ms=int(row[4]),
        updated_at_ms=int(row[5]),
    )


class SQLiteConversationStore:
    """Conversations and their participant rows.

    Methods that take a ``cursor`` are building blocks for callers that hold
    an open ``SQLiteBackend.transaction()``; the rest manage their own locking.
    """

    def __init__(self, backend: SQLiteBackend, *, now_func=_now_ms) -> None:
        self._backend = backend
        self._now = now_func

    def get(self, conv_id: str) -> Conversation | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE conv_id=?",
                (conv_id,),
            ).fetchone()
        return None if row is None else _row_to_conversation(row)

    def find_direct(self, dm_key: str) -> Conversation | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE dm_key=?",
                (dm_key,),
            ).fetchone()
        return None if row is None else _row_to_conversation(row)

    def create_direct(self, user_a: str, user_b: str) -> tuple[Conversation, bool]:
        """Find or create the direct conversation for a pair of users.

        Returns ``(conversation, created)``. A unique-key violation means
        another writer created the row first; the existing row is returned.
        """

        if user_a == user_b:
            raise ValueError("direct conversation needs two distinct users")
        key = direct_key(user_a, user_b)
        existing = self.find_direct(key)
        if existing is not None:
            return existing, False

        now_ms = self._now()
        conversation = Conversation(
            conv_id=new_conv_id(),
            kind=ConversationKind.DIRECT,
            name=None,
            dm_key=key,
            created_at_ms=now_ms,
            updated_at_ms=now_ms,
        )
        try:
            with self._backend.transaction() as cursor:
                self._insert(cursor, conversation, [user_a, user_b])
        except sqlite3.IntegrityError:
            existing = self.find_direct(key)
            if existing is None:
                raise
            logger.info("direct conversation %s already created by a concurrent writer", existing.conv_id)
            return existing, False
        logger.info("created direct conversation %s", conversation.conv_id)
        return conversation, True

    def find_or_create_group(self, requester_id: str, members: Iterable[str]) -> tuple[Conversation, bool]:
        """Return the group whose membership equals ``members`` exactly, creating it if absent."""

        member_set = set(members)
        member_set.add(requester_id)
        with self._backend.transaction() as cursor:
            existing = self._find_exact_group(cursor, requester_id, member_set)
            if existing is not None:
                return existing, False
            now_ms = self._now()
            conversation = Conversation(
                conv_id=new_conv_id(),
                kind=ConversationKind.GROUP,
                name=None,
                dm_key=None,
                created_at_ms=now_ms,
                updated_at_ms=now_ms,
            )
            self._insert(cursor, conversation, member_set)
        logger.info("created group conversation %s with %d members", conversation.conv_id, len(member_set))
        return conversation, True

    def participants(self, conv_id: str) -> List[str]:
        return self.participants_for([conv_id]).get(conv_id, [])

    def participants_for(self, conv_ids: Iterable[str]) -> Dict[str, List[str]]:
        ids = list(dict.fromkeys(conv_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"""
                SELECT conv_id, user_id FROM conversation_participants
                WHERE conv_id IN ({placeholders})
                ORDER BY joined_at_ms ASC, user_id ASC
                """,
                ids,
            ).fetchall()
        roster: Dict[str, List[str]] = {}
        for row in rows:
            roster.setdefault(row[0], []).append(row[1])
        return roster

    def is_participant(self, conv_id: str, user_id: str) -> bool:
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT 1 FROM conversation_participants WHERE conv_id=? AND user_id=?",
                (conv_id, user_id),
            ).fetchone()
        return row is not None

    def list_for_user(self, user_id: str, limit: int) -> List[Conversation]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                """
                SELECT c.conv_id, c.kind, c.name, c.dm_key, c.created_at_ms, c.updated_at_ms
                FROM conversations c
                JOIN conversation_participants p ON p.conv_id = c.conv_id
                WHERE p.user_id = ?
                ORDER BY c.updated_at_ms DESC, c.conv_id ASC
                LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
        return [_row_to_conversation(row) for row in rows]

    # Transaction building blocks.

    def count_participants(self, cursor: sqlite3.Cursor, conv_id: str) -> int:
        row = cursor.execute(
            "SELECT COUNT(*) FROM conversation_participants WHERE conv_id=?", (conv_id,)
        ).fetchone()
        return int(row[0])

    def add_participants(self, cursor: sqlite3.Cursor, conv_id: str, user_ids: Iterable[str], now_ms: int) -> None:
        for user_id in user_ids:
            cursor.execute(
                "INSERT INTO conversation_participants (conv_id, user_id, joined_at_ms) VALUES (?, ?, ?)",
                (conv_id, user_id, now_ms),
            )

    def remove_participant(self, cursor: sqlite3.Cursor, conv_id: str, user_id: str) -> bool:
        cursor.execute(
            "DELETE FROM conversation_participants WHERE conv_id=? AND user_id=?",
            (conv_id, user_id),
        )
        return cursor.rowcount > 0

    def touch(self, cursor: sqlite3.Cursor, conv_id: str, ts_ms: int) -> None:
        cursor.execute("UPDATE conversations SET updated_at_ms=? WHERE conv_id=?", (ts_ms, conv_id))

    def set_name(self, cursor: sqlite3.Cursor, conv_id: str, name: str | None) -> None:
        cursor.execute("UPDATE conversations SET name=? WHERE conv_id=?", (name, conv_id))

    def delete(self, cursor: sqlite3.Cursor, conv_id: str) -> None:
        cursor.execute("DELETE FROM messages WHERE conv_id=?", (conv_id,))
        cursor.execute("DELETE FROM conversation_participants WHERE conv_id=?", (conv_id,))
        cursor.execute("DELETE FROM conversations WHERE conv_id=?", (conv_id,))

    def _insert(self, cursor: sqlite3.Cursor, conversation: Conversation, members: Iterable[str]) -> None:
        cursor.execute(
            f"INSERT INTO conversations ({_CONVERSATION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
            (
                conversation.conv_id,
                conversation.kind.value,
                conversation.name,
                conversation.dm_key,
                conversation.created_at_ms,
                conversation.updated_at_ms,
            ),
        )
        self.add_participants(cursor, conversation.conv_id, sorted(set(members)), conversation.created_at_ms)

    def _find_exact_group(
        self, cursor: sqlite3.Cursor, requester_id: str, member_set: set[str]
    ) -> Conversation | None:
        members = sorted(member_set)
        placeholders = ",".join("?" for _ in members)
        # Candidates hold no participant outside the set; equal size makes them identical.
        row = cursor.execute(
            f"""
            SELECT c.conv_id, c.kind, c.name, c.dm_key, c.created_at_ms, c.updated_at_ms
            FROM conversations c
            JOIN conversation_participants p ON p.conv_id = c.conv_id
            WHERE c.kind = 'group'
              AND c.conv_id IN (SELECT conv_id FROM conversation_participants WHERE user_id = ?)
            GROUP BY c.conv_id
            HAVING COUNT(*) = ?
               AND SUM(CASE WHEN p.user_id IN ({placeholders}) THEN 1 ELSE 0 END) = COUNT(*)
            ORDER BY c.created_at_ms ASC, c.conv_id ASC
            LIMIT 1
            """,
            (requester_id, len(members), *members),
        ).fetchone()
        return None if row is None else _row_to_conversation(row)
