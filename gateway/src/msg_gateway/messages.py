from __future__ import annotations

import json
import secrets
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Sequence

from .sqlite_backend import SQLiteBackend

_MESSAGE_COLUMNS = (
    "msg_id, conv_id, sender_id, kind, content, image_urls, share_type, share_ref, created_at_ms, read_at_ms"
)


class MessageKind(str, Enum):
    TEXT = "text"
    SYSTEM = "system"
    SHARE = "share"


SHARE_TYPES = ("profile", "post")


@dataclass(frozen=True)
class Share:
    """Pointer to a shared user profile or content post."""

    share_type: str
    ref: str

    def to_api_dict(self) -> dict[str, str]:
        return {"type": self.share_type, "id": self.ref}


@dataclass
class Message:
    msg_id: str
    conv_id: str
    sender_id: str
    kind: MessageKind
    content: str
    created_at_ms: int
    image_urls: List[str] = field(default_factory=list)
    share: Share | None = None
    read_at_ms: int | None = None

    @property
    def is_system(self) -> bool:
        return self.kind is MessageKind.SYSTEM

    def to_api_dict(self, viewer_id: str) -> dict[str, Any]:
        return {
            "id": self.msg_id,
            "conversation_id": self.conv_id,
            "sender_id": self.sender_id,
            "kind": self.kind.value,
            "content": self.content,
            "image_urls": list(self.image_urls),
            "share": None if self.share is None else self.share.to_api_dict(),
            "created_at_ms": self.created_at_ms,
            "read_at_ms": self.read_at_ms,
            "is_mine": self.sender_id == viewer_id,
        }


def new_msg_id() -> str:
    return f"msg_{secrets.token_hex(8)}"


def _row_to_message(row: sqlite3.Row) -> Message:
    share = None
    if row[6] is not None and row[7] is not None:
        share = Share(share_type=row[6], ref=row[7])
    return Message(
        msg_id=row[0],
        conv_id=row[1],
        sender_id=row[2],
        kind=MessageKind(row[3]),
        content=row[4],
        image_urls=list(json.loads(row[5] or "[]")),
        share=share,
        created_at_ms=int(row[8]),
        read_at_ms=None if row[9] is None else int(row[9]),
    )


class SQLiteMessageStore:
    """Append-only message rows; ``read_at_ms`` is the only mutable column."""

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def append(
        self,
        cursor: sqlite3.Cursor,
        *,
        conv_id: str,
        sender_id: str,
        kind: MessageKind,
        content: str,
        now_ms: int,
        image_urls: Sequence[str] = (),
        share: Share | None = None,
    ) -> Message:
        """Insert a message inside the caller's transaction.

        ``created_at_ms`` is strictly increasing per conversation so that a
        timestamp cursor never skips a message sharing the previous millisecond.
        """

        row = cursor.execute(
            "SELECT MAX(created_at_ms) FROM messages WHERE conv_id=?", (conv_id,)
        ).fetchone()
        latest = row[0]
        created_at_ms = now_ms if latest is None else max(now_ms, int(latest) + 1)
        message = Message(
            msg_id=new_msg_id(),
            conv_id=conv_id,
            sender_id=sender_id,
            kind=kind,
            content=content,
            image_urls=list(image_urls),
            share=share,
            created_at_ms=created_at_ms,
        )
        cursor.execute(
            f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                message.msg_id,
                message.conv_id,
                message.sender_id,
                message.kind.value,
                message.content,
                json.dumps(message.image_urls),
                None if share is None else share.share_type,
                None if share is None else share.ref,
                message.created_at_ms,
                None,
            ),
        )
        return message

    def list_after(self, conv_id: str, after_ms: int | None, limit: int) -> List[Message]:
        """Oldest-first page of messages created strictly after ``after_ms``."""

        with self._backend.lock:
            if after_ms is None:
                rows = self._backend.connection.execute(
                    f"""
                    SELECT {_MESSAGE_COLUMNS} FROM messages WHERE conv_id=?
                    ORDER BY created_at_ms ASC, msg_id ASC LIMIT ?
                    """,
                    (conv_id, limit),
                ).fetchall()
            else:
                rows = self._backend.connection.execute(
                    f"""
                    SELECT {_MESSAGE_COLUMNS} FROM messages WHERE conv_id=? AND created_at_ms > ?
                    ORDER BY created_at_ms ASC, msg_id ASC LIMIT ?
                    """,
                    (conv_id, after_ms, limit),
                ).fetchall()
        return [_row_to_message(row) for row in rows]

    def get(self, msg_id: str) -> Message | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE msg_id=?", (msg_id,)
            ).fetchone()
        return None if row is None else _row_to_message(row)

    def mark_read(self, conv_id: str, reader_id: str, now_ms: int) -> int:
        """Stamp every unread message not sent by ``reader_id``; returns the row count."""

        with self._backend.lock:
            cursor = self._backend.connection.execute(
                """
                UPDATE messages SET read_at_ms=?
                WHERE conv_id=? AND sender_id != ? AND read_at_ms IS NULL
                """,
                (now_ms, conv_id, reader_id),
            )
            return cursor.rowcount

    def latest_for(self, conv_ids: Iterable[str]) -> Dict[str, Message]:
        ids = list(dict.fromkeys(conv_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM (
                    SELECT *, ROW_NUMBER() OVER (
                        PARTITION BY conv_id ORDER BY created_at_ms DESC, msg_id DESC
                    ) AS rn
                    FROM messages WHERE conv_id IN ({placeholders})
                ) WHERE rn = 1
                """,
                ids,
            ).fetchall()
        return {row[1]: _row_to_message(row) for row in rows}

    def unread_counts(self, user_id: str, conv_ids: Iterable[str]) -> Dict[str, int]:
        ids = list(dict.fromkeys(conv_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"""
                SELECT conv_id, COUNT(*) FROM messages
                WHERE conv_id IN ({placeholders}) AND sender_id != ? AND read_at_ms IS NULL
                GROUP BY conv_id
                """,
                (*ids, user_id),
            ).fetchall()
        return {row[0]: int(row[1]) for row in rows}
