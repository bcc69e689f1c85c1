"""Membership and naming changes for existing conversations.

Every mutation runs in a single ``BEGIN IMMEDIATE`` transaction that covers
the membership/name change, the system message describing it and the
recency bump, or the full teardown when fewer than two participants remain.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Iterable, List, Sequence

from .conversations import Conversation, SQLiteConversationStore
from .directory import SQLiteUserDirectory, UserRecord, label_for
from .errors import Forbidden, InvalidRequest, NotFound
from .messages import Message, MessageKind, SQLiteMessageStore
from .sqlite_backend import SQLiteBackend
from .sqlite_sessions import _now_ms

logger = logging.getLogger(__name__)

MIN_PARTICIPANTS = 2
DEFAULT_MAX_NAME_LENGTH = 80


def join_names(names: Sequence[str]) -> str:
    """Join labels as "X", "X and Y" or "X, Y, and Z"."""

    if not names:
        return ""
    if len(names) == 1:
        return names[0]
    if len(names) == 2:
        return f"{names[0]} and {names[1]}"
    return f"{', '.join(names[:-1])}, and {names[-1]}"


def rename_text(actor: str, old_name: str | None, new_name: str | None) -> str:
    if old_name and new_name:
        return f'{actor} renamed the group from "{old_name}" to "{new_name}".'
    if new_name:
        return f'{actor} named the group "{new_name}".'
    return f'{actor} removed the group name (was "{old_name}").'


def normalize_name(raw: str | None, max_length: int = DEFAULT_MAX_NAME_LENGTH) -> str | None:
    cleaned = (raw or "").strip()[:max_length].strip()
    return cleaned or None


@dataclass
class MembershipResult:
    conversation_id: str
    deleted: bool
    participants: List[UserRecord] = field(default_factory=list)
    system_message: Message | None = None


@dataclass
class RenameResult:
    conversation_id: str
    name: str | None
    changed: bool
    system_message: Message | None = None


class ParticipantManager:
    def __init__(
        self,
        backend: SQLiteBackend,
        conversations: SQLiteConversationStore,
        messages: SQLiteMessageStore,
        directory: SQLiteUserDirectory,
        *,
        max_name_length: int = DEFAULT_MAX_NAME_LENGTH,
        now_func=_now_ms,
    ) -> None:
        self._backend = backend
        self._conversations = conversations
        self._messages = messages
        self._directory = directory
        self._max_name_length = max_name_length
        self._now = now_func

    def add(self, caller_id: str, conv_id: str, identifiers: Iterable[str]) -> MembershipResult:
        with self._backend.transaction() as cursor:
            conversation = self._require_member(cursor, conv_id, caller_id)
            if not conversation.is_group:
                raise InvalidRequest("cannot add participants to a direct conversation")
            existing = set(self._roster(cursor, conv_id))
            to_add: List[str] = []
            for entry in identifiers:
                user_id = self._directory.resolve(str(entry))
                if user_id is None or user_id == caller_id or user_id in existing or user_id in to_add:
                    continue
                to_add.append(user_id)
            if not to_add:
                raise InvalidRequest("no new participants to add")
            users = self._directory.get_many(to_add + [caller_id])
            if any(user_id not in users for user_id in to_add):
                raise NotFound("one or more selected users do not exist")

            now_ms = self._now()
            self._conversations.add_participants(cursor, conv_id, to_add, now_ms)
            actor = label_for(users, caller_id, "Someone")
            names = join_names([users[user_id].label for user_id in to_add])
            message = self._system_message(
                cursor, conv_id, caller_id, f"{actor} added {names} to the conversation.", now_ms
            )
        logger.info("added %d participants to %s", len(to_add), conv_id)
        return MembershipResult(
            conversation_id=conv_id,
            deleted=False,
            participants=self._participants(conv_id),
            system_message=message,
        )

    def remove(self, caller_id: str, conv_id: str, target: str) -> MembershipResult:
        target_id = self._directory.resolve(target) or target
        if target_id == caller_id:
            return self.leave(caller_id, conv_id)

        with self._backend.transaction() as cursor:
            self._require_member(cursor, conv_id, caller_id)
            if target_id not in self._roster(cursor, conv_id):
                raise InvalidRequest("user is not in the conversation")
            users = self._directory.get_many([caller_id, target_id])
            if target_id not in users:
                raise NotFound("target user not found")

            self._conversations.remove_participant(cursor, conv_id, target_id)
            if self._conversations.count_participants(cursor, conv_id) < MIN_PARTICIPANTS:
                self._conversations.delete(cursor, conv_id)
                deleted = True
                message = None
            else:
                deleted = False
                message = self._system_message(
                    cursor,
                    conv_id,
                    caller_id,
                    f"{label_for(users, caller_id, 'Someone')} removed {users[target_id].label} from the conversation.",
                    self._now(),
                )
        if deleted:
            logger.info("conversation %s torn down after removal", conv_id)
            return MembershipResult(conversation_id=conv_id, deleted=True)
        return MembershipResult(
            conversation_id=conv_id,
            deleted=False,
            participants=self._participants(conv_id),
            system_message=message,
        )

    def leave(self, caller_id: str, conv_id: str) -> MembershipResult:
        message = None
        with self._backend.transaction() as cursor:
            conversation = self._require_member(cursor, conv_id, caller_id)
            if not conversation.is_group:
                self._conversations.delete(cursor, conv_id)
                deleted = True
            else:
                self._conversations.remove_participant(cursor, conv_id, caller_id)
                deleted = self._conversations.count_participants(cursor, conv_id) < MIN_PARTICIPANTS
                if deleted:
                    self._conversations.delete(cursor, conv_id)
                else:
                    users = self._directory.get_many([caller_id])
                    message = self._system_message(
                        cursor,
                        conv_id,
                        caller_id,
                        f"{label_for(users, caller_id, 'Someone')} left the conversation.",
                        self._now(),
                    )
        if deleted:
            logger.info("conversation %s deleted when %s left", conv_id, caller_id)
            return MembershipResult(conversation_id=conv_id, deleted=True)
        return MembershipResult(
            conversation_id=conv_id,
            deleted=False,
            participants=self._participants(conv_id),
            system_message=message,
        )

    def rename(self, caller_id: str, conv_id: str, raw_name: str | None) -> RenameResult:
        new_name = normalize_name(raw_name, self._max_name_length)
        with self._backend.transaction() as cursor:
            conversation = self._require_member(cursor, conv_id, caller_id)
            if not conversation.is_group:
                raise InvalidRequest("direct conversations cannot be renamed")
            if new_name == conversation.name:
                return RenameResult(conversation_id=conv_id, name=conversation.name, changed=False)

            self._conversations.set_name(cursor, conv_id, new_name)
            users = self._directory.get_many([caller_id])
            message = self._system_message(
                cursor,
                conv_id,
                caller_id,
                rename_text(label_for(users, caller_id, "Someone"), conversation.name, new_name),
                self._now(),
            )
        return RenameResult(conversation_id=conv_id, name=new_name, changed=True, system_message=message)

    def _require_member(self, cursor: sqlite3.Cursor, conv_id: str, caller_id: str) -> Conversation:
        conversation = self._conversations.get(conv_id)
        if conversation is None:
            raise NotFound("conversation not found")
        row = cursor.execute(
            "SELECT 1 FROM conversation_participants WHERE conv_id=? AND user_id=?",
            (conv_id, caller_id),
        ).fetchone()
        if row is None:
            raise Forbidden("not a participant of this conversation")
        return conversation

    def _roster(self, cursor: sqlite3.Cursor, conv_id: str) -> List[str]:
        rows = cursor.execute(
            "SELECT user_id FROM conversation_participants WHERE conv_id=?", (conv_id,)
        ).fetchall()
        return [row[0] for row in rows]

    def _system_message(
        self, cursor: sqlite3.Cursor, conv_id: str, actor_id: str, text: str, now_ms: int
    ) -> Message:
        message = self._messages.append(
            cursor,
            conv_id=conv_id,
            sender_id=actor_id,
            kind=MessageKind.SYSTEM,
            content=text,
            now_ms=now_ms,
        )
        self._conversations.touch(cursor, conv_id, message.created_at_ms)
        return message

    def _participants(self, conv_id: str) -> List[UserRecord]:
        user_ids = self._conversations.participants(conv_id)
        users = self._directory.get_many(user_ids)
        return [users.get(user_id, UserRecord(user_id=user_id)) for user_id in user_ids]
