from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List

from .conversations import Conversation, SQLiteConversationStore
from .directory import SQLiteUserDirectory
from .errors import InvalidRequest, NotFound


@dataclass
class ResolvedConversation:
    conversation: Conversation
    created: bool

    @property
    def existed(self) -> bool:
        return not self.created


class ConversationResolver:
    """Maps a caller plus a recipient list onto exactly one conversation."""

    def __init__(self, conversations: SQLiteConversationStore, directory: SQLiteUserDirectory) -> None:
        self._conversations = conversations
        self._directory = directory

    def resolve_targets(self, caller_id: str, targets: Iterable[str]) -> List[str]:
        """Resolve ids/handles, dropping unknown entries, duplicates and the caller."""

        resolved: List[str] = []
        for entry in targets:
            user_id = self._directory.resolve(str(entry))
            if user_id is None or user_id == caller_id or user_id in resolved:
                continue
            resolved.append(user_id)
        return resolved

    def resolve(self, caller_id: str, targets: Iterable[str]) -> ResolvedConversation:
        others = self.resolve_targets(caller_id, targets)
        if not others:
            raise InvalidRequest("no valid recipients")
        if len(others) == 1:
            conversation, created = self._conversations.create_direct(caller_id, others[0])
            return ResolvedConversation(conversation=conversation, created=created)

        if not self._directory.exists_all(others):
            raise NotFound("one or more selected users do not exist")
        conversation, created = self._conversations.find_or_create_group(caller_id, others)
        return ResolvedConversation(conversation=conversation, created=created)

    def resolve_direct(self, caller_id: str, identifier: str) -> tuple[Conversation, str]:
        """Find or create the DM with a single recipient; returns it with the peer id."""

        peer_id = self._directory.resolve(identifier)
        if peer_id is None:
            raise NotFound("target user not found")
        if peer_id == caller_id:
            raise InvalidRequest("cannot message yourself")
        conversation, _ = self._conversations.create_direct(caller_id, peer_id)
        return conversation, peer_id
