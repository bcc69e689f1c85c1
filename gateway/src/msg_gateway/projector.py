from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Sequence

from .conversations import ConversationKind, SQLiteConversationStore
from .directory import SQLiteUserDirectory, UserRecord
from .messages import Message, SQLiteMessageStore

DISPLAY_NAME_MEMBERS = 3


def group_display_name(labels: Sequence[str]) -> str:
    shown = ", ".join(labels[:DISPLAY_NAME_MEMBERS])
    extra = len(labels) - DISPLAY_NAME_MEMBERS
    if extra > 0:
        return f"{shown} +{extra} more"
    return shown


@dataclass
class ConversationSummary:
    conv_id: str
    kind: ConversationKind
    name: str | None
    display_name: str
    updated_at_ms: int
    members: List[UserRecord] = field(default_factory=list)
    last_message: Message | None = None
    unread_count: int = 0

    @property
    def is_group(self) -> bool:
        return self.kind is ConversationKind.GROUP

    @property
    def other(self) -> UserRecord | None:
        if self.is_group or not self.members:
            return None
        return self.members[0]

    @property
    def sort_ts_ms(self) -> int:
        if self.last_message is not None:
            return self.last_message.created_at_ms
        return self.updated_at_ms

    def to_api_dict(self, viewer_id: str) -> dict[str, Any]:
        last = self.last_message
        return {
            "id": self.conv_id,
            "kind": self.kind.value,
            "is_group": self.is_group,
            "name": self.name,
            "display_name": self.display_name,
            "updated_at_ms": self.updated_at_ms,
            "members": [member.to_api_dict() for member in self.members],
            "other": None if self.other is None else self.other.to_api_dict(),
            "last_message": None
            if last is None
            else {
                "id": last.msg_id,
                "kind": last.kind.value,
                "content": last.content,
                "has_images": bool(last.image_urls),
                "share": None if last.share is None else last.share.to_api_dict(),
                "created_at_ms": last.created_at_ms,
                "is_mine": last.sender_id == viewer_id,
            },
            "unread_count": self.unread_count,
        }


def collapse_direct_threads(summaries: Iterable[ConversationSummary]) -> List[ConversationSummary]:
    """Keep the newest direct thread per counterpart and order everything by recency."""

    kept: Dict[str, ConversationSummary] = {}
    for summary in summaries:
        if summary.is_group:
            key = f"grp:{summary.conv_id}"
        else:
            other = summary.other
            key = f"dm:{other.user_id if other is not None else summary.conv_id}"
        current = kept.get(key)
        if current is None or summary.sort_ts_ms > current.sort_ts_ms:
            kept[key] = summary
    return sorted(kept.values(), key=lambda item: (-item.sort_ts_ms, item.conv_id))


class ConversationListProjector:
    def __init__(
        self,
        conversations: SQLiteConversationStore,
        messages: SQLiteMessageStore,
        directory: SQLiteUserDirectory,
        *,
        limit: int = 200,
    ) -> None:
        self._conversations = conversations
        self._messages = messages
        self._directory = directory
        self._limit = limit

    def project(self, user_id: str) -> List[ConversationSummary]:
        rows = self._conversations.list_for_user(user_id, self._limit)
        conv_ids = [row.conv_id for row in rows]
        rosters = self._conversations.participants_for(conv_ids)
        latest = self._messages.latest_for(conv_ids)
        unread = self._messages.unread_counts(user_id, conv_ids)
        users = self._directory.get_many(
            member for roster in rosters.values() for member in roster if member != user_id
        )

        summaries: List[ConversationSummary] = []
        for row in rows:
            others = [
                users.get(member, UserRecord(user_id=member))
                for member in rosters.get(row.conv_id, [])
                if member != user_id
            ]
            if row.is_group:
                display_name = row.name or group_display_name([member.label for member in others])
            else:
                display_name = others[0].label if others else "a user"
            summaries.append(
                ConversationSummary(
                    conv_id=row.conv_id,
                    kind=row.kind,
                    name=row.name if row.is_group else None,
                    display_name=display_name,
                    updated_at_ms=row.updated_at_ms,
                    members=others,
                    last_message=latest.get(row.conv_id),
                    unread_count=unread.get(row.conv_id, 0),
                )
            )
        return collapse_direct_threads(summaries)
