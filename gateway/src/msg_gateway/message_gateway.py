from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Sequence

from .conversations import Conversation, SQLiteConversationStore
from .directory import SQLiteUserDirectory, UserRecord
from .errors import Forbidden, InvalidRequest, NotFound
from .messages import SHARE_TYPES, Message, MessageKind, Share, SQLiteMessageStore
from .resolver import ConversationResolver
from .sqlite_backend import SQLiteBackend
from .sqlite_sessions import _now_ms

logger = logging.getLogger(__name__)


@dataclass
class MessagePage:
    conversation: Conversation
    participants: List[UserRecord]
    messages: List[Message] = field(default_factory=list)


@dataclass
class SentMessage:
    msg_id: str
    conv_id: str
    created_at_ms: int
    message: Message


def parse_share(raw: Any, max_ref_length: int = 128) -> Share | None:
    """Validate a ``{"type", "id"}`` pointer; the target itself is never looked up."""

    if raw is None:
        return None
    if isinstance(raw, Share):
        share_type, ref = raw.share_type, raw.ref
    elif isinstance(raw, dict):
        share_type, ref = raw.get("type"), raw.get("id")
    else:
        raise InvalidRequest("share must be an object with type and id")
    if share_type not in SHARE_TYPES:
        raise InvalidRequest("share type must be profile or post")
    if not isinstance(ref, str) or not ref.strip() or len(ref.strip()) > max_ref_length:
        raise InvalidRequest("share id must be a non-empty string")
    return Share(share_type=share_type, ref=ref.strip())


class MessageGateway:
    """Read/write surface over a conversation's history, gated by membership."""

    def __init__(
        self,
        backend: SQLiteBackend,
        conversations: SQLiteConversationStore,
        messages: SQLiteMessageStore,
        resolver: ConversationResolver,
        directory: SQLiteUserDirectory,
        *,
        page_size: int = 50,
        max_images: int = 10,
        max_content_length: int = 4000,
        max_share_ref_length: int = 128,
        now_func=_now_ms,
    ) -> None:
        self._backend = backend
        self._conversations = conversations
        self._messages = messages
        self._resolver = resolver
        self._directory = directory
        self._page_size = page_size
        self._max_images = max_images
        self._max_content_length = max_content_length
        self._max_share_ref_length = max_share_ref_length
        self._now = now_func

    def list_messages(
        self,
        caller_id: str,
        *,
        to: str | None = None,
        conversation_id: str | None = None,
        cursor_ms: int | None = None,
    ) -> MessagePage:
        """Return up to one page of messages newer than ``cursor_ms``.

        Viewing is reading: every unread message from another participant in
        the conversation gets ``read_at_ms`` stamped as a side effect.
        """

        conversation = self._target(caller_id, to, conversation_id)
        marked = self._messages.mark_read(conversation.conv_id, caller_id, self._now())
        if marked:
            logger.debug("marked %d messages read in %s", marked, conversation.conv_id)
        page = self._messages.list_after(conversation.conv_id, cursor_ms, self._page_size)
        user_ids = self._conversations.participants(conversation.conv_id)
        users = self._directory.get_many(user_ids)
        return MessagePage(
            conversation=conversation,
            participants=[users.get(user_id, UserRecord(user_id=user_id)) for user_id in user_ids],
            messages=page,
        )

    def send_message(
        self,
        caller_id: str,
        *,
        to: str | None = None,
        conversation_id: str | None = None,
        content: str | None = "",
        image_urls: Sequence[str] | None = None,
        share: Any = None,
    ) -> SentMessage:
        if content is not None and not isinstance(content, str):
            raise InvalidRequest("content must be a string")
        text = (content or "").strip()
        if len(text) > self._max_content_length:
            raise InvalidRequest("content is too long")
        urls = self._validate_images(image_urls)
        parsed_share = parse_share(share, self._max_share_ref_length)
        if not text and not urls and parsed_share is None:
            raise InvalidRequest("message needs content, images or a share")

        conversation = self._target(caller_id, to, conversation_id)
        with self._backend.transaction() as cursor:
            if self._conversations.get(conversation.conv_id) is None:
                raise NotFound("conversation not found")
            member = cursor.execute(
                "SELECT 1 FROM conversation_participants WHERE conv_id=? AND user_id=?",
                (conversation.conv_id, caller_id),
            ).fetchone()
            if member is None:
                raise Forbidden("not a participant of this conversation")
            message = self._messages.append(
                cursor,
                conv_id=conversation.conv_id,
                sender_id=caller_id,
                kind=MessageKind.SHARE if parsed_share is not None else MessageKind.TEXT,
                content=text,
                image_urls=urls,
                share=parsed_share,
                now_ms=self._now(),
            )
            self._conversations.touch(cursor, conversation.conv_id, message.created_at_ms)
        return SentMessage(
            msg_id=message.msg_id,
            conv_id=message.conv_id,
            created_at_ms=message.created_at_ms,
            message=message,
        )

    def _target(self, caller_id: str, to: str | None, conversation_id: str | None) -> Conversation:
        if conversation_id:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise NotFound("conversation not found")
            if not self._conversations.is_participant(conversation_id, caller_id):
                raise Forbidden("not a participant of this conversation")
            return conversation
        if to:
            conversation, _ = self._resolver.resolve_direct(caller_id, to)
            return conversation
        raise InvalidRequest("either to or conversation_id is required")

    def _validate_images(self, image_urls: Sequence[str] | None) -> List[str]:
        if image_urls is None:
            return []
        if isinstance(image_urls, str) or not isinstance(image_urls, (list, tuple)):
            raise InvalidRequest("image_urls must be a list of strings")
        if len(image_urls) > self._max_images:
            raise InvalidRequest(f"at most {self._max_images} images per message")
        urls: List[str] = []
        for url in image_urls:
            if not isinstance(url, str) or not url.strip():
                raise InvalidRequest("image_urls must be a list of strings")
            urls.append(url.strip())
        return urls
