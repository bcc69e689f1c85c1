"""Polling synchronisation for the conversation list and the open thread."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from msg_client.gateway_client import GatewayClient

logger = logging.getLogger(__name__)

THREAD_POLL_INTERVAL_S = 2.0
CONVERSATION_POLL_INTERVAL_S = 5.0
TEMP_PREFIX = "temp-"

_temp_counter = itertools.count(1)


def _now_ms() -> int:
    return int(time.time() * 1000)


def new_temp_id(now_ms: Optional[int] = None) -> str:
    return f"{TEMP_PREFIX}{now_ms if now_ms is not None else _now_ms()}-{next(_temp_counter)}"


def is_pending(message: Dict[str, Any]) -> bool:
    return str(message.get("id", "")).startswith(TEMP_PREFIX)


def merge_messages(existing: Iterable[Dict[str, Any]], incoming: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Merge server messages by id; pending messages stay after the confirmed ones."""

    confirmed: Dict[str, Dict[str, Any]] = {}
    pending: List[Dict[str, Any]] = []
    for message in existing:
        if is_pending(message):
            pending.append(message)
        else:
            confirmed[message["id"]] = message
    for message in incoming:
        confirmed[message["id"]] = message
    ordered = sorted(confirmed.values(), key=lambda item: (item["created_at_ms"], item["id"]))
    return ordered + pending


def _sort_ts(item: Dict[str, Any]) -> int:
    last = item.get("last_message") or {}
    return int(last.get("created_at_ms") or item.get("updated_at_ms") or 0)


def collapse_direct_threads(items: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Keep the newest direct row per counterpart, newest first."""

    kept: Dict[str, Dict[str, Any]] = {}
    for item in items:
        other = item.get("other") or {}
        if item.get("is_group") or not other.get("id"):
            key = f"grp:{item['id']}"
        else:
            key = f"dm:{other['id']}"
        current = kept.get(key)
        if current is None or _sort_ts(item) > _sort_ts(current):
            kept[key] = item
    return sorted(kept.values(), key=lambda item: (-_sort_ts(item), item["id"]))


@dataclass
class ThreadView:
    conversation_id: Optional[str] = None
    to: Optional[str] = None
    messages: List[Dict[str, Any]] = field(default_factory=list)
    # Advanced by polls only, never by a confirmed send.
    cursor_ms: Optional[int] = None
    is_group: Optional[bool] = None
    name: Optional[str] = None
    other: Optional[Dict[str, Any]] = None
    members: List[Dict[str, Any]] = field(default_factory=list)


class SyncLoop:
    """Keeps a local conversation list and open thread in step with the gateway.

    Two background tasks poll the open thread and the conversation list on
    independent intervals. A failed poll is logged and retried on the next
    tick. Sends are optimistic: the message is shown at once under a temporary
    id and swapped for the server's copy once the gateway confirms it.
    """

    def __init__(
        self,
        client: GatewayClient,
        *,
        thread_interval_s: float = THREAD_POLL_INTERVAL_S,
        list_interval_s: float = CONVERSATION_POLL_INTERVAL_S,
        on_messages: Optional[Callable[[List[Dict[str, Any]]], None]] = None,
        now_func=_now_ms,
    ) -> None:
        self._client = client
        self._thread_interval_s = thread_interval_s
        self._list_interval_s = list_interval_s
        self._on_messages = on_messages
        self._now = now_func
        self.conversations: List[Dict[str, Any]] = []
        self.thread: Optional[ThreadView] = None
        self._tasks: List[asyncio.Task] = []

    def open_thread(self, *, conversation_id: Optional[str] = None, to: Optional[str] = None) -> ThreadView:
        if not conversation_id and not to:
            raise ValueError("conversation_id or to required")
        self.thread = ThreadView(conversation_id=conversation_id, to=to)
        return self.thread

    async def poll_thread_once(self) -> List[Dict[str, Any]]:
        """Fetch messages newer than the cursor; returns the ones not seen before."""

        thread = self.thread
        if thread is None:
            return []
        body = await self._client.list_messages(
            conversation_id=thread.conversation_id,
            to=thread.to,
            cursor_ms=thread.cursor_ms,
        )
        if self.thread is not thread:
            return []
        thread.conversation_id = body.get("conversation_id") or thread.conversation_id
        if "is_group" in body:
            thread.is_group = bool(body["is_group"])
            thread.name = body.get("name")
            thread.other = body.get("other")
            thread.members = list(body.get("members") or [])
        known = {message["id"] for message in thread.messages}
        incoming = list(body.get("messages", []))
        next_cursor = body.get("next_cursor_ms")
        if next_cursor is None and incoming:
            next_cursor = max(message["created_at_ms"] for message in incoming)
        if next_cursor is not None and (thread.cursor_ms is None or next_cursor > thread.cursor_ms):
            thread.cursor_ms = next_cursor
        thread.messages = merge_messages(thread.messages, incoming)
        fresh = [message for message in incoming if message["id"] not in known]
        if fresh and self._on_messages is not None:
            self._on_messages(fresh)
        return fresh

    async def poll_conversations_once(self) -> List[Dict[str, Any]]:
        items = await self._client.list_conversations()
        server_ids = {item["id"] for item in items}
        optimistic = [
            item for item in self.conversations if item.get("pending") and item["id"] not in server_ids
        ]
        self.conversations = collapse_direct_threads(items + optimistic)
        return self.conversations

    async def send(
        self,
        content: str = "",
        *,
        image_urls: Optional[List[str]] = None,
        share: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        thread = self.thread
        if thread is None:
            raise RuntimeError("open a thread before sending")
        now_ms = self._now()
        temp = {
            "id": new_temp_id(now_ms),
            "conversation_id": thread.conversation_id,
            "sender_id": self._client.user_id,
            "kind": "share" if share is not None else "text",
            "content": content,
            "image_urls": list(image_urls or []),
            "share": share,
            "created_at_ms": now_ms,
            "read_at_ms": None,
            "is_mine": True,
        }
        thread.messages.append(temp)
        try:
            sent = await self._client.send_message(
                conversation_id=thread.conversation_id,
                to=thread.to,
                content=content,
                image_urls=image_urls,
                share=share,
            )
        except Exception:
            thread.messages = [message for message in thread.messages if message["id"] != temp["id"]]
            raise

        confirmed = dict(temp, id=sent["id"], conversation_id=sent["conversation_id"], created_at_ms=sent["created_at_ms"])
        thread.conversation_id = sent["conversation_id"]
        rest = [message for message in thread.messages if message["id"] != temp["id"]]
        thread.messages = merge_messages(rest, [] if any(m["id"] == sent["id"] for m in rest) else [confirmed])
        self._bump_conversation(confirmed)
        return confirmed

    def _bump_conversation(self, message: Dict[str, Any]) -> None:
        last = {
            "id": message["id"],
            "kind": message["kind"],
            "content": message["content"],
            "has_images": bool(message["image_urls"]),
            "share": message["share"],
            "created_at_ms": message["created_at_ms"],
            "is_mine": True,
        }
        for item in self.conversations:
            if item["id"] == message["conversation_id"]:
                item["last_message"] = last
                break
        else:
            thread = self.thread
            if thread is not None and thread.is_group is not None:
                is_group = thread.is_group
            else:
                # Without a poll, only a thread opened by recipient is known to be direct.
                is_group = thread is None or not thread.to
            name = thread.name if thread is not None and is_group else None
            other = thread.other if thread is not None and not is_group else None
            if other is not None:
                display_name = other.get("handle") or other.get("display_name") or other.get("id") or ""
            else:
                display_name = name or (thread.to if thread is not None and thread.to else "")
            self.conversations.append(
                {
                    "id": message["conversation_id"],
                    "kind": "group" if is_group else "direct",
                    "is_group": is_group,
                    "name": name,
                    "display_name": display_name,
                    "updated_at_ms": message["created_at_ms"],
                    "members": list(thread.members) if thread is not None else [],
                    "other": other,
                    "last_message": last,
                    "unread_count": 0,
                    "pending": True,
                }
            )
        self.conversations = collapse_direct_threads(self.conversations)

    def start(self) -> None:
        if not self._tasks:
            self._tasks = [
                asyncio.create_task(self._poll_forever(self.poll_thread_once, self._thread_interval_s)),
                asyncio.create_task(self._poll_forever(self.poll_conversations_once, self._list_interval_s)),
            ]

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _poll_forever(self, poll, interval_s: float) -> None:
        try:
            while True:
                try:
                    await poll()
                except Exception as exc:
                    logger.debug("poll %s failed: %s", poll.__name__, exc)
                await asyncio.sleep(interval_s)
        except asyncio.CancelledError:
            return
