"""Small command line client: list conversations, send, and watch a thread."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any, Dict, List, TextIO

from msg_client.gateway_client import GatewayClient, GatewayError
from msg_client.sync import THREAD_POLL_INTERVAL_S, SyncLoop


def format_conversation(item: Dict[str, Any]) -> str:
    last = item.get("last_message") or {}
    preview = last.get("content") or ("[image]" if last.get("has_images") else "")
    if last.get("share"):
        preview = preview or f"[shared {last['share']['type']}]"
    unread = item.get("unread_count") or 0
    badge = f" ({unread} unread)" if unread else ""
    return f"{item['id']}\t{item.get('display_name') or ''}{badge}\t{preview}"


def format_message(message: Dict[str, Any]) -> str:
    if message.get("kind") == "system":
        return f"* {message['content']}"
    sender = "me" if message.get("is_mine") else message.get("sender_id", "?")
    body = message.get("content") or ""
    if message.get("image_urls"):
        body = " ".join([body] + list(message["image_urls"])).strip()
    if message.get("share"):
        share = message["share"]
        body = f"{body} [shared {share['type']} {share['id']}]".strip()
    return f"[{sender}] {body}"


def _write_lines(output: TextIO, lines: List[str]) -> None:
    for line in lines:
        output.write(line + "\n")
    output.flush()


async def _run_conversations(client: GatewayClient, args: argparse.Namespace, output: TextIO) -> int:
    loop = SyncLoop(client)
    items = await loop.poll_conversations_once()
    _write_lines(output, [format_conversation(item) for item in items])
    return 0


async def _run_send(client: GatewayClient, args: argparse.Namespace, output: TextIO) -> int:
    loop = SyncLoop(client)
    loop.open_thread(conversation_id=args.conversation, to=args.to)
    sent = await loop.send(" ".join(args.text))
    output.write(f"{sent['id']}\t{sent['conversation_id']}\n")
    return 0


async def _run_watch(client: GatewayClient, args: argparse.Namespace, output: TextIO) -> int:
    loop = SyncLoop(
        client,
        thread_interval_s=args.interval,
        on_messages=lambda messages: _write_lines(output, [format_message(m) for m in messages]),
    )
    loop.open_thread(conversation_id=args.conversation, to=args.to)
    if args.once:
        await loop.poll_thread_once()
        return 0
    loop.start()
    try:
        await asyncio.Event().wait()
    finally:
        await loop.stop()
    return 0


async def _run(args: argparse.Namespace, output: TextIO) -> int:
    async with GatewayClient(args.url) as client:
        await client.start_session(args.user)
        if args.command == "conversations":
            return await _run_conversations(client, args, output)
        if args.command == "send":
            return await _run_send(client, args, output)
        return await _run_watch(client, args, output)


def _add_target(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--to", default=None, help="Recipient user id or handle (direct thread)")
    group.add_argument("--conversation", default=None, help="Conversation id")


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Messaging client")
    parser.add_argument("--url", default="http://127.0.0.1:8080", help="Gateway base URL")
    parser.add_argument("--user", required=True, help="User id or handle to sign in as")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log poll failures")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("conversations", help="List conversations, newest first")

    send_parser = subparsers.add_parser("send", help="Send a text message")
    _add_target(send_parser)
    send_parser.add_argument("text", nargs="+", help="Message text")

    watch_parser = subparsers.add_parser("watch", help="Print a thread and follow new messages")
    _add_target(watch_parser)
    watch_parser.add_argument("--interval", type=float, default=THREAD_POLL_INTERVAL_S, help="Seconds between polls")
    watch_parser.add_argument("--once", action="store_true", help="Print the current page and exit")

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    output = output or sys.stdout

    try:
        return asyncio.run(_run(args, output))
    except GatewayError as exc:
        sys.stderr.write(f"error: {exc.code}: {exc.message}\n")
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
