"""Polling client for the messaging gateway."""

from msg_client.gateway_client import GatewayClient, GatewayError
from msg_client.sync import SyncLoop, ThreadView, collapse_direct_threads, merge_messages

__all__ = [
    "GatewayClient",
    "GatewayError",
    "SyncLoop",
    "ThreadView",
    "collapse_direct_threads",
    "merge_messages",
]
