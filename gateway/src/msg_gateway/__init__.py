"""Conversation and messaging gateway."""

from .config import GatewayConfig
from .errors import Forbidden, InvalidRequest, MessagingError, NotFound, Unauthorized
from .http_api import create_app
from .server import main

__all__ = [
    "GatewayConfig",
    "MessagingError",
    "Unauthorized",
    "Forbidden",
    "NotFound",
    "InvalidRequest",
    "create_app",
    "main",
]
