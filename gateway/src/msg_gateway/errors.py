from __future__ import annotations


class MessagingError(Exception):
    """Base class for errors surfaced to the caller as ``{"code", "message"}``."""

    code = "internal"
    status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class Unauthorized(MessagingError):
    code = "unauthorized"
    status = 401


class Forbidden(MessagingError):
    code = "forbidden"
    status = 403


class NotFound(MessagingError):
    code = "not_found"
    status = 404


class InvalidRequest(MessagingError):
    code = "invalid_request"
    status = 400
