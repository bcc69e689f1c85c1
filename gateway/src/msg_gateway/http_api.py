from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Any, Dict, List

from aiohttp import web

from .config import GatewayConfig
from .conversations import Conversation, SQLiteConversationStore
from .directory import SQLiteUserDirectory, UserRecord
from .errors import InvalidRequest, MessagingError, NotFound, Unauthorized
from .message_gateway import MessageGateway
from .messages import SQLiteMessageStore
from .participants import MembershipResult, ParticipantManager
from .projector import ConversationListProjector
from .resolver import ConversationResolver
from .sqlite_backend import SQLiteBackend
from .sqlite_sessions import Session, SQLiteSessionStore, _now_ms
from .storage import MAX_FILES, LocalBlobStore

logger = logging.getLogger(__name__)


class Runtime:
    def __init__(self, *, backend: SQLiteBackend, config: GatewayConfig, now_func=_now_ms) -> None:
        self.backend = backend
        self.config = config
        self.directory = SQLiteUserDirectory(backend)
        self.sessions = SQLiteSessionStore(backend, ttl_ms=config.session_ttl_ms, now_func=now_func)
        self.conversations = SQLiteConversationStore(backend, now_func=now_func)
        self.messages = SQLiteMessageStore(backend)
        self.resolver = ConversationResolver(self.conversations, self.directory)
        self.participants = ParticipantManager(
            backend,
            self.conversations,
            self.messages,
            self.directory,
            max_name_length=config.max_name_length,
            now_func=now_func,
        )
        self.gateway = MessageGateway(
            backend,
            self.conversations,
            self.messages,
            self.resolver,
            self.directory,
            page_size=config.page_size,
            max_images=config.max_images,
            max_content_length=config.max_content_length,
            max_share_ref_length=config.max_share_ref_length,
            now_func=now_func,
        )
        self.projector = ConversationListProjector(
            self.conversations,
            self.messages,
            self.directory,
            limit=config.conversation_list_limit,
        )
        self.blobs = LocalBlobStore(config.upload_dir, max_bytes=config.max_image_bytes, now_func=now_func)


RUNTIME_KEY = web.AppKey("runtime", Runtime)


def _error_response(exc: MessagingError) -> web.Response:
    return web.json_response({"code": exc.code, "message": exc.message}, status=exc.status)


@web.middleware
async def request_middleware(request: web.Request, handler) -> web.StreamResponse:
    request_id = str(uuid.uuid4())
    logger.info("[REQ %s] %s %s", request_id, request.method, request.path)
    try:
        response = await handler(request)
    except MessagingError as exc:
        logger.info("[REQ %s] %s: %s", request_id, exc.code, exc.message)
        response = _error_response(exc)
    except web.HTTPException:
        raise
    except Exception:
        logger.exception("[REQ %s] Unhandled error", request_id)
        raise
    response.headers["X-Request-ID"] = request_id
    if request.path.startswith("/v1/"):
        response.headers["Cache-Control"] = "no-store"
    logger.info("[REQ %s] %s", request_id, response.status)
    return response


def _authenticate_request(request: web.Request) -> Session:
    runtime = request.app[RUNTIME_KEY]
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise Unauthorized("missing bearer token")
    session = runtime.sessions.get_by_session(auth_header[len("Bearer ") :].strip())
    if session is None:
        raise Unauthorized("invalid session_token")
    return session


async def _read_json(request: web.Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise InvalidRequest("malformed json")
    if not isinstance(body, dict):
        raise InvalidRequest("json body must be an object")
    return body


def _string_list(value: Any, field_name: str) -> List[str]:
    if not isinstance(value, list) or any(not isinstance(item, str) for item in value):
        raise InvalidRequest(f"{field_name} must be a list of strings")
    return value


def _optional_str(value: Any, field_name: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidRequest(f"{field_name} must be a string")
    return value


def _conversation_fields(conversation: Conversation, members: List[UserRecord], viewer_id: str) -> Dict[str, Any]:
    others = [member for member in members if member.user_id != viewer_id]
    return {
        "conversation_id": conversation.conv_id,
        "kind": conversation.kind.value,
        "is_group": conversation.is_group,
        "name": conversation.name,
        "members": [member.to_api_dict() for member in others],
        "other": None if conversation.is_group or not others else others[0].to_api_dict(),
    }


def _membership_payload(result: MembershipResult) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "status": "ok",
        "conversation_id": result.conversation_id,
        "deleted": result.deleted,
    }
    if not result.deleted:
        payload["participants"] = [user.to_api_dict() for user in result.participants]
    return payload


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_session_start(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _read_json(request)
    identifier = body.get("user")
    if not isinstance(identifier, str) or not identifier.strip():
        raise InvalidRequest("user required")
    user_id = runtime.directory.resolve(identifier)
    if user_id is None:
        raise NotFound("user not found")
    session = runtime.sessions.create(user_id)
    return web.json_response(
        {
            "session_token": session.session_token,
            "user_id": session.user_id,
            "expires_at_ms": session.expires_at_ms,
        }
    )


async def handle_conversation_create(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    body = await _read_json(request)
    recipients = _string_list(body.get("recipients"), "recipients")
    resolved = runtime.resolver.resolve(session.user_id, recipients)
    conversation = resolved.conversation
    return web.json_response(
        {
            "conversation_id": conversation.conv_id,
            "kind": conversation.kind.value,
            "is_group": conversation.is_group,
            "existed": resolved.existed,
        }
    )


async def handle_conversation_list(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    items = runtime.projector.project(session.user_id)
    return web.json_response({"items": [item.to_api_dict(session.user_id) for item in items]})


async def handle_participants_add(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    body = await _read_json(request)
    users = _string_list(body.get("users"), "users")
    result = runtime.participants.add(session.user_id, request.match_info["conv_id"], users)
    return web.json_response(_membership_payload(result))


async def handle_participants_remove(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    body = await _read_json(request)
    target = body.get("user")
    if not isinstance(target, str) or not target.strip():
        raise InvalidRequest("user required")
    result = runtime.participants.remove(session.user_id, request.match_info["conv_id"], target.strip())
    return web.json_response(_membership_payload(result))


async def handle_conversation_rename(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    body = await _read_json(request)
    if "name" not in body:
        raise InvalidRequest("name required (null clears it)")
    name = _optional_str(body.get("name"), "name")
    result = runtime.participants.rename(session.user_id, request.match_info["conv_id"], name)
    return web.json_response(
        {
            "status": "ok",
            "conversation_id": result.conversation_id,
            "name": result.name,
            "changed": result.changed,
        }
    )


async def handle_conversation_leave(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    result = runtime.participants.leave(session.user_id, request.match_info["conv_id"])
    return web.json_response(_membership_payload(result))


def _parse_cursor(raw: str | None) -> int | None:
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError:
        # Unparseable cursors fall back to the first page.
        return None


async def handle_messages_list(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    page = runtime.gateway.list_messages(
        session.user_id,
        to=request.query.get("to"),
        conversation_id=request.query.get("conversation_id"),
        cursor_ms=_parse_cursor(request.query.get("cursor")),
    )
    payload = _conversation_fields(page.conversation, page.participants, session.user_id)
    payload["messages"] = [message.to_api_dict(session.user_id) for message in page.messages]
    payload["next_cursor_ms"] = page.messages[-1].created_at_ms if page.messages else None
    return web.json_response(payload)


async def handle_messages_send(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    body = await _read_json(request)
    image_urls = body.get("image_urls")
    if image_urls is not None:
        image_urls = _string_list(image_urls, "image_urls")
    sent = runtime.gateway.send_message(
        session.user_id,
        to=_optional_str(body.get("to"), "to"),
        conversation_id=_optional_str(body.get("conversation_id"), "conversation_id"),
        content=_optional_str(body.get("content"), "content"),
        image_urls=image_urls,
        share=body.get("share"),
    )
    return web.json_response(
        {
            "id": sent.msg_id,
            "conversation_id": sent.conv_id,
            "created_at_ms": sent.created_at_ms,
        }
    )


async def handle_upload_images(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    _authenticate_request(request)
    if not request.content_type.startswith("multipart/"):
        raise InvalidRequest("multipart form data required")
    max_bytes = runtime.config.max_image_bytes
    reader = await request.multipart()
    urls: List[str] = []
    while True:
        part = await reader.next()
        if part is None:
            break
        if part.name != "images":
            await part.release()
            continue
        if len(urls) >= MAX_FILES:
            raise InvalidRequest(f"at most {MAX_FILES} files per upload")
        data = bytearray()
        while True:
            chunk = await part.read_chunk()
            if not chunk:
                break
            data.extend(chunk)
            if len(data) > max_bytes:
                raise InvalidRequest(f"image exceeds {max_bytes} bytes")
        urls.append(runtime.blobs.put(bytes(data), part.headers.get("Content-Type"), part.filename))
    if not urls:
        raise InvalidRequest("no images provided")
    return web.json_response({"urls": urls})


def create_app(
    *,
    db_path: str | None = None,
    config: GatewayConfig | None = None,
    now_func=_now_ms,
) -> web.Application:
    config = config or GatewayConfig()
    backend = SQLiteBackend(db_path or ":memory:")
    runtime = Runtime(backend=backend, config=config, now_func=now_func)
    Path(config.upload_dir).mkdir(parents=True, exist_ok=True)

    app = web.Application(
        middlewares=[request_middleware],
        client_max_size=config.max_image_bytes * MAX_FILES + 1024 * 1024,
    )
    app[RUNTIME_KEY] = runtime
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/session/start", handle_session_start)
    app.router.add_post("/v1/conversations", handle_conversation_create)
    app.router.add_get("/v1/conversations", handle_conversation_list)
    app.router.add_post("/v1/conversations/{conv_id}/participants", handle_participants_add)
    app.router.add_delete("/v1/conversations/{conv_id}/participants", handle_participants_remove)
    app.router.add_patch("/v1/conversations/{conv_id}", handle_conversation_rename)
    app.router.add_delete("/v1/conversations/{conv_id}", handle_conversation_leave)
    app.router.add_get("/v1/messages", handle_messages_list)
    app.router.add_post("/v1/messages", handle_messages_send)
    app.router.add_post("/v1/uploads/images", handle_upload_images)
    app.router.add_static(runtime.blobs.public_prefix, path=runtime.blobs.root)

    async def close_db(_: web.Application) -> None:
        backend.close()

    app.on_cleanup.append(close_db)
    return app
