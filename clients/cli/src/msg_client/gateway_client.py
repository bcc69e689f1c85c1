"""aiohttp client for the messaging gateway HTTP API."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiohttp


class GatewayError(Exception):
    def __init__(self, status: int, code: str, message: str):
        self.status = status
        self.code = code
        self.message = message
        super().__init__(f"{status} {code}: {message}")


class GatewayClient:
    """Thin async wrapper over every ``/v1`` endpoint.

    The client owns its ``aiohttp.ClientSession`` unless one is passed in.
    ``start_session`` stores the bearer token used by every later call.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session_token: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self.session_token = session_token
        self.user_id: Optional[str] = None
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "GatewayClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _headers(self) -> Dict[str, str]:
        if not self.session_token:
            return {}
        return {"Authorization": f"Bearer {self.session_token}"}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, str]] = None,
        data: Any = None,
    ) -> Dict[str, Any]:
        async with self._http().request(
            method,
            f"{self._base_url}{path}",
            json=json,
            params=params,
            data=data,
            headers=self._headers(),
        ) as resp:
            try:
                payload = await resp.json(content_type=None)
            except (aiohttp.ContentTypeError, ValueError):
                payload = None
            if resp.status >= 400:
                if isinstance(payload, dict):
                    raise GatewayError(
                        resp.status,
                        str(payload.get("code", "http_error")),
                        str(payload.get("message", resp.reason or "")),
                    )
                raise GatewayError(resp.status, "http_error", resp.reason or "")
        return payload if isinstance(payload, dict) else {}

    async def start_session(self, user: str) -> Dict[str, Any]:
        body = await self._request("POST", "/v1/session/start", json={"user": user})
        self.session_token = str(body["session_token"])
        self.user_id = str(body["user_id"])
        return body

    async def create_conversation(self, recipients: Iterable[str]) -> Dict[str, Any]:
        return await self._request("POST", "/v1/conversations", json={"recipients": list(recipients)})

    async def list_conversations(self) -> List[Dict[str, Any]]:
        body = await self._request("GET", "/v1/conversations")
        return list(body.get("items", []))

    async def list_messages(
        self,
        *,
        to: Optional[str] = None,
        conversation_id: Optional[str] = None,
        cursor_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, str] = {}
        if conversation_id:
            params["conversation_id"] = conversation_id
        elif to:
            params["to"] = to
        if cursor_ms is not None:
            params["cursor"] = str(cursor_ms)
        return await self._request("GET", "/v1/messages", params=params)

    async def send_message(
        self,
        *,
        to: Optional[str] = None,
        conversation_id: Optional[str] = None,
        content: str = "",
        image_urls: Optional[List[str]] = None,
        share: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"content": content}
        if conversation_id:
            payload["conversation_id"] = conversation_id
        elif to:
            payload["to"] = to
        if image_urls:
            payload["image_urls"] = list(image_urls)
        if share is not None:
            payload["share"] = share
        return await self._request("POST", "/v1/messages", json=payload)

    async def add_participants(self, conversation_id: str, users: Iterable[str]) -> Dict[str, Any]:
        return await self._request(
            "POST", f"/v1/conversations/{conversation_id}/participants", json={"users": list(users)}
        )

    async def remove_participant(self, conversation_id: str, user: str) -> Dict[str, Any]:
        return await self._request(
            "DELETE", f"/v1/conversations/{conversation_id}/participants", json={"user": user}
        )

    async def rename_conversation(self, conversation_id: str, name: Optional[str]) -> Dict[str, Any]:
        return await self._request("PATCH", f"/v1/conversations/{conversation_id}", json={"name": name})

    async def leave_conversation(self, conversation_id: str) -> Dict[str, Any]:
        return await self._request("DELETE", f"/v1/conversations/{conversation_id}")

    async def upload_images(self, files: Iterable[Tuple[str, bytes, str]]) -> List[str]:
        """Upload ``(filename, data, content_type)`` tuples; returns public URLs."""

        form = aiohttp.FormData()
        for filename, data, content_type in files:
            form.add_field("images", data, filename=filename, content_type=content_type)
        body = await self._request("POST", "/v1/uploads/images", data=form)
        return list(body.get("urls", []))
