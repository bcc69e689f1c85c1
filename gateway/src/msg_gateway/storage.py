from __future__ import annotations

import re
import secrets
from pathlib import Path

from .errors import InvalidRequest
from .sqlite_sessions import _now_ms

ALLOWED_PREFIX = "image/"
MAX_FILES = 10


def safe_name(name: str) -> str:
    cleaned = re.sub(r"[^\w.\-]", "", re.sub(r"\s+", "_", name or ""))
    return cleaned or "upload"


class LocalBlobStore:
    """Writes uploaded images below ``root/messages`` and returns stable public URLs."""

    def __init__(
        self,
        root: str | Path,
        *,
        public_prefix: str = "/uploads",
        max_bytes: int = 8 * 1024 * 1024,
        now_func=_now_ms,
    ) -> None:
        self._root = Path(root)
        self._public_prefix = public_prefix.rstrip("/")
        self._max_bytes = max_bytes
        self._now = now_func

    @property
    def root(self) -> Path:
        return self._root

    @property
    def public_prefix(self) -> str:
        return self._public_prefix

    def put(self, data: bytes, content_type: str | None, filename: str | None = None) -> str:
        if not (content_type or "").startswith(ALLOWED_PREFIX):
            raise InvalidRequest("only image uploads are allowed")
        if not data:
            raise InvalidRequest("empty upload")
        if len(data) > self._max_bytes:
            raise InvalidRequest(f"image exceeds {self._max_bytes} bytes")
        key = f"{self._now()}-{secrets.token_hex(8)}-{safe_name(filename or '')}"
        out_dir = self._root / "messages"
        out_dir.mkdir(parents=True, exist_ok=True)
        (out_dir / key).write_bytes(data)
        return f"{self._public_prefix}/messages/{key}"
