from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Dict, Iterable

from .sqlite_backend import SQLiteBackend


@dataclass(frozen=True)
class UserRecord:
    user_id: str
    handle: str | None = None
    display_name: str | None = None

    @property
    def label(self) -> str:
        return self.handle or self.display_name or "a user"

    def to_api_dict(self) -> dict[str, str | None]:
        return {"id": self.user_id, "handle": self.handle, "display_name": self.display_name}


class SQLiteUserDirectory:
    """Read-mostly view of the externally managed user table.

    Identifiers are resolved by id first and by handle second. The messaging
    code never mutates users; ``add_user`` exists for provisioning.
    """

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def add_user(self, user_id: str, handle: str | None = None, display_name: str | None = None) -> UserRecord:
        if not user_id:
            raise ValueError("user_id required")
        with self._backend.lock:
            self._backend.connection.execute(
                """
                INSERT INTO users (user_id, handle, display_name) VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET handle=excluded.handle, display_name=excluded.display_name
                """,
                (user_id, handle or None, display_name or None),
            )
        return UserRecord(user_id=user_id, handle=handle or None, display_name=display_name or None)

    def resolve(self, identifier: str) -> str | None:
        identifier = (identifier or "").strip()
        if not identifier:
            return None
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT user_id FROM users WHERE user_id=?", (identifier,)
            ).fetchone()
            if row is None:
                row = self._backend.connection.execute(
                    "SELECT user_id FROM users WHERE handle=?", (identifier,)
                ).fetchone()
        return None if row is None else str(row[0])

    def get(self, user_id: str) -> UserRecord | None:
        return self.get_many([user_id]).get(user_id)

    def get_many(self, user_ids: Iterable[str]) -> Dict[str, UserRecord]:
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"SELECT user_id, handle, display_name FROM users WHERE user_id IN ({placeholders})",
                ids,
            ).fetchall()
        return {row[0]: _row_to_user(row) for row in rows}

    def exists_all(self, user_ids: Iterable[str]) -> bool:
        ids = set(user_ids)
        return len(self.get_many(ids)) == len(ids)


def _row_to_user(row: sqlite3.Row) -> UserRecord:
    return UserRecord(user_id=row[0], handle=row[1], display_name=row[2])


def label_for(users: Dict[str, UserRecord], user_id: str, fallback: str = "a user") -> str:
    user = users.get(user_id)
    if user is None:
        return fallback
    return user.handle or user.display_name or fallback
