from __future__ import annotations

import sqlite3

from .errors import NotFoundError, TransientError, ValidationError
from .models import User, require_user_id
from .sqlite_backend import SQLiteBackend


class SQLiteUserStore:
    """Durable user directory backed by SQLite."""

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def add(self, user_id: str, username: str = "") -> User:
        require_user_id(user_id)
        user = User(id=user_id, username=username or user_id)
        try:
            with self._backend.lock:
                self._backend.connection.execute(
                    "INSERT INTO users (user_id, username, online, last_seen_ms) VALUES (?, ?, 0, NULL)",
                    (user.id, user.username),
                )
        except sqlite3.IntegrityError as exc:
            raise ValidationError("user already exists") from exc
        except sqlite3.Error as exc:
            raise TransientError("user store unavailable") from exc
        return user

    def get(self, user_id: str) -> User | None:
        try:
            with self._backend.lock:
                row = self._backend.connection.execute(
                    "SELECT user_id, username, online, last_seen_ms FROM users WHERE user_id=?",
                    (user_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise TransientError("user store unavailable") from exc
        if row is None:
            return None
        return User(id=row[0], username=row[1], online=bool(row[2]), last_seen_ms=row[3])

    def exists(self, user_id: str) -> bool:
        return self.get(user_id) is not None

    def set_online(self, user_id: str) -> None:
        self._update(user_id, "UPDATE users SET online=1 WHERE user_id=?", (user_id,))

    def set_offline(self, user_id: str, last_seen_ms: int) -> None:
        self._update(
            user_id,
            "UPDATE users SET online=0, last_seen_ms=? WHERE user_id=?",
            (last_seen_ms, user_id),
        )

    def _update(self, user_id: str, query: str, params: tuple) -> None:
        try:
            with self._backend.lock:
                cursor = self._backend.connection.execute(query, params)
        except sqlite3.Error as exc:
            raise TransientError("user store unavailable") from exc
        if cursor.rowcount == 0:
            raise NotFoundError(f"user {user_id} not found")
