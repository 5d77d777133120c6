from __future__ import annotations

import sqlite3
from typing import Callable

from .errors import NotFoundError, TransientError
from .messages import UserDirectory, clamp_limit, new_message_id, validate_new_message
from .models import Message, _now_ms, conversation_id
from .sqlite_backend import SQLiteBackend

_COLUMNS = "msg_id, sender, receiver, content, created_at_ms, delivered, delivered_at_ms, seen, seen_at_ms"


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row[0],
        sender=row[1],
        receiver=row[2],
        content=row[3],
        created_at_ms=row[4],
        delivered=bool(row[5]),
        delivered_at_ms=row[6],
        seen=bool(row[7]),
        seen_at_ms=row[8],
    )


class SQLiteMessageStore:
    """Durable message store backed by SQLite."""

    def __init__(
        self,
        backend: SQLiteBackend,
        users: UserDirectory,
        *,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._backend = backend
        self._users = users
        self._now = now_func

    def create(self, sender: str, receiver: str, content: str) -> Message:
        cleaned = validate_new_message(self._users, sender, receiver, content)
        conv_id = conversation_id(sender, receiver)
        message = Message(
            id=new_message_id(),
            sender=sender,
            receiver=receiver,
            content=cleaned,
            created_at_ms=self._now(),
        )
        try:
            with self._backend.transaction() as conn:
                latest = conn.execute(
                    "SELECT MAX(created_at_ms) FROM messages WHERE conv_id=?", (conv_id,)
                ).fetchone()[0]
                if latest is not None and latest > message.created_at_ms:
                    message.created_at_ms = latest
                conn.execute(
                    """
                    INSERT INTO messages (msg_id, conv_id, sender, receiver, content, created_at_ms)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        message.id,
                        conv_id,
                        message.sender,
                        message.receiver,
                        message.content,
                        message.created_at_ms,
                    ),
                )
        except sqlite3.Error as exc:
            raise TransientError("failed to persist message") from exc
        return message

    def get(self, message_id: str) -> Message:
        try:
            with self._backend.lock:
                row = self._backend.connection.execute(
                    f"SELECT {_COLUMNS} FROM messages WHERE msg_id=?", (message_id,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise TransientError("message store unavailable") from exc
        if row is None:
            raise NotFoundError("message not found")
        return _row_to_message(row)

    def find_conversation(self, user_a: str, user_b: str, limit: int | None = None) -> list[Message]:
        page = clamp_limit(limit)
        query = (
            f"SELECT {_COLUMNS} FROM messages WHERE conv_id=? "
            "ORDER BY created_at_ms DESC, seq DESC LIMIT ?"
        )
        try:
            with self._backend.lock:
                rows = self._backend.connection.execute(query, (conversation_id(user_a, user_b), page)).fetchall()
        except sqlite3.Error as exc:
            raise TransientError("message store unavailable") from exc
        return [_row_to_message(row) for row in reversed(rows)]

    def mark_delivered(self, message_id: str) -> Message:
        now_ms = self._now()
        self._update(
            message_id,
            "UPDATE messages SET delivered=1, delivered_at_ms=? WHERE msg_id=? AND delivered=0",
            (now_ms, message_id),
        )
        return self.get(message_id)

    def mark_seen(self, message_id: str) -> Message:
        now_ms = self._now()
        self._update(
            message_id,
            """
            UPDATE messages
            SET delivered=1,
                delivered_at_ms=COALESCE(delivered_at_ms, ?),
                seen=1,
                seen_at_ms=COALESCE(seen_at_ms, ?)
            WHERE msg_id=?
            """,
            (now_ms, now_ms, message_id),
        )
        return self.get(message_id)

    def _update(self, message_id: str, query: str, params: tuple) -> None:
        try:
            with self._backend.transaction() as conn:
                if conn.execute("SELECT 1 FROM messages WHERE msg_id=?", (message_id,)).fetchone() is None:
                    raise NotFoundError("message not found")
                conn.execute(query, params)
        except sqlite3.Error as exc:
            raise TransientError("failed to update message") from exc
