from __future__ import annotations

import secrets
from typing import Callable, Dict, List, Protocol

from .errors import NotFoundError, ValidationError
from .models import Message, _now_ms, clean_content, conversation_id, require_user_id

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200


class UserDirectory(Protocol):
    def exists(self, user_id: str) -> bool: ...


def new_message_id() -> str:
    return secrets.token_hex(12)


def clamp_limit(limit: int | None) -> int:
    if limit is None:
        return DEFAULT_PAGE_SIZE
    if limit < 1:
        raise ValidationError("limit must be positive")
    return min(limit, MAX_PAGE_SIZE)


def validate_new_message(users: UserDirectory, sender: str, receiver: str, content: str) -> str:
    """Shared ``create`` preconditions; returns the trimmed content."""

    require_user_id(sender, "sender")
    require_user_id(receiver, "receiver")
    cleaned = clean_content(content)
    if not users.exists(receiver):
        raise ValidationError("unknown receiver")
    if not users.exists(sender):
        raise ValidationError("unknown sender")
    return cleaned


class InMemoryMessageStore:
    """Message persistence kept in process memory.

    Messages of a conversation are kept in insertion order, which is also
    ``created_at`` order because timestamps come from a monotonic-enough
    clock and ties are broken by insertion.
    """

    def __init__(self, users: UserDirectory, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._users = users
        self._now = now_func
        self._by_id: Dict[str, Message] = {}
        self._by_conversation: Dict[str, List[Message]] = {}

    def create(self, sender: str, receiver: str, content: str) -> Message:
        cleaned = validate_new_message(self._users, sender, receiver, content)
        conv_id = conversation_id(sender, receiver)
        history = self._by_conversation.setdefault(conv_id, [])
        created_at = self._now()
        if history and history[-1].created_at_ms > created_at:
            created_at = history[-1].created_at_ms
        message = Message(
            id=new_message_id(),
            sender=sender,
            receiver=receiver,
            content=cleaned,
            created_at_ms=created_at,
        )
        history.append(message)
        self._by_id[message.id] = message
        return message

    def get(self, message_id: str) -> Message:
        message = self._by_id.get(message_id)
        if message is None:
            raise NotFoundError("message not found")
        return message

    def find_conversation(self, user_a: str, user_b: str, limit: int | None = None) -> list[Message]:
        """Return the latest ``limit`` messages between two users, oldest first."""

        page = clamp_limit(limit)
        history = self._by_conversation.get(conversation_id(user_a, user_b), [])
        return list(history[-page:])

    def mark_delivered(self, message_id: str) -> Message:
        message = self.get(message_id)
        if not message.delivered:
            message.delivered = True
            message.delivered_at_ms = self._now()
        return message

    def mark_seen(self, message_id: str) -> Message:
        message = self.get(message_id)
        now_ms = self._now()
        if not message.delivered:
            message.delivered = True
            message.delivered_at_ms = now_ms
        if not message.seen:
            message.seen = True
            message.seen_at_ms = now_ms
        return message
