from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping

from .errors import AuthError, ValidationError

USER_ID_RE = re.compile(r"^[A-Za-z0-9-]{1,64}$")
MAX_CONTENT_LENGTH = 4000

_RECEIVER_ALIASES = ("receiver", "to", "recipient", "recipientId")
_CONTENT_ALIASES = ("content", "text", "body", "message")


def _now_ms() -> int:
    return int(time.time() * 1000)


def is_user_id(value: Any) -> bool:
    return isinstance(value, str) and USER_ID_RE.match(value) is not None


def require_user_id(value: Any, field: str = "userId") -> str:
    if not is_user_id(value):
        raise ValidationError(f"invalid {field}")
    return value


def conversation_id(user_a: str, user_b: str) -> str:
    """Room name for the private channel between two users.

    Symmetric in its arguments: ``conversation_id(a, b) == conversation_id(b, a)``.
    """

    first, second = sorted((str(user_a), str(user_b)))
    return f"{first}_{second}"


def personal_room(user_id: str) -> str:
    return f"user_{user_id}"


@dataclass
class User:
    id: str
    username: str = ""
    online: bool = False
    last_seen_ms: int | None = None


@dataclass
class Message:
    id: str
    sender: str
    receiver: str
    content: str
    created_at_ms: int
    delivered: bool = False
    delivered_at_ms: int | None = None
    seen: bool = False
    seen_at_ms: int | None = None

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sender": self.sender,
            "receiver": self.receiver,
            "content": self.content,
            "createdAt": self.created_at_ms,
            "delivered": self.delivered,
            "deliveredAt": self.delivered_at_ms,
            "seen": self.seen,
            "seenAt": self.seen_at_ms,
        }


def clean_content(value: Any) -> str:
    if not isinstance(value, str):
        raise ValidationError("content must be a string")
    content = value.strip()
    if not content:
        raise ValidationError("content must not be empty")
    if len(content) > MAX_CONTENT_LENGTH:
        raise ValidationError("content too long")
    return content


@dataclass(frozen=True)
class OutgoingMessage:
    """Canonical shape of a send request after boundary normalization."""

    receiver: str
    content: str


def normalize_send_payload(payload: Any, sender_id: str) -> OutgoingMessage:
    """Collapse the loosely shaped legacy send payloads into one schema.

    Accepts ``{"message": {...}}`` wrappers and the historic field aliases.
    A ``sender`` field, when present, must name the authenticated user.
    """

    if not isinstance(payload, Mapping):
        raise ValidationError("payload must be an object")
    inner = payload.get("message")
    if isinstance(inner, Mapping):
        payload = inner

    sender = payload.get("sender")
    if sender is not None and str(sender) != sender_id:
        raise AuthError("sender does not match authenticated user")

    receiver = next((payload[key] for key in _RECEIVER_ALIASES if payload.get(key) is not None), None)
    content = next((payload[key] for key in _CONTENT_ALIASES if payload.get(key) is not None), None)
    if receiver is None:
        raise ValidationError("receiver required")
    if content is None:
        raise ValidationError("content required")
    return OutgoingMessage(receiver=require_user_id(receiver, "receiver"), content=clean_content(content))


def ack_target(payload: Any) -> tuple[str, str | None]:
    """Return ``(message_id, to)`` from a delivered/seen acknowledgement body."""

    if not isinstance(payload, Mapping):
        raise ValidationError("payload must be an object")
    message_id = payload.get("messageId")
    if not isinstance(message_id, str) or not message_id:
        raise ValidationError("messageId required")
    to = payload.get("to")
    if to is not None and not is_user_id(to):
        raise ValidationError("invalid to")
    return message_id, to
