"""Real-time chat gateway: presence, message store and delivery protocol."""

from .errors import AuthError, ChatError, NotFoundError, PolicyError, TransientError, ValidationError
from .hub import RoomHub
from .messages import InMemoryMessageStore
from .models import Message, conversation_id
from .presence import PresenceRegistry
from .protocol import DeliveryProtocol
from .server import main, simulate
from .ws_transport import create_app

__all__ = [
    "AuthError",
    "ChatError",
    "NotFoundError",
    "PolicyError",
    "TransientError",
    "ValidationError",
    "RoomHub",
    "InMemoryMessageStore",
    "Message",
    "conversation_id",
    "PresenceRegistry",
    "DeliveryProtocol",
    "main",
    "simulate",
    "create_app",
]
