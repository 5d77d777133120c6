"""Client core for the chat gateway: REST, live channel and optimistic reconciliation."""

from .controller import ChatController, conversation_room
from .http_client import ChatHttpClient
from .live import LiveConnection
from .reconcile import (
    AckUpdate,
    ChatMessage,
    Confirmed,
    ConversationState,
    Loaded,
    LocalSend,
    SendFailed,
    make_temp_message,
    reconcile,
    reconcile_all,
)

__all__ = [
    "ChatController",
    "conversation_room",
    "ChatHttpClient",
    "LiveConnection",
    "AckUpdate",
    "ChatMessage",
    "Confirmed",
    "ConversationState",
    "Loaded",
    "LocalSend",
    "SendFailed",
    "make_temp_message",
    "reconcile",
    "reconcile_all",
]
