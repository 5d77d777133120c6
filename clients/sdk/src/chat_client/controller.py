"""Conversation controller tying the REST client, live channel and reconciliation together."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from chat_gateway.errors import ChatError, ValidationError
from chat_gateway.models import conversation_id

from .http_client import ChatHttpClient
from .live import Frame, LiveConnection
from .reconcile import (
    AckUpdate,
    ChatMessage,
    Confirmed,
    ConversationState,
    Event,
    Loaded,
    LocalSend,
    SendFailed,
    make_temp_message,
    reconcile,
)

logger = logging.getLogger(__name__)

TYPING_TIMEOUT_S = 2.5
HISTORY_LIMIT = 50


conversation_room = conversation_id


class ChatController:
    """Client-side state for one conversation partner.

    All state changes go through :func:`reconcile`; ``listeners`` are called
    with the new :class:`ConversationState` after each change.
    """

    def __init__(
        self,
        user_id: str,
        peer_id: str,
        http: ChatHttpClient,
        live: Optional[LiveConnection] = None,
        *,
        typing_timeout: float = TYPING_TIMEOUT_S,
    ) -> None:
        self.user_id = user_id
        self.peer_id = peer_id
        self.http = http
        self.live = live
        self.typing_timeout = typing_timeout
        self.state = ConversationState()
        self.peer_typing = False
        self.peer_online: Optional[bool] = None
        self.peer_last_seen: Optional[int] = None
        self.listeners: List[Callable[[ConversationState], None]] = []
        self._typing_timer: Optional[asyncio.TimerHandle] = None
        if live is not None:
            live.on("receiveMessage", self._on_receive_message)
            live.on("messageDelivered", self._on_delivered)
            live.on("messageSeen", self._on_seen)
            live.on("typing", self._on_typing)
            live.on("stopTyping", self._on_stop_typing)
            live.on("userStatus", self._on_user_status)
            live.on("error", self._on_error)

    @property
    def room(self) -> str:
        return conversation_room(self.user_id, self.peer_id)

    @property
    def messages(self) -> tuple[ChatMessage, ...]:
        return self.state.messages

    def _apply(self, event: Event) -> None:
        state = reconcile(self.state, event)
        if state is self.state:
            return
        self.state = state
        for listener in list(self.listeners):
            listener(state)

    def _live_ready(self) -> bool:
        return self.live is not None and self.live.connected

    def _belongs_here(self, message: ChatMessage) -> bool:
        return {message.sender, message.receiver} == {self.user_id, self.peer_id}

    async def load(self, limit: int = HISTORY_LIMIT) -> ConversationState:
        """Fetch history, join the conversation room and ask for the partner's presence."""

        history = await self.http.fetch_conversation(self.peer_id, limit)
        self._apply(Loaded(tuple(ChatMessage.from_wire(item) for item in history)))
        if self._live_ready():
            await self.live.emit("joinRoom", {"roomId": self.room})
            await self.live.emit("getPresence", {"userId": self.peer_id})
        for message in self.state.messages:
            if message.receiver == self.user_id and not message.delivered:
                await self._acknowledge(message, "delivered")
        return self.state

    async def send(self, content: str) -> ChatMessage:
        """Optimistically show ``content`` and send it.

        Over the live channel the confirmation arrives as ``receiveMessage``;
        otherwise the REST response confirms it. Any failure removes the temp
        message and re-raises.
        """

        text = content.strip()
        if not text:
            raise ValidationError("content must not be empty")
        temp = make_temp_message(self.user_id, self.peer_id, text)
        self._apply(LocalSend(temp))
        try:
            if self._live_ready():
                await self.live.emit("sendMessage", {"receiver": self.peer_id, "content": text}, request_id=temp.id)
                return temp
            confirmed = ChatMessage.from_wire(await self.http.send_message(self.peer_id, text))
        except Exception:
            self._apply(SendFailed(temp.id))
            raise
        self._apply(Confirmed(confirmed))
        return confirmed

    async def mark_seen(self, message_id: Optional[str] = None) -> None:
        """Acknowledge one message as seen, or every unseen incoming message."""

        targets = [
            message
            for message in self.state.messages
            if not message.temp
            and message.receiver == self.user_id
            and not message.seen
            and (message_id is None or message.id == message_id)
        ]
        for message in targets:
            await self._acknowledge(message, "seen")

    async def notify_typing(self, typing: bool = True) -> None:
        if self._live_ready():
            await self.live.emit("typing" if typing else "stopTyping", {"to": self.peer_id})

    async def refresh_presence(self) -> Dict[str, Any]:
        status = await self.http.get_presence(self.peer_id)
        self._update_presence(status)
        return status

    async def _acknowledge(self, message: ChatMessage, kind: str) -> None:
        if kind == "seen":
            self._apply(AckUpdate(message.id, seen=True))
        else:
            self._apply(AckUpdate(message.id, delivered=True))
        try:
            if kind == "seen":
                await self.http.mark_seen(message.id, to=message.sender)
            else:
                await self.http.mark_delivered(message.id, to=message.sender)
            return
        except ChatError as exc:
            logger.debug("%s ack over http failed for %s: %s", kind, message.id, exc)
        if not self._live_ready():
            return
        event = "messageSeen" if kind == "seen" else "messageDelivered"
        try:
            await self.live.emit(event, {"messageId": message.id, "to": message.sender})
        except ChatError as exc:
            logger.debug("%s ack over live channel failed for %s: %s", kind, message.id, exc.message)

    # live handlers

    async def _on_receive_message(self, body: Any, frame: Frame) -> None:
        message = ChatMessage.from_wire(body)
        if not self._belongs_here(message):
            return
        self._apply(Confirmed(message))
        current = self.state.get(message.id)
        if message.receiver == self.user_id and current is not None and not current.delivered:
            await self._acknowledge(current, "delivered")

    def _on_delivered(self, body: Any, frame: Frame) -> None:
        self._apply(AckUpdate(str(body["messageId"]), delivered=True))

    def _on_seen(self, body: Any, frame: Frame) -> None:
        self._apply(AckUpdate(str(body["messageId"]), seen=True))

    def _on_error(self, body: Any, frame: Frame) -> None:
        request_id = frame.get("id")
        if isinstance(request_id, str) and self.state.get(request_id) is not None:
            logger.warning("send failed: %s", (body or {}).get("message"))
            self._apply(SendFailed(request_id))

    def _on_typing(self, body: Any, frame: Frame) -> None:
        if (body or {}).get("from") != self.peer_id:
            return
        self.peer_typing = True
        if self._typing_timer is not None:
            self._typing_timer.cancel()
        self._typing_timer = asyncio.get_running_loop().call_later(self.typing_timeout, self._clear_typing)

    def _on_stop_typing(self, body: Any, frame: Frame) -> None:
        if (body or {}).get("from") == self.peer_id:
            self._clear_typing()

    def _clear_typing(self) -> None:
        self.peer_typing = False
        if self._typing_timer is not None:
            self._typing_timer.cancel()
            self._typing_timer = None

    def _on_user_status(self, body: Any, frame: Frame) -> None:
        if isinstance(body, dict) and body.get("userId") == self.peer_id:
            self._update_presence(body)

    def _update_presence(self, status: Dict[str, Any]) -> None:
        self.peer_online = bool(status.get("online"))
        last_seen = status.get("lastSeen")
        if last_seen is not None:
            self.peer_last_seen = int(last_seen)
