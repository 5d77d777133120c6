"""Real-time delivery protocol, independent of the websocket transport.

The transport feeds decoded frames into :meth:`DeliveryProtocol.handle` in
the order they were received on a connection and forwards whatever the hub
delivers to the connection's outbound callback.
"""

from __future__ import annotations

import logging
from functools import partial
from typing import Any, Callable, Dict, Mapping, Protocol

from .errors import AuthError, ChatError, NotFoundError, TransientError, ValidationError
from .hub import Callback, RoomHub, make_frame
from .limits import FixedWindowRateLimiter
from .models import Message, _now_ms, ack_target, normalize_send_payload, personal_room, require_user_id
from .notify import BestEffort, NotificationQueue
from .presence import PresenceRegistry
from .session import ConnectionSession, ConnectionState

logger = logging.getLogger(__name__)

MAX_ROOM_NAME = 128
PUBLIC_EVENTS = {"authenticate", "ping", "pong", "getPresence"}


class MessageStore(Protocol):
    def create(self, sender: str, receiver: str, content: str) -> Message: ...

    def get(self, message_id: str) -> Message: ...

    def find_conversation(self, user_a: str, user_b: str, limit: int | None = None) -> list[Message]: ...

    def mark_delivered(self, message_id: str) -> Message: ...

    def mark_seen(self, message_id: str) -> Message: ...


class DeliveryProtocol:
    def __init__(
        self,
        *,
        registry: PresenceRegistry,
        messages: MessageStore,
        hub: RoomHub,
        notifications: NotificationQueue | None = None,
        best_effort: BestEffort | None = None,
        send_limiter: FixedWindowRateLimiter | None = None,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.registry = registry
        self.messages = messages
        self.hub = hub
        self.notifications = notifications or NotificationQueue()
        self.best_effort = best_effort or BestEffort()
        self.send_limiter = send_limiter or FixedWindowRateLimiter(0)
        self._now = now_func
        self._handlers: Dict[str, Callable[[ConnectionSession, Any, str | None], None]] = {
            "authenticate": self._on_authenticate,
            "ping": self._on_ping,
            "pong": self._on_pong,
            "getPresence": self._on_get_presence,
            "joinRoom": self._on_join_room,
            "leaveRoom": self._on_leave_room,
            "sendMessage": self._on_send_message,
            "typing": partial(self._on_typing, "typing"),
            "stopTyping": partial(self._on_typing, "stopTyping"),
            "messageDelivered": partial(self._on_ack, "delivered"),
            "messageSeen": partial(self._on_ack, "seen"),
            "logout": self._on_logout,
        }

    # connection lifecycle

    def open(self, session: ConnectionSession, send: Callback, token: str | None = None) -> None:
        """Attach a new connection; authenticate immediately if a handshake token was given."""

        self.hub.attach(session.connection_id, send)
        if token:
            try:
                self._authenticate(session, token)
            except AuthError as exc:
                logger.warning("handshake authentication failed: %s", exc.message)
                self._reply_error(session, exc, "authenticate", None)

    def close(self, session: ConnectionSession) -> None:
        if session.closed:
            return
        self.registry.deregister(session)
        self.hub.detach(session.connection_id)
        session.joined_rooms.clear()
        session.state = ConnectionState.DISCONNECTED

    def handle(self, session: ConnectionSession, frame: Mapping[str, Any]) -> None:
        event = frame.get("t")
        request_id = frame.get("id")
        body = frame.get("body")
        if not isinstance(request_id, str):
            request_id = None
        try:
            if session.closed:
                raise AuthError("connection closed")
            handler = self._handlers.get(event) if isinstance(event, str) else None
            if handler is None:
                raise ValidationError("unknown event")
            if event not in PUBLIC_EVENTS and not session.authenticated:
                raise AuthError("authentication required")
            if session.user_id is not None:
                self.registry.touch(session.user_id)
            handler(session, body, request_id)
        except ChatError as exc:
            self._reply_error(session, exc, event, request_id)
        except Exception:
            logger.exception("unhandled error while processing %s", event)
            self._reply_error(session, TransientError("internal error"), event, request_id)

    # shared operations, also used by the REST surface

    def send_message(self, sender_id: str, payload: Any) -> Message:
        outgoing = normalize_send_payload(payload, sender_id)
        self.send_limiter.check(sender_id, self._now(), "too many messages")
        try:
            message = self.messages.create(sender_id, outgoing.receiver, outgoing.content)
        except ChatError:
            raise
        except Exception as exc:
            logger.error("failed to persist message from %s", sender_id, exc_info=True)
            raise TransientError("failed to persist message") from exc

        frame = make_frame("receiveMessage", message.to_wire())
        for room in dict.fromkeys((personal_room(message.receiver), personal_room(message.sender))):
            self.best_effort.run("fan-out", self.hub.broadcast, room, frame)
        if not self.registry.is_online(message.receiver):
            self.best_effort.run("offline-notify", self.notifications.enqueue, message.receiver, message.sender)
        return message

    def acknowledge(self, user_id: str, message_id: str, kind: str, to: str | None = None) -> Message:
        """Persist a delivered/seen acknowledgement and relay it to the sender.

        Persisting an already-set flag is a no-op. When the store is
        unavailable the relay to ``to`` is still attempted before the error
        propagates.
        """

        event = "messageSeen" if kind == "seen" else "messageDelivered"
        try:
            message = self.messages.get(message_id)
            if message.receiver != user_id:
                raise NotFoundError("message not found")
            if kind == "seen":
                message = self.messages.mark_seen(message_id)
            else:
                message = self.messages.mark_delivered(message_id)
        except TransientError:
            if to is not None:
                self._relay_ack(to, event, message_id)
            raise
        except ChatError:
            raise
        except Exception as exc:
            logger.error("failed to persist %s for %s", event, message_id, exc_info=True)
            if to is not None:
                self._relay_ack(to, event, message_id)
            raise TransientError(f"failed to persist {kind}") from exc

        self._relay_ack(message.sender, event, message.id)
        return message

    # handlers

    def _authenticate(self, session: ConnectionSession, token: Any) -> str:
        if not isinstance(token, str):
            raise AuthError("token required")
        user_id = self.registry.authenticate(session, token)
        logger.info("connection %s authenticated as %s", session.connection_id, user_id)
        self.hub.send_to(
            session.connection_id,
            make_frame("ready", {"userId": user_id, "connectionId": session.connection_id}),
        )
        pending = self.notifications.pending(user_id)
        if pending:
            senders = list(dict.fromkeys(n.from_user_id for n in pending))
            self.hub.send_to(
                session.connection_id,
                make_frame("pendingNotifications", {"count": len(pending), "from": senders}),
            )
            self.notifications.mark_processed(user_id)
        return user_id

    def _on_authenticate(self, session: ConnectionSession, body: Any, request_id: str | None) -> None:
        token = body.get("token") if isinstance(body, Mapping) else body
        try:
            self._authenticate(session, token)
        except AuthError as exc:
            logger.warning("authenticate failed on %s: %s", session.connection_id, exc.message)
            raise

    def _on_ping(self, session: ConnectionSession, body: Any, request_id: str | None) -> None:
        self.hub.send_to(session.connection_id, make_frame("pong", None, request_id=request_id))

    def _on_pong(self, session: ConnectionSession, body: Any, request_id: str | None) -> None:
        # activity was already recorded by handle()
        return None

    def _on_get_presence(self, session: ConnectionSession, body: Any, request_id: str | None) -> None:
        target = body.get("userId") if isinstance(body, Mapping) else body
        status = self.registry.get_presence(require_user_id(target))
        self.hub.send_to(session.connection_id, make_frame("userStatus", status.to_wire(), request_id=request_id))

    def _room_name(self, session: ConnectionSession, body: Any) -> str:
        room = body.get("roomId") if isinstance(body, Mapping) else body
        if not isinstance(room, str) or not room or len(room) > MAX_ROOM_NAME:
            raise ValidationError("roomId required")
        if room.startswith("user_") and room != personal_room(session.user_id):
            raise ValidationError("user_ rooms are reserved for their owner")
        return room

    def _on_join_room(self, session: ConnectionSession, body: Any, request_id: str | None) -> None:
        room = self._room_name(session, body)
        self.hub.join(session.connection_id, room)
        session.joined_rooms.add(room)

    def _on_leave_room(self, session: ConnectionSession, body: Any, request_id: str | None) -> None:
        room = self._room_name(session, body)
        if room == personal_room(session.user_id):
            raise ValidationError("the owner cannot leave their user_ room")
        self.hub.leave(session.connection_id, room)
        session.joined_rooms.discard(room)

    def _on_send_message(self, session: ConnectionSession, body: Any, request_id: str | None) -> None:
        self.send_message(session.user_id, body)

    def _on_typing(self, event: str, session: ConnectionSession, body: Any, request_id: str | None) -> None:
        to = body.get("to") if isinstance(body, Mapping) else None
        target = require_user_id(to, "to")
        self.hub.broadcast(personal_room(target), make_frame(event, {"from": session.user_id}))

    def _on_ack(self, kind: str, session: ConnectionSession, body: Any, request_id: str | None) -> None:
        message_id, to = ack_target(body)
        self.acknowledge(session.user_id, message_id, kind, to)

    def _on_logout(self, session: ConnectionSession, body: Any, request_id: str | None) -> None:
        self.registry.deregister(session)
        for room in list(session.joined_rooms):
            self.hub.leave(session.connection_id, room)
        session.joined_rooms.clear()

    # helpers

    def _relay_ack(self, to: str, event: str, message_id: str) -> None:
        self.best_effort.run("ack-relay", self.hub.broadcast, personal_room(to), make_frame(event, {"messageId": message_id}))

    def _reply_error(self, session: ConnectionSession, exc: ChatError, event: Any, request_id: str | None) -> None:
        body = exc.to_body()
        body["event"] = event if isinstance(event, str) else None
        self.hub.send_to(session.connection_id, make_frame("error", body, request_id=request_id))
