from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict

Frame = Dict[str, Any]
Callback = Callable[[Frame], None]


def make_frame(event: str, body: Any, *, request_id: str | None = None) -> Frame:
    frame: Frame = {"v": 1, "t": event, "body": body}
    if request_id is not None:
        frame["id"] = request_id
    return frame


@dataclass
class Subscription:
    connection_id: str
    room: str
    callback: Callback

    def deliver(self, frame: Frame) -> None:
        self.callback(frame)


class RoomHub:
    """Named fan-out groups of connections.

    Each connection registers one outbound callback; joining a room links
    that callback to the room name. Delivery is synchronous: callbacks are
    expected to enqueue, never to block.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, Callback] = {}
        self._rooms: Dict[str, Dict[str, Subscription]] = {}

    def attach(self, connection_id: str, callback: Callback) -> None:
        self._connections[connection_id] = callback

    def detach(self, connection_id: str) -> None:
        self._connections.pop(connection_id, None)
        for room in [name for name, subs in self._rooms.items() if connection_id in subs]:
            self.leave(connection_id, room)

    def join(self, connection_id: str, room: str) -> Subscription | None:
        callback = self._connections.get(connection_id)
        if callback is None:
            return None
        subs = self._rooms.setdefault(room, {})
        subscription = subs.get(connection_id)
        if subscription is None:
            subscription = Subscription(connection_id=connection_id, room=room, callback=callback)
            subs[connection_id] = subscription
        return subscription

    def leave(self, connection_id: str, room: str) -> None:
        subs = self._rooms.get(room)
        if not subs:
            return
        subs.pop(connection_id, None)
        if not subs:
            self._rooms.pop(room, None)

    def members(self, room: str) -> set[str]:
        return set(self._rooms.get(room, {}))

    def send_to(self, connection_id: str, frame: Frame) -> None:
        callback = self._connections.get(connection_id)
        if callback is not None:
            callback(frame)

    def broadcast(self, room: str, frame: Frame) -> int:
        """Deliver ``frame`` to every member of ``room``; returns the fan-out count."""

        subscriptions = list(self._rooms.get(room, {}).values())
        for subscription in subscriptions:
            subscription.deliver(frame)
        return len(subscriptions)

    def broadcast_all(self, frame: Frame) -> int:
        callbacks = list(self._connections.values())
        for callback in callbacks:
            callback(frame)
        return len(callbacks)
