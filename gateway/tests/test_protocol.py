import unittest

from chat_gateway.auth import TrustedVerifier
from chat_gateway.errors import NotFoundError, PolicyError, TransientError
from chat_gateway.hub import RoomHub
from chat_gateway.limits import FixedWindowRateLimiter
from chat_gateway.messages import InMemoryMessageStore
from chat_gateway.notify import BestEffort, NotificationQueue
from chat_gateway.presence import PresenceRegistry
from chat_gateway.protocol import DeliveryProtocol
from chat_gateway.session import ConnectionSession
from chat_gateway.users import InMemoryUserStore


class FakeClock:
    def __init__(self, start_ms: int = 1_000) -> None:
        self.now_ms = start_ms

    def now(self) -> int:
        return self.now_ms


class UnavailableAckStore(InMemoryMessageStore):
    def mark_delivered(self, message_id):
        raise TransientError("store down")

    def mark_seen(self, message_id):
        raise TransientError("store down")


class ProtocolTests(unittest.TestCase):
    def setUp(self) -> None:
        self._build(InMemoryMessageStore)

    def _build(self, store_cls, *, messages_per_min: int = 0) -> None:
        self.clock = FakeClock()
        self.users = InMemoryUserStore()
        for user_id in ("u1", "u2", "u3"):
            self.users.add(user_id)
        self.hub = RoomHub()
        self.best_effort = BestEffort(now_func=self.clock.now)
        self.registry = PresenceRegistry(
            self.users, TrustedVerifier(), self.hub, best_effort=self.best_effort, now_func=self.clock.now
        )
        self.store = store_cls(self.users, now_func=self.clock.now)
        self.notifications = NotificationQueue(now_func=self.clock.now)
        self.protocol = DeliveryProtocol(
            registry=self.registry,
            messages=self.store,
            hub=self.hub,
            notifications=self.notifications,
            best_effort=self.best_effort,
            send_limiter=FixedWindowRateLimiter(messages_per_min),
            now_func=self.clock.now,
        )
        self.outbox: dict[str, list] = {}

    def _open(self, name: str, user_id: str | None = None) -> ConnectionSession:
        session = ConnectionSession(connection_id=name)
        self.outbox[name] = []
        self.protocol.open(session, self.outbox[name].append, user_id)
        return session

    def _frames(self, name: str, event: str) -> list:
        return [frame for frame in self.outbox[name] if frame["t"] == event]

    def _send(self, session, event, body=None, request_id=None):
        frame = {"v": 1, "t": event, "body": body}
        if request_id is not None:
            frame["id"] = request_id
        self.protocol.handle(session, frame)

    def test_handshake_token_authenticates(self):
        session = self._open("c1", "u1")
        self.assertTrue(session.authenticated)
        [ready] = self._frames("c1", "ready")
        self.assertEqual(ready["body"], {"userId": "u1", "connectionId": "c1"})

    def test_events_require_authentication(self):
        session = self._open("c1")
        self._send(session, "sendMessage", {"receiver": "u2", "content": "hi"}, "r1")
        [error] = self._frames("c1", "error")
        self.assertEqual(error["id"], "r1")
        self.assertEqual(error["body"]["code"], "unauthorized")
        self.assertEqual(error["body"]["event"], "sendMessage")

        self._send(session, "ping", None, "p1")
        self.assertEqual(self._frames("c1", "pong")[0]["id"], "p1")

    def test_unknown_event_keeps_connection_usable(self):
        session = self._open("c1", "u1")
        self._send(session, "explode")
        self.assertEqual(self._frames("c1", "error")[0]["body"]["code"], "invalid_request")
        self._send(session, "ping")
        self.assertEqual(len(self._frames("c1", "pong")), 1)

    def test_send_fans_out_to_receiver_and_sender_connections(self):
        sender_a = self._open("a1", "u1")
        self._open("a2", "u1")
        self._open("b1", "u2")
        self._open("x1", "u3")

        self._send(sender_a, "sendMessage", {"receiver": "u2", "content": " hi "})

        for name in ("a1", "a2", "b1"):
            [frame] = self._frames(name, "receiveMessage")
            self.assertEqual(frame["body"]["content"], "hi")
            self.assertEqual(frame["body"]["sender"], "u1")
        self.assertEqual(self._frames("x1", "receiveMessage"), [])
        [stored] = self.store.find_conversation("u1", "u2")
        self.assertEqual(stored.content, "hi")

    def test_send_to_self_delivers_once_per_connection(self):
        session = self._open("a1", "u1")
        self._send(session, "sendMessage", {"receiver": "u1", "content": "note"})
        self.assertEqual(len(self._frames("a1", "receiveMessage")), 1)

    def test_invalid_send_persists_nothing(self):
        session = self._open("a1", "u1")
        self._send(session, "sendMessage", {"receiver": "u2", "content": "  "})
        self._send(session, "sendMessage", {"receiver": "ghost", "content": "hi"})
        self._send(session, "sendMessage", {"sender": "u3", "receiver": "u2", "content": "hi"})

        codes = [frame["body"]["code"] for frame in self._frames("a1", "error")]
        self.assertEqual(codes, ["invalid_request", "invalid_request", "unauthorized"])
        self.assertEqual(self.store.find_conversation("u1", "u2"), [])

    def test_offline_receiver_gets_notification_on_next_login(self):
        session = self._open("a1", "u1")
        self._send(session, "sendMessage", {"receiver": "u2", "content": "one"})
        self._send(session, "sendMessage", {"receiver": "u2", "content": "two"})
        self.assertEqual(len(self.notifications.pending("u2")), 2)

        self._open("b1", "u2")
        [summary] = self._frames("b1", "pendingNotifications")
        self.assertEqual(summary["body"], {"count": 2, "from": ["u1"]})
        self.assertEqual(self.notifications.pending("u2"), [])

    def test_receiver_acks_relay_to_sender(self):
        sender = self._open("a1", "u1")
        receiver = self._open("b1", "u2")
        message = self.protocol.send_message("u1", {"receiver": "u2", "content": "hi"})

        self._send(receiver, "messageDelivered", {"messageId": message.id, "to": "u1"})
        self._send(receiver, "messageDelivered", {"messageId": message.id, "to": "u1"})
        self._send(receiver, "messageSeen", {"messageId": message.id, "to": "u1"})

        self.assertEqual(
            [f["body"] for f in self._frames("a1", "messageDelivered")],
            [{"messageId": message.id}, {"messageId": message.id}],
        )
        self.assertEqual(self._frames("a1", "messageSeen")[0]["body"], {"messageId": message.id})
        stored = self.store.get(message.id)
        self.assertTrue(stored.delivered and stored.seen)
        self.assertEqual(self._frames("b1", "error"), [])
        self.assertFalse(sender.closed)

    def test_only_receiver_may_ack(self):
        self._open("a1", "u1")
        outsider = self._open("x1", "u3")
        message = self.protocol.send_message("u1", {"receiver": "u2", "content": "hi"})

        self._send(outsider, "messageSeen", {"messageId": message.id})
        self.assertEqual(self._frames("x1", "error")[0]["body"]["code"], "not_found")
        self.assertFalse(self.store.get(message.id).seen)
        with self.assertRaises(NotFoundError):
            self.protocol.acknowledge("u2", "missing", "delivered")

    def test_ack_relays_even_when_store_fails(self):
        self._build(UnavailableAckStore)
        self._open("a1", "u1")
        receiver = self._open("b1", "u2")
        message = self.protocol.send_message("u1", {"receiver": "u2", "content": "hi"})

        self._send(receiver, "messageSeen", {"messageId": message.id, "to": "u1"}, "s1")

        self.assertEqual(self._frames("a1", "messageSeen")[0]["body"], {"messageId": message.id})
        [error] = self._frames("b1", "error")
        self.assertEqual(error["id"], "s1")
        self.assertEqual(error["body"]["code"], "internal")

    def test_typing_is_relayed_without_persistence(self):
        sender = self._open("a1", "u1")
        self._open("b1", "u2")
        self._send(sender, "typing", {"to": "u2"})
        self._send(sender, "stopTyping", {"to": "u2"})

        self.assertEqual([f["t"] for f in self.outbox["b1"] if f["t"] in ("typing", "stopTyping")], ["typing", "stopTyping"])
        self.assertEqual(self._frames("b1", "typing")[0]["body"], {"from": "u1"})
        self.assertEqual(self.store.find_conversation("u1", "u2"), [])

    def test_rooms(self):
        session = self._open("a1", "u1")
        peer = self._open("b1", "u2")
        self._send(session, "joinRoom", {"roomId": "u1_u2"})
        self._send(peer, "joinRoom", "u1_u2")
        self.assertEqual(self.hub.members("u1_u2"), {"a1", "b1"})

        self._send(session, "joinRoom", {"roomId": "user_u2"})
        self._send(session, "leaveRoom", {"roomId": "user_u1"})
        self.assertEqual(len(self._frames("a1", "error")), 2)
        self.assertEqual(
            [f["body"]["message"] for f in self._frames("a1", "error")],
            ["user_ rooms are reserved for their owner", "the owner cannot leave their user_ room"],
        )
        self._send(session, "joinRoom", {"roomId": "user_u1"})
        self.assertEqual(len(self._frames("a1", "error")), 2)
        self.assertNotIn("a1", self.hub.members("user_u2"))
        self.assertIn("a1", self.hub.members("user_u1"))

        self._send(session, "leaveRoom", {"roomId": "u1_u2"})
        self.assertEqual(self.hub.members("u1_u2"), {"b1"})

    def test_get_presence_answers_requester_only(self):
        session = self._open("a1", "u1")
        self._open("b1", "u2")
        self.outbox["b1"].clear()

        self._send(session, "getPresence", {"userId": "u2"}, "q1")
        status = [f for f in self._frames("a1", "userStatus") if f.get("id") == "q1"]
        self.assertEqual(status[0]["body"], {"userId": "u2", "online": True, "lastSeen": None})
        self.assertEqual(self._frames("b1", "userStatus"), [])

    def test_logout_goes_offline_but_keeps_binding(self):
        session = self._open("a1", "u1")
        self._open("b1", "u2")
        self._send(session, "joinRoom", {"roomId": "u1_u2"})
        self._send(session, "logout")

        self.assertTrue(session.authenticated)
        self.assertEqual(session.user_id, "u1")
        self.assertFalse(self.registry.is_online("u1"))
        self.assertEqual(self.hub.members("user_u1"), set())
        self.assertEqual(self.hub.members("u1_u2"), set())
        offline = [f["body"] for f in self._frames("b1", "userStatus") if f["body"]["userId"] == "u1"]
        self.assertFalse(offline[-1]["online"])

        self._send(session, "sendMessage", {"receiver": "u2", "content": "still here"}, request_id="r1")
        self.assertEqual(self._frames("a1", "error"), [])
        self.assertEqual([m.content for m in self.store.find_conversation("u1", "u2")], ["still here"])

        self._send(session, "authenticate", {"token": "u2"})
        self.assertEqual(self._frames("a1", "error")[-1]["body"]["code"], "unauthorized")
        self.assertEqual(session.user_id, "u1")

        self._send(session, "authenticate", {"token": "u1"})
        self.assertTrue(self.registry.is_online("u1"))
        self.assertEqual(self.hub.members("user_u1"), {"a1"})
        self.assertEqual(len(self._frames("a1", "ready")), 2)

        self.protocol.close(session)
        self.assertFalse(self.registry.is_online("u1"))

    def test_close_marks_offline_and_rejects_further_frames(self):
        session = self._open("a1", "u1")
        self.protocol.close(session)
        self.assertTrue(session.closed)
        self.assertFalse(self.registry.is_online("u1"))
        self.assertEqual(self.hub.members("user_u1"), set())

    def test_rate_limit(self):
        self._build(InMemoryMessageStore, messages_per_min=2)
        for _ in range(2):
            self.protocol.send_message("u1", {"receiver": "u2", "content": "hi"})
        with self.assertRaises(PolicyError):
            self.protocol.send_message("u1", {"receiver": "u2", "content": "hi"})
        self.assertEqual(len(self.store.find_conversation("u1", "u2")), 2)


if __name__ == "__main__":
    unittest.main()
