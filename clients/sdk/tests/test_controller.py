import asyncio
import unittest

from aiohttp.test_utils import TestServer

from chat_client.controller import ChatController, conversation_room
from chat_client.http_client import ChatHttpClient
from chat_client.live import LiveConnection
from chat_gateway.auth import issue_token
from chat_gateway.config import GatewayConfig
from chat_gateway.errors import AuthError, ValidationError
from chat_gateway.models import MAX_CONTENT_LENGTH
from chat_gateway.ws_transport import RUNTIME, create_app

SECRET = "controller-test-secret-0123456789ab"


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.01)


class ChatControllerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.app = create_app(GatewayConfig(jwt_secret=SECRET), ping_interval_s=3600, start_presence_sweeper=False)
        self.runtime = self.app[RUNTIME]
        for user_id in ("u1", "u2"):
            self.runtime.users.add(user_id)
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.closers: list = []

    async def asyncTearDown(self):
        for close in reversed(self.closers):
            await close()
        await self.server.close()

    async def _controller(self, user_id: str, peer_id: str, *, live: bool = True, **kwargs) -> ChatController:
        token = issue_token(SECRET, user_id)
        http = ChatHttpClient(str(self.server.make_url("")), token, retry_delay=0.01)
        self.closers.append(http.close)
        connection = None
        if live:
            connection = LiveConnection(str(self.server.make_url("/ws")))
            await connection.connect(token)
            self.closers.append(connection.close)
        return ChatController(user_id, peer_id, http, connection, **kwargs)

    def _contents(self, controller: ChatController) -> list[str]:
        return [m.content for m in controller.messages]

    async def test_live_send_confirms_and_collects_acks(self):
        alice = await self._controller("u1", "u2")
        bob = await self._controller("u2", "u1")
        await alice.load()
        await bob.load()
        room = conversation_room("u1", "u2")
        await wait_until(lambda: len(self.runtime.hub.members(room)) == 2)
        self.assertEqual(self.runtime.hub.members(room), {alice.live.connection_id, bob.live.connection_id})

        temp = await alice.send("hi")
        self.assertTrue(temp.temp)

        await wait_until(lambda: alice.messages and not alice.messages[0].temp)
        await wait_until(lambda: len(bob.messages) == 1)
        await wait_until(lambda: alice.messages[0].delivered)
        self.assertEqual(len(alice.messages), 1)
        self.assertFalse(alice.messages[0].seen)

        await bob.mark_seen()
        await wait_until(lambda: alice.messages[0].seen)
        stored = self.runtime.messages.get(alice.messages[0].id)
        self.assertTrue(stored.delivered and stored.seen)
        self.assertTrue(bob.messages[0].seen)

    async def test_http_fallback_and_history_ack(self):
        alice = await self._controller("u1", "u2", live=False)
        await alice.load()

        confirmed = await alice.send("offline hello")

        self.assertFalse(confirmed.temp)
        self.assertEqual(self._contents(alice), ["offline hello"])
        self.assertEqual(alice.state.temps, ())

        bob = await self._controller("u2", "u1", live=False)
        await bob.load()
        self.assertEqual(self._contents(bob), ["offline hello"])
        self.assertTrue(self.runtime.messages.get(confirmed.id).delivered)

    async def test_failed_send_removes_temp(self):
        alice = await self._controller("u1", "u2", live=False)
        states = []
        alice.listeners.append(states.append)
        with self.assertRaises(ValidationError):
            await alice.send("   ")
        self.assertEqual(states, [])
        with self.assertRaises(ValidationError):
            await alice.send("x" * (MAX_CONTENT_LENGTH + 1))
        self.assertEqual(alice.messages, ())

        live_alice = await self._controller("u1", "u2")
        temp = await live_alice.send("x" * (MAX_CONTENT_LENGTH + 1))
        self.assertTrue(temp.temp)
        await wait_until(lambda: live_alice.messages == ())

    async def test_padded_content_confirms_single_entry(self):
        alice = await self._controller("u1", "u2", live=False)
        confirmed = await alice.send("  hello  ")
        self.assertEqual(confirmed.content, "hello")
        self.assertEqual([(m.content, m.temp) for m in alice.messages], [("hello", False)])

        live_alice = await self._controller("u1", "u2")
        await live_alice.load()
        temp = await live_alice.send("\thi there \n")
        self.assertEqual(temp.content, "hi there")
        await wait_until(lambda: not any(m.temp for m in live_alice.messages))
        self.assertEqual(self._contents(live_alice), ["hello", "hi there"])

    async def test_live_message_during_history_fetch_is_kept(self):
        alice = await self._controller("u1", "u2")
        bob = await self._controller("u2", "u1", live=False)
        fetch = alice.http.fetch_conversation

        async def stale_fetch(other, limit):
            history = await fetch(other, limit)
            await bob.send("arrived mid-load")
            await wait_until(lambda: len(alice.messages) == 1)
            return history

        alice.http.fetch_conversation = stale_fetch
        await alice.load()

        self.assertEqual(self._contents(alice), ["arrived mid-load"])
        await wait_until(lambda: self.runtime.messages.get(alice.messages[0].id).delivered)

    async def test_typing_indicator_expires(self):
        alice = await self._controller("u1", "u2")
        bob = await self._controller("u2", "u1", typing_timeout=0.05)

        await alice.notify_typing()
        await wait_until(lambda: bob.peer_typing)
        await wait_until(lambda: not bob.peer_typing)

        await alice.notify_typing()
        await wait_until(lambda: bob.peer_typing)
        await alice.notify_typing(False)
        await wait_until(lambda: not bob.peer_typing)

    async def test_partner_presence_tracking(self):
        bob = await self._controller("u2", "u1")
        self.assertIsNone(bob.peer_online)
        status = await bob.refresh_presence()
        self.assertFalse(status["online"])

        alice_live = LiveConnection(str(self.server.make_url("/ws")))
        await alice_live.connect(issue_token(SECRET, "u1"))
        await wait_until(lambda: bob.peer_online is True)

        await alice_live.close()
        await wait_until(lambda: bob.peer_online is False)
        self.assertIsNotNone(bob.peer_last_seen)

    async def test_live_connect_rejects_bad_token(self):
        connection = LiveConnection(str(self.server.make_url("/ws")))
        with self.assertRaises(AuthError):
            await connection.connect("not-a-token")
        self.assertFalse(connection.connected)

    async def test_unauthorized_http_forces_logout(self):
        logged_out = []
        http = ChatHttpClient(str(self.server.make_url("")), "expired", on_unauthorized=lambda: logged_out.append(True))
        self.closers.append(http.close)
        controller = ChatController("u1", "u2", http)

        with self.assertRaises(AuthError):
            await controller.load()
        self.assertEqual(logged_out, [True])


if __name__ == "__main__":
    unittest.main()
