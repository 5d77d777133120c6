from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict

from aiohttp import WSMsgType, web

from .auth import JWTVerifier, TokenVerifier, bearer_token
from .config import GatewayConfig
from .errors import AuthError, ChatError, ValidationError
from .hub import Frame, RoomHub, make_frame
from .limits import FixedWindowRateLimiter
from .logging_config import connection_id_var
from .messages import InMemoryMessageStore
from .models import _now_ms, require_user_id
from .notify import BestEffort, NotificationQueue
from .presence import PresenceConfig, PresenceRegistry
from .protocol import DeliveryProtocol, MessageStore
from .session import ConnectionSession
from .sqlite_backend import SQLiteBackend
from .sqlite_messages import SQLiteMessageStore
from .sqlite_users import SQLiteUserStore
from .users import InMemoryUserStore

logger = logging.getLogger(__name__)

OUTBOUND_QUEUE_SIZE = 1000


class Runtime:
    def __init__(
        self,
        *,
        config: GatewayConfig,
        users,
        messages: MessageStore,
        hub: RoomHub,
        registry: PresenceRegistry,
        protocol: DeliveryProtocol,
        verifier: TokenVerifier,
        backend: SQLiteBackend | None = None,
    ) -> None:
        self.config = config
        self.users = users
        self.messages = messages
        self.hub = hub
        self.registry = registry
        self.protocol = protocol
        self.verifier = verifier
        self.backend = backend
        self.sockets: Dict[str, web.WebSocketResponse] = {}


RUNTIME = web.AppKey("runtime", Runtime)
WS_CONFIG = web.AppKey("ws_config", dict)


def build_runtime(
    config: GatewayConfig,
    *,
    verifier: TokenVerifier | None = None,
    now_func: Callable[[], int] = _now_ms,
) -> Runtime:
    backend: SQLiteBackend | None = None
    if config.db_path is not None:
        backend = SQLiteBackend(config.db_path)
        users = SQLiteUserStore(backend)
        messages: MessageStore = SQLiteMessageStore(backend, users, now_func=now_func)
    else:
        users = InMemoryUserStore()
        messages = InMemoryMessageStore(users, now_func=now_func)

    verifier = verifier or JWTVerifier(config.jwt_secret, config.jwt_algorithm)
    best_effort = BestEffort(now_func=now_func)
    hub = RoomHub()
    registry = PresenceRegistry(
        users,
        verifier,
        hub,
        PresenceConfig(
            sweeper_interval_seconds=config.heartbeat_check_interval_ms / 1000,
            stale_timeout_ms=config.heartbeat_timeout_ms,
        ),
        best_effort=best_effort,
        now_func=now_func,
    )
    protocol = DeliveryProtocol(
        registry=registry,
        messages=messages,
        hub=hub,
        notifications=NotificationQueue(now_func=now_func),
        best_effort=best_effort,
        send_limiter=FixedWindowRateLimiter(config.messages_per_min),
        now_func=now_func,
    )
    return Runtime(
        config=config,
        users=users,
        messages=messages,
        hub=hub,
        registry=registry,
        protocol=protocol,
        verifier=verifier,
        backend=backend,
    )


@web.middleware
async def error_middleware(
    request: web.Request, handler: Callable[[web.Request], Awaitable[web.StreamResponse]]
) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except ChatError as exc:
        return web.json_response({"error": exc.to_body()}, status=exc.status)
    except Exception:
        logger.exception("unhandled error on %s %s", request.method, request.path)
        return web.json_response({"error": {"code": "internal", "message": "internal error"}}, status=500)


def _authenticate_request(request: web.Request) -> str:
    runtime = request.app[RUNTIME]
    token = bearer_token(request.headers.get("Authorization"))
    if token is None:
        raise AuthError("bearer token required")
    return runtime.verifier.verify(token)


async def _json_body(request: web.Request, *, required: bool = True) -> dict[str, Any]:
    if not required and not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("malformed json") from exc
    if not isinstance(body, dict):
        raise ValidationError("json object required")
    return body


def _parse_limit(raw: str | None) -> int | None:
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationError("limit must be an integer") from exc


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_send_message(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME]
    user_id = _authenticate_request(request)
    body = await _json_body(request)
    message = runtime.protocol.send_message(user_id, body)
    return web.json_response({"message": message.to_wire()}, status=201)


async def handle_get_conversation(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME]
    user_id = _authenticate_request(request)
    other_user_id = require_user_id(request.match_info["other_user_id"], "otherUserId")
    limit = _parse_limit(request.query.get("limit"))
    messages = runtime.messages.find_conversation(user_id, other_user_id, limit)
    return web.json_response({"messages": [message.to_wire() for message in messages]})


async def _handle_ack(request: web.Request, kind: str) -> web.Response:
    runtime = request.app[RUNTIME]
    user_id = _authenticate_request(request)
    body = await _json_body(request, required=False)
    to = body.get("to")
    if to is not None:
        to = require_user_id(to, "to")
    message = runtime.protocol.acknowledge(user_id, request.match_info["message_id"], kind, to)
    return web.json_response({"message": message.to_wire()})


async def handle_mark_delivered(request: web.Request) -> web.Response:
    return await _handle_ack(request, "delivered")


async def handle_mark_seen(request: web.Request) -> web.Response:
    return await _handle_ack(request, "seen")


async def handle_presence(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME]
    _authenticate_request(request)
    user_id = require_user_id(request.match_info["user_id"])
    return web.json_response(runtime.registry.get_presence(user_id).to_wire())


async def close_socket(ws: web.WebSocketResponse, code: int, reason: str) -> None:
    """Close ``ws`` once; later calls for an already closed socket do nothing."""

    if ws.closed:
        return
    await ws.close(code=code, message=reason.encode("utf-8"))


def create_app(
    config: GatewayConfig | None = None,
    *,
    verifier: TokenVerifier | None = None,
    ping_interval_s: float | None = None,
    ping_miss_limit: int = 2,
    start_presence_sweeper: bool = True,
    now_func: Callable[[], int] = _now_ms,
) -> web.Application:
    config = config or GatewayConfig()
    runtime = build_runtime(config, verifier=verifier, now_func=now_func)

    def close_evicted(connection_id: str) -> None:
        ws = runtime.sockets.get(connection_id)
        if ws is not None:
            asyncio.get_running_loop().create_task(close_socket(ws, 1001, "presence timeout"))

    runtime.registry.on_evict(close_evicted)

    app = web.Application(middlewares=[error_middleware])
    app[RUNTIME] = runtime
    app[WS_CONFIG] = {
        "ping_interval_s": ping_interval_s or config.heartbeat_check_interval_ms / 1000,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": config.max_msg_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/messages", handle_send_message)
    app.router.add_get("/messages/{other_user_id}", handle_get_conversation)
    app.router.add_patch("/messages/{message_id}/delivered", handle_mark_delivered)
    app.router.add_patch("/messages/{message_id}/seen", handle_mark_seen)
    app.router.add_get("/presence/{user_id}", handle_presence)
    app.router.add_get("/ws", websocket_handler)

    async def start_presence(_: web.Application) -> None:
        if start_presence_sweeper:
            runtime.registry.start_sweeper()

    async def close_sockets(_: web.Application) -> None:
        for ws in list(runtime.sockets.values()):
            await close_socket(ws, 1001, "server shutdown")

    async def stop_presence(_: web.Application) -> None:
        await runtime.registry.stop_sweeper()

    app.on_startup.append(start_presence)
    app.on_shutdown.append(close_sockets)
    app.on_cleanup.append(stop_presence)
    if runtime.backend is not None:
        backend = runtime.backend

        async def close_db(_: web.Application) -> None:
            backend.close()

        app.on_cleanup.append(close_db)
    return app


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME]
    ws_config: dict[str, Any] = request.app[WS_CONFIG]
    protocol = runtime.protocol

    session = ConnectionSession()
    connection_id_var.set(session.connection_id)
    handshake_token = request.query.get("token") or bearer_token(request.headers.get("Authorization"))

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)
    logger.info("connection opened from %s", request.remote)

    loop = asyncio.get_running_loop()
    last_activity = loop.time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[Frame | None] = asyncio.Queue(maxsize=OUTBOUND_QUEUE_SIZE)
    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = loop.time()
        missed_heartbeats = 0

    def enqueue(frame: Frame) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("outbound queue full, closing connection")
            loop.create_task(close_socket(ws, 1011, "backpressure"))

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except (ConnectionResetError, RuntimeError):
            # peer went away; remaining frames are dropped
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                if loop.time() - last_activity >= ws_config["ping_interval_s"]:
                    enqueue(make_frame("ping", None))
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await close_socket(ws, 1001, "heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())
    runtime.sockets[session.connection_id] = ws

    try:
        protocol.open(session, enqueue, handshake_token)
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                mark_activity()
                try:
                    frame = json.loads(msg.data)
                except ValueError:
                    enqueue(make_frame("error", {"code": "invalid_request", "message": "malformed json", "event": None}))
                    continue
                if not isinstance(frame, dict) or frame.get("v") != 1:
                    request_id = frame.get("id") if isinstance(frame, dict) else None
                    enqueue(
                        make_frame(
                            "error",
                            {"code": "invalid_request", "message": "unsupported version", "event": None},
                            request_id=request_id if isinstance(request_id, str) else None,
                        )
                    )
                    continue
                protocol.handle(session, frame)
            elif msg.type == WSMsgType.ERROR:
                logger.warning("connection error: %s", ws.exception())
                break
            else:
                enqueue(make_frame("error", {"code": "invalid_request", "message": "text frames only", "event": None}))
    finally:
        protocol.close(session)
        runtime.sockets.pop(session.connection_id, None)
        heartbeat_task.cancel()
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)
        logger.info("connection closed")

    return ws
