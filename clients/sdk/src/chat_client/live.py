"""Websocket connection to the gateway's live channel."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import aiohttp

from chat_gateway.errors import AuthError, TransientError

logger = logging.getLogger(__name__)

Frame = Dict[str, Any]
Handler = Callable[[Any, Frame], Union[None, Awaitable[None]]]

READY_TIMEOUT_S = 10.0


class LiveConnection:
    """Frames in, frames out.

    Handlers are registered per event name with :meth:`on`; each receives
    the frame body and the whole frame. ``ping`` frames from the server are
    answered with ``pong`` automatically.
    """

    def __init__(
        self,
        url: str,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        ready_timeout: float = READY_TIMEOUT_S,
    ) -> None:
        self.url = url
        self.ready_timeout = ready_timeout
        self.user_id: Optional[str] = None
        self.connection_id: Optional[str] = None
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader_task: Optional[asyncio.Task[None]] = None
        self._handlers: Dict[str, List[Handler]] = {}

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed and self.user_id is not None

    def on(self, event: str, handler: Handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    async def connect(self, token: str) -> Frame:
        """Open the socket with ``token`` and wait for the ``ready`` frame."""

        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        try:
            self._ws = await self._session.ws_connect(self.url, params={"token": token}, heartbeat=None)
        except aiohttp.ClientError as exc:
            raise TransientError(f"websocket connect failed: {exc}") from exc

        try:
            ready = await asyncio.wait_for(self._await_ready(), timeout=self.ready_timeout)
        except asyncio.TimeoutError as exc:
            await self.close()
            raise TransientError("no ready frame from gateway") from exc
        except AuthError:
            await self.close()
            raise

        body = ready.get("body") or {}
        self.user_id = body.get("userId")
        self.connection_id = body.get("connectionId")
        self._reader_task = asyncio.create_task(self._reader())
        logger.info("live connection %s ready as %s", self.connection_id, self.user_id)
        return ready

    async def _await_ready(self) -> Frame:
        assert self._ws is not None
        while True:
            msg = await self._ws.receive()
            if msg.type != aiohttp.WSMsgType.TEXT:
                raise TransientError("websocket closed before ready")
            frame = json.loads(msg.data)
            event = frame.get("t")
            if event == "ready":
                return frame
            if event == "error":
                body = frame.get("body") or {}
                raise AuthError(body.get("message") or "authentication failed")
            if event == "ping":
                await self._ws.send_json({"v": 1, "t": "pong", "body": None})

    async def emit(self, event: str, body: Any = None, *, request_id: Optional[str] = None) -> None:
        if self._ws is None or self._ws.closed:
            raise TransientError("live connection is closed")
        frame: Frame = {"v": 1, "t": event, "body": body}
        if request_id is not None:
            frame["id"] = request_id
        try:
            await self._ws.send_json(frame)
        except (ConnectionResetError, RuntimeError) as exc:
            raise TransientError(f"failed to emit {event}") from exc

    async def _reader(self) -> None:
        assert self._ws is not None
        async for msg in self._ws:
            if msg.type != aiohttp.WSMsgType.TEXT:
                if msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("live connection error: %s", self._ws.exception())
                break
            try:
                frame = json.loads(msg.data)
            except ValueError:
                logger.warning("dropping malformed frame")
                continue
            if not isinstance(frame, dict):
                continue
            await self._dispatch(frame)
        logger.info("live connection %s closed", self.connection_id)

    async def _dispatch(self, frame: Frame) -> None:
        event = frame.get("t")
        if event == "ping":
            await self.emit("pong")
            return
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(frame.get("body"), frame)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("handler for %s failed", event)

    async def close(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._reader_task is not None:
            await asyncio.gather(self._reader_task, return_exceptions=True)
            self._reader_task = None
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self.user_id = None
