"""aiohttp REST client for the chat gateway."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from chat_gateway.errors import AuthError, TransientError, error_for_status

logger = logging.getLogger(__name__)

DEFAULT_RETRIES = 2
DEFAULT_RETRY_DELAY = 0.3


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


def _error_message(payload: Any, fallback: str) -> str:
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
    return fallback


class ChatHttpClient:
    """Authenticated calls against the REST surface.

    Network failures and 5xx responses are retried ``retries`` times with
    exponential backoff starting at ``retry_delay`` seconds. Any 4xx raises
    the matching :class:`ChatError` immediately. A 401 additionally invokes
    ``on_unauthorized`` so the caller can force a re-login.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        retries: int = DEFAULT_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        on_unauthorized: Optional[Callable[[], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.base_url = base_url
        self.token = token
        self.retries = retries
        self.retry_delay = retry_delay
        self.on_unauthorized = on_unauthorized
        self._sleep = sleep
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "ChatHttpClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        url = _build_url(self.base_url, path)
        attempt = 0
        while True:
            try:
                return await self._send_once(method, url, payload, params)
            except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as exc:
                if attempt >= self.retries:
                    raise TransientError(f"network error: {exc}") from exc
                reason = str(exc) or type(exc).__name__
            except TransientError as exc:
                if attempt >= self.retries:
                    raise
                reason = exc.message
            attempt += 1
            delay = self.retry_delay * (2 ** (attempt - 1))
            logger.warning("%s %s failed (%s), retry %d in %.2fs", method, path, reason, attempt, delay)
            await self._sleep(delay)

    async def _send_once(
        self,
        method: str,
        url: str,
        payload: Optional[Dict[str, Any]],
        params: Optional[Dict[str, str]],
    ) -> Dict[str, Any]:
        async with self._client().request(
            method, url, json=payload, params=params, headers=self._headers()
        ) as response:
            try:
                body = await response.json(content_type=None)
            except ValueError:
                body = None
            if response.status < 400:
                return body if isinstance(body, dict) else {}
            error = error_for_status(response.status, _error_message(body, response.reason or "request failed"))
        if isinstance(error, AuthError) and self.on_unauthorized is not None:
            self.on_unauthorized()
        raise error

    async def send_message(self, receiver: str, content: str) -> Dict[str, Any]:
        response = await self._request("POST", "/messages", payload={"receiver": receiver, "content": content})
        return response["message"]

    async def fetch_conversation(self, other_user_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        params = {"limit": str(limit)} if limit is not None else None
        response = await self._request("GET", f"/messages/{other_user_id}", params=params)
        return list(response.get("messages", []))

    async def mark_delivered(self, message_id: str, to: Optional[str] = None) -> Dict[str, Any]:
        payload = {"to": to} if to else None
        response = await self._request("PATCH", f"/messages/{message_id}/delivered", payload=payload)
        return response["message"]

    async def mark_seen(self, message_id: str, to: Optional[str] = None) -> Dict[str, Any]:
        payload = {"to": to} if to else None
        response = await self._request("PATCH", f"/messages/{message_id}/seen", payload=payload)
        return response["message"]

    async def get_presence(self, user_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/presence/{user_id}")
