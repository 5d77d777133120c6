from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Protocol, Set

from .auth import TokenVerifier
from .errors import AuthError
from .hub import RoomHub, make_frame
from .models import User, _now_ms, personal_room
from .notify import BestEffort
from .session import ConnectionSession, ConnectionState

logger = logging.getLogger(__name__)


class PresenceStore(Protocol):
    def get(self, user_id: str) -> User | None: ...

    def set_online(self, user_id: str) -> None: ...

    def set_offline(self, user_id: str, last_seen_ms: int) -> None: ...


@dataclass
class PresenceConfig:
    sweeper_interval_seconds: float = 10.0
    stale_timeout_ms: int = 30_000


@dataclass
class PresenceEntry:
    connection_ids: Set[str] = field(default_factory=set)
    last_activity_ms: int = 0


@dataclass(frozen=True)
class PresenceStatus:
    user_id: str
    online: bool
    last_seen_ms: int | None

    def to_wire(self) -> dict:
        return {"userId": self.user_id, "online": self.online, "lastSeen": self.last_seen_ms}


class PresenceRegistry:
    """Authoritative map of users to their live connections.

    All mutation happens synchronously on the event loop thread; no method
    awaits between reading and updating an entry, so two connections of the
    same user can never race each other into a wrong online/offline state.
    """

    def __init__(
        self,
        users: PresenceStore,
        verifier: TokenVerifier,
        hub: RoomHub,
        config: PresenceConfig | None = None,
        *,
        best_effort: BestEffort | None = None,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.config = config or PresenceConfig()
        self._users = users
        self._verifier = verifier
        self._hub = hub
        self._best_effort = best_effort or BestEffort()
        self._now = now_func
        self._entries: Dict[str, PresenceEntry] = {}
        self._last_seen: Dict[str, int] = {}
        self._evict_callbacks: List[Callable[[str], None]] = []
        self._sweeper_task: asyncio.Task | None = None

    def start_sweeper(self) -> None:
        if self._sweeper_task is None:
            self._sweeper_task = asyncio.create_task(self._sweep())

    async def stop_sweeper(self) -> None:
        if self._sweeper_task is None:
            return
        self._sweeper_task.cancel()
        try:
            await self._sweeper_task
        except asyncio.CancelledError:
            pass
        self._sweeper_task = None

    async def _sweep(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.config.sweeper_interval_seconds)
                self.expire()
        except asyncio.CancelledError:
            return

    def on_evict(self, callback: Callable[[str], None]) -> None:
        """Register a callback invoked with each force-evicted connection id."""

        self._evict_callbacks.append(callback)

    def authenticate(self, session: ConnectionSession, token: str) -> str:
        if session.closed:
            raise AuthError("connection closed")
        user_id = self._verifier.verify(token)
        if session.user_id is not None:
            if session.user_id != user_id:
                raise AuthError("connection already bound to another user")
            if self.is_registered(session):
                return user_id
        self.register(session, user_id)
        return user_id

    def register(self, session: ConnectionSession, user_id: str) -> None:
        now_ms = self._now()
        entry = self._entries.get(user_id)
        first = entry is None
        if entry is None:
            entry = PresenceEntry(last_activity_ms=now_ms)
            self._entries[user_id] = entry
        entry.connection_ids.add(session.connection_id)
        entry.last_activity_ms = now_ms

        session.user_id = user_id
        session.state = ConnectionState.AUTHENTICATED
        room = personal_room(user_id)
        self._hub.join(session.connection_id, room)
        session.joined_rooms.add(room)

        if first:
            logger.info("user %s online", user_id)
            self._best_effort.run("persist-online", self._users.set_online, user_id)
            self._broadcast(PresenceStatus(user_id=user_id, online=True, last_seen_ms=None))

    def deregister(self, session: ConnectionSession) -> None:
        user_id = session.user_id
        if user_id is None:
            return
        room = personal_room(user_id)
        self._hub.leave(session.connection_id, room)
        session.joined_rooms.discard(room)

        entry = self._entries.get(user_id)
        if entry is None:
            return
        entry.connection_ids.discard(session.connection_id)
        if entry.connection_ids:
            return
        self._mark_offline(user_id)

    def touch(self, user_id: str) -> None:
        entry = self._entries.get(user_id)
        if entry is not None:
            entry.last_activity_ms = self._now()

    def is_registered(self, session: ConnectionSession) -> bool:
        entry = self._entries.get(session.user_id) if session.user_id is not None else None
        return entry is not None and session.connection_id in entry.connection_ids

    def is_online(self, user_id: str) -> bool:
        entry = self._entries.get(user_id)
        return entry is not None and bool(entry.connection_ids)

    def connection_count(self, user_id: str) -> int:
        entry = self._entries.get(user_id)
        return len(entry.connection_ids) if entry else 0

    def get_presence(self, user_id: str) -> PresenceStatus:
        user: User | None = None
        try:
            user = self._users.get(user_id)
        except Exception:
            logger.warning("failed to read persisted presence for %s", user_id, exc_info=True)

        if self.is_online(user_id) or (user is not None and user.online):
            return PresenceStatus(user_id=user_id, online=True, last_seen_ms=None)

        candidates = [ts for ts in (self._last_seen.get(user_id), user.last_seen_ms if user else None) if ts is not None]
        return PresenceStatus(user_id=user_id, online=False, last_seen_ms=max(candidates) if candidates else None)

    def expire(self) -> list[str]:
        """Force-evict users whose last activity is older than the stale timeout."""

        now_ms = self._now()
        stale = [
            (user_id, entry)
            for user_id, entry in self._entries.items()
            if now_ms - entry.last_activity_ms > self.config.stale_timeout_ms
        ]
        for user_id, entry in stale:
            logger.info("evicting stale presence for %s (%d connections)", user_id, len(entry.connection_ids))
            self._mark_offline(user_id)
            for connection_id in entry.connection_ids:
                for callback in self._evict_callbacks:
                    self._best_effort.run("evict-connection", callback, connection_id)
        return [user_id for user_id, _ in stale]

    def _mark_offline(self, user_id: str) -> None:
        self._entries.pop(user_id, None)
        last_seen_ms = self._now()
        self._last_seen[user_id] = last_seen_ms
        logger.info("user %s offline", user_id)
        self._best_effort.run("persist-offline", self._users.set_offline, user_id, last_seen_ms)
        self._broadcast(PresenceStatus(user_id=user_id, online=False, last_seen_ms=last_seen_ms))

    def _broadcast(self, status: PresenceStatus) -> None:
        self._best_effort.run("presence-broadcast", self._hub.broadcast_all, make_frame("userStatus", status.to_wire()))
