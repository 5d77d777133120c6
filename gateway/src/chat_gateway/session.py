from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Set


class ConnectionState(Enum):
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    DISCONNECTED = "disconnected"


def new_connection_id() -> str:
    return f"c_{secrets.token_urlsafe(9)}"


@dataclass
class ConnectionSession:
    """Per-connection state threaded through every protocol handler."""

    connection_id: str = field(default_factory=new_connection_id)
    user_id: str | None = None
    joined_rooms: Set[str] = field(default_factory=set)
    state: ConnectionState = ConnectionState.CONNECTED

    @property
    def authenticated(self) -> bool:
        return self.state is ConnectionState.AUTHENTICATED and self.user_id is not None

    @property
    def closed(self) -> bool:
        return self.state is ConnectionState.DISCONNECTED
