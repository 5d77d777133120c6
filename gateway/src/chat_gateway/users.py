from __future__ import annotations

from typing import Dict

from .errors import NotFoundError, ValidationError
from .models import User, require_user_id


class InMemoryUserStore:
    """User directory holding the persisted presence fields."""

    def __init__(self) -> None:
        self._users: Dict[str, User] = {}

    def add(self, user_id: str, username: str = "") -> User:
        require_user_id(user_id)
        if user_id in self._users:
            raise ValidationError("user already exists")
        user = User(id=user_id, username=username or user_id)
        self._users[user_id] = user
        return user

    def get(self, user_id: str) -> User | None:
        return self._users.get(user_id)

    def exists(self, user_id: str) -> bool:
        return user_id in self._users

    def set_online(self, user_id: str) -> None:
        self._require(user_id).online = True

    def set_offline(self, user_id: str, last_seen_ms: int) -> None:
        user = self._require(user_id)
        user.online = False
        user.last_seen_ms = last_seen_ms

    def _require(self, user_id: str) -> User:
        user = self._users.get(user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user
