"""Best-effort side effects that must never affect the primary operation."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List

from .models import _now_ms

logger = logging.getLogger(__name__)


@dataclass
class SideEffectFailure:
    label: str
    error: BaseException
    at_ms: int


class BestEffort:
    """Runs side effects and routes their failures to a separate channel.

    ``run`` always returns ``None`` so callers cannot branch on the outcome
    of the side effect; failures are logged and kept in ``failures``.
    """

    def __init__(self, *, max_failures: int = 100, now_func: Callable[[], int] = _now_ms) -> None:
        self.failures: Deque[SideEffectFailure] = deque(maxlen=max_failures)
        self._now = now_func

    def run(self, label: str, func: Callable[..., Any], *args: Any) -> None:
        try:
            func(*args)
        except Exception as exc:
            logger.warning("best-effort %s failed: %s", label, exc, exc_info=True)
            self.failures.append(SideEffectFailure(label=label, error=exc, at_ms=self._now()))


@dataclass
class Notification:
    user_id: str
    from_user_id: str
    kind: str
    created_at_ms: int
    processed: bool = False


class NotificationQueue:
    """Pending out-of-band notifications for users without a live connection."""

    def __init__(self, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._now = now_func
        self._pending: Dict[str, List[Notification]] = {}

    def enqueue(self, user_id: str, from_user_id: str, kind: str = "new_message") -> Notification:
        notification = Notification(
            user_id=user_id,
            from_user_id=from_user_id,
            kind=kind,
            created_at_ms=self._now(),
        )
        self._pending.setdefault(user_id, []).append(notification)
        logger.debug("queued %s notification for %s", kind, user_id)
        return notification

    def pending(self, user_id: str) -> list[Notification]:
        return [n for n in self._pending.get(user_id, []) if not n.processed]

    def mark_processed(self, user_id: str) -> int:
        count = 0
        for notification in self._pending.pop(user_id, []):
            if not notification.processed:
                notification.processed = True
                count += 1
        return count
