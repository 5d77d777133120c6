"""Gateway configuration loaded from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Any

from dotenv import load_dotenv


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


@dataclass
class GatewayConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    db_path: str | None = None
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    heartbeat_timeout_ms: int = 30_000
    heartbeat_check_interval_ms: int = 10_000
    max_msg_size: int = 1_048_576
    messages_per_min: int = 120
    log_level: str = "INFO"
    log_file: str | None = None

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> "GatewayConfig":
        if dotenv:
            load_dotenv()
        return cls(
            host=os.getenv("CHAT_HOST", cls.host),
            port=_env_int("CHAT_PORT", cls.port),
            db_path=os.getenv("CHAT_DB_PATH") or None,
            jwt_secret=os.getenv("CHAT_JWT_SECRET", ""),
            jwt_algorithm=os.getenv("CHAT_JWT_ALGORITHM", cls.jwt_algorithm),
            heartbeat_timeout_ms=_env_int("CHAT_HEARTBEAT_TIMEOUT_MS", cls.heartbeat_timeout_ms),
            heartbeat_check_interval_ms=_env_int(
                "CHAT_HEARTBEAT_CHECK_INTERVAL_MS", cls.heartbeat_check_interval_ms
            ),
            max_msg_size=_env_int("CHAT_MAX_MSG_SIZE", cls.max_msg_size),
            messages_per_min=_env_int("CHAT_MESSAGES_PER_MIN", cls.messages_per_min),
            log_level=os.getenv("CHAT_LOG_LEVEL", cls.log_level),
            log_file=os.getenv("CHAT_LOG_FILE") or None,
        )

    def override(self, **values: Any) -> "GatewayConfig":
        """Return a copy with every non-``None`` value applied."""

        known = {f.name for f in fields(self)}
        changes = {key: value for key, value in values.items() if key in known and value is not None}
        return replace(self, **changes)
