from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s [%(connection_id)s] %(name)s: %(message)s"

# Set by the websocket handler for the lifetime of each connection task.
connection_id_var: ContextVar[str] = ContextVar("connection_id", default="-")


class ConnectionIdFilter(logging.Filter):
    """Stamps every record with the connection currently being served."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.connection_id = connection_id_var.get()
        return True


class SafeFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "connection_id"):
            record.connection_id = "-"
        return super().format(record)


def setup_logging(level: str = "INFO", log_file: str | None = None) -> logging.Logger:
    root = logging.getLogger()
    root.setLevel(logging.WARNING)
    formatter = SafeFormatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    stream_handler.addFilter(ConnectionIdFilter())
    root.addHandler(stream_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(ConnectionIdFilter())
        root.addHandler(file_handler)

    logging.getLogger("chat_gateway").setLevel(getattr(logging, level.upper(), logging.INFO))
    return root
