"""Command line entry point: run the gateway and a few operator helpers."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Iterable, TextIO

from aiohttp import web

from .auth import TrustedVerifier, issue_token
from .config import GatewayConfig
from .errors import ChatError
from .hub import Frame, RoomHub
from .logging_config import setup_logging
from .messages import InMemoryMessageStore
from .models import is_user_id
from .notify import BestEffort
from .presence import PresenceRegistry
from .protocol import DeliveryProtocol
from .session import ConnectionSession
from .sqlite_backend import SQLiteBackend
from .sqlite_users import SQLiteUserStore
from .users import InMemoryUserStore
from .ws_transport import create_app

logger = logging.getLogger(__name__)


def simulate(frames: Iterable[dict], output: TextIO) -> None:
    """Run protocol frames through in-memory stores and print every emitted frame.

    Each input frame names a logical connection in ``conn``. ``authenticate``
    takes the user id as its token and creates the user on first use;
    ``disconnect`` closes the connection.
    """

    users = InMemoryUserStore()
    hub = RoomHub()
    best_effort = BestEffort()
    registry = PresenceRegistry(users, TrustedVerifier(), hub, best_effort=best_effort)
    protocol = DeliveryProtocol(
        registry=registry,
        messages=InMemoryMessageStore(users),
        hub=hub,
        best_effort=best_effort,
    )
    sessions: dict[str, ConnectionSession] = {}

    def session_for(name: str) -> ConnectionSession:
        session = sessions.get(name)
        if session is None or session.closed:
            session = ConnectionSession(connection_id=name)
            sessions[name] = session

            def _emit(frame: Frame, conn: str = name) -> None:
                output.write(json.dumps({"conn": conn, "frame": frame}, sort_keys=True) + "\n")

            protocol.open(session, _emit)
        return session

    for frame in frames:
        conn = frame.get("conn")
        if not isinstance(conn, str) or not conn:
            raise ValueError("every frame needs a conn name")
        session = session_for(conn)
        frame_type = frame.get("t")
        if frame_type == "disconnect":
            protocol.close(session)
            continue
        if frame_type == "authenticate":
            token = frame.get("body")
            if is_user_id(token) and not users.exists(token):
                users.add(token)
        protocol.handle(session, {"v": 1, **frame})


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: list[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    frames = _load_frames(args.file or sys.stdin)
    simulate(frames, output)
    return 0


def _run_serve(args: argparse.Namespace, config: GatewayConfig) -> int:
    config = config.override(host=args.host, port=args.port, db_path=args.db, log_level=args.log_level)
    setup_logging(config.log_level, config.log_file)
    logger.info("starting gateway on %s:%s (db=%s)", config.host, config.port, config.db_path or "memory")
    app = create_app(config)
    web.run_app(app, host=config.host, port=config.port, print=None)
    return 0


def _run_token(args: argparse.Namespace, config: GatewayConfig, output: TextIO) -> int:
    secret = args.secret or config.jwt_secret
    if not secret:
        sys.stderr.write("no JWT secret configured (set CHAT_JWT_SECRET or pass --secret)\n")
        return 2
    output.write(issue_token(secret, args.user_id, ttl_seconds=args.ttl, algorithm=config.jwt_algorithm) + "\n")
    return 0


def _run_add_user(args: argparse.Namespace, config: GatewayConfig, output: TextIO) -> int:
    db_path = args.db or config.db_path
    if not db_path:
        sys.stderr.write("add-user needs a database (set CHAT_DB_PATH or pass --db)\n")
        return 2
    backend = SQLiteBackend(db_path)
    try:
        user = SQLiteUserStore(backend).add(args.user_id, args.username or "")
    except ChatError as exc:
        sys.stderr.write(f"{exc.message}\n")
        return 1
    finally:
        backend.close()
    output.write(json.dumps({"id": user.id, "username": user.username}) + "\n")
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]
    output = output or sys.stdout

    parser = argparse.ArgumentParser(description="Chat gateway CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp gateway server")
    serve_parser.add_argument("--host", default=None, help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind")
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")
    serve_parser.add_argument("--log-level", default=None, help="Log level for the gateway loggers")

    token_parser = subparsers.add_parser("token", help="Mint a development bearer token")
    token_parser.add_argument("user_id", help="User id to embed in the token")
    token_parser.add_argument("--ttl", type=int, default=3600, help="Lifetime in seconds")
    token_parser.add_argument("--secret", default=None, help="Override CHAT_JWT_SECRET")

    user_parser = subparsers.add_parser("add-user", help="Create a user in the SQLite directory")
    user_parser.add_argument("user_id", help="User id")
    user_parser.add_argument("--username", default=None, help="Display name")
    user_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database")

    simulate_parser = subparsers.add_parser("simulate", help="Replay protocol frames without a network")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    args = parser.parse_args(argv)

    if args.command == "simulate":
        return _run_simulation(args, output)

    config = GatewayConfig.from_env()
    if args.command == "serve":
        return _run_serve(args, config)
    if args.command == "token":
        return _run_token(args, config, output)
    return _run_add_user(args, config, output)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
