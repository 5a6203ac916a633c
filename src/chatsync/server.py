"""Command line entry points: run the gateway or replay a scripted chat session."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any, Dict, Iterable, TextIO

from aiohttp import web

from .config import ChatConfig
from .memory_service import InMemoryRealtimeService, StaticIdentityProvider
from .models import Identity, Scope
from .session import ChatSessionManager
from .ws_transport import create_app

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


class SimulatedClock:
    def __init__(self, start_ms: int = 0) -> None:
        self.now_ms = start_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)

    def now(self) -> int:
        return self.now_ms


def _scope_from(body: Dict[str, Any]) -> Scope:
    return Scope(conversation_id=body.get("conversation_id"), group_id=body.get("group_id"))


async def simulate(frames: Iterable[dict], output: TextIO, config: ChatConfig | None = None) -> None:
    """Drive a chat session from JSON frames against an in-memory service.

    Each ``{"t": "state"}`` frame, and the end of input, writes the current
    ChatState as one JSON line.
    """

    clock = SimulatedClock(start_ms=1_000_000)
    service = InMemoryRealtimeService(now_func=clock.now)
    identity = StaticIdentityProvider()
    manager = ChatSessionManager(service, identity, config=config, now_func=clock.now)

    def emit() -> None:
        output.write(json.dumps(manager.state.to_dict(), sort_keys=True) + "\n")

    try:
        for frame in frames:
            frame_type = frame.get("t")
            body = frame.get("body") or {}
            if frame_type == "identity":
                identity.identity = Identity(
                    id=body["id"], email=body.get("email"), metadata=dict(body.get("metadata") or {})
                )
            elif frame_type == "open":
                await manager.open(_scope_from(body))
            elif frame_type == "close":
                await manager.close()
            elif frame_type == "insert":
                await service.insert(body["table"], body["row"])
            elif frame_type == "update":
                await service.update(body["table"], body["row_id"], body.get("changes") or {})
            elif frame_type == "upsert":
                await service.upsert(body["table"], body["row"], body["on_conflict"])
            elif frame_type == "delete":
                await service.delete(body["table"], body["row_id"])
            elif frame_type == "send":
                await manager.send_message(body["text"], message_type=body.get("message_type", "text"))
            elif frame_type == "typing":
                task = manager.update_typing_indicator(bool(body.get("is_typing", True)))
                if task is not None:
                    await task
            elif frame_type == "advance":
                clock.advance(float(body.get("seconds", 0)))
                manager.sweep_typing()
            elif frame_type == "state":
                emit()
            else:
                raise ValueError(f"unsupported frame type: {frame_type}")
            # let detached writes and presence tasks run between frames
            await asyncio.sleep(0)
        emit()
    finally:
        await manager.close()


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
    asyncio.run(simulate(frames, output, ChatConfig.from_env()))
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    app = create_app(ping_interval_s=args.ping_interval, db_path=args.db)
    web.run_app(app, host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Real-time chat sync tools")
    parser.add_argument(
        "--log-level",
        default=os.getenv("CHATSYNC_LOG_LEVEL", "INFO"),
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay chat frames and print the resulting state")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp chat gateway")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=30,
        help="Seconds between heartbeat pings",
    )
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")

    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.INFO), format=LOG_FORMAT)

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
