"""WebSocket gateway exposing a ``RealtimeService`` to remote chat clients.

Frames are JSON objects ``{"v": 1, "t": <type>, "id": <request id>, "body": {...}}``.
Requests are answered with a frame of type ``result`` (or ``error``) carrying
the same ``id``; feed traffic arrives as ``changes.event``, ``broadcast.event``,
``presence.sync``/``presence.join``/``presence.leave`` and ``sub.status``
frames tagged with the client-chosen ``sub_id``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict

from aiohttp import WSMsgType, web

from .memory_service import InMemoryRealtimeService
from .models import Identity
from .service import (
    ChangeEvent,
    ChannelStatus,
    NotAuthenticated,
    PresenceChannel,
    QueryFailed,
    RealtimeService,
    ServiceError,
    Subscription,
    SubscriptionFailed,
    WriteFailed,
)

logger = logging.getLogger(__name__)

Authenticator = Callable[[str, Dict[str, Any]], Identity | None]

SERVICE_KEY = web.AppKey("service", RealtimeService)
AUTHENTICATOR_KEY = web.AppKey("authenticator", object)
WS_CONFIG_KEY = web.AppKey("ws_config", dict)

ERROR_CODES = {
    NotAuthenticated: "unauthorized",
    QueryFailed: "query_failed",
    WriteFailed: "write_failed",
    SubscriptionFailed: "subscription_failed",
}


def token_authenticator(auth_token: str, body: Dict[str, Any]) -> Identity | None:
    """Development authenticator: the token is the user id."""

    if not auth_token:
        return None
    return Identity(id=auth_token, email=body.get("email"), metadata=dict(body.get("metadata") or {}))


def error_code_for(exc: BaseException) -> str:
    for exc_type, code in ERROR_CODES.items():
        if isinstance(exc, exc_type):
            return code
    if isinstance(exc, ServiceError):
        return "service_error"
    return "invalid_request"


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


def _result_frame(request_id: str | None, body: Dict[str, Any]) -> dict[str, Any]:
    return {"v": 1, "t": "result", "id": request_id, "body": body}


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def create_app(
    service: RealtimeService | None = None,
    *,
    authenticator: Authenticator = token_authenticator,
    ping_interval_s: int = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
    db_path: str | None = None,
) -> web.Application:
    if service is None:
        store = None
        if db_path is not None:
            from .sqlite_store import SQLiteRowStore

            store = SQLiteRowStore(db_path)
        service = InMemoryRealtimeService(store)

    app = web.Application()
    app[SERVICE_KEY] = service
    app[AUTHENTICATOR_KEY] = authenticator
    app[WS_CONFIG_KEY] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/v1/ws", websocket_handler)

    if db_path is not None and isinstance(service, InMemoryRealtimeService):
        async def close_db(_: web.Application) -> None:
            service.close()

        app.on_cleanup.append(close_db)
    return app


class _Connection:
    """Per-socket bookkeeping: live feeds and presence channels by ``sub_id``."""

    def __init__(self, service: RealtimeService, enqueue: Callable[[dict], None]) -> None:
        self.service = service
        self.enqueue = enqueue
        self.feeds: Dict[str, Subscription] = {}
        self.presence: Dict[str, PresenceChannel] = {}

    def status_forwarder(self, sub_id: str) -> Callable[[ChannelStatus], None]:
        def forward(status: ChannelStatus) -> None:
            self.enqueue({"v": 1, "t": "sub.status", "body": {"sub_id": sub_id, "status": status.value}})

        return forward

    async def rows_select(self, body: Dict[str, Any]) -> Dict[str, Any]:
        rows = await self.service.select(
            body["table"],
            body.get("filters") or None,
            order_by=body.get("order_by") or "created_at_ms",
            ascending=bool(body.get("ascending", True)),
            limit=body.get("limit"),
        )
        return {"rows": rows}

    async def rows_insert(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return {"row": await self.service.insert(body["table"], body["row"])}

    async def rows_update(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return {"row": await self.service.update(body["table"], body["row_id"], body.get("changes") or {})}

    async def rows_upsert(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return {"row": await self.service.upsert(body["table"], body["row"], list(body["on_conflict"]))}

    async def rows_delete(self, body: Dict[str, Any]) -> Dict[str, Any]:
        await self.service.delete(body["table"], body["row_id"])
        return {}

    async def changes_subscribe(self, body: Dict[str, Any]) -> Dict[str, Any]:
        sub_id = str(body["sub_id"])

        def forward(event: ChangeEvent) -> None:
            self.enqueue({"v": 1, "t": "changes.event", "body": {"sub_id": sub_id, "event": event.to_frame_body()}})

        await self._close_feed(sub_id)
        self.feeds[sub_id] = await self.service.subscribe_changes(
            body["table"], body.get("filters") or None, forward, self.status_forwarder(sub_id)
        )
        return {"sub_id": sub_id}

    async def broadcast_subscribe(self, body: Dict[str, Any]) -> Dict[str, Any]:
        sub_id = str(body["sub_id"])

        def forward(payload: Dict[str, Any]) -> None:
            self.enqueue({"v": 1, "t": "broadcast.event", "body": {"sub_id": sub_id, "payload": payload}})

        await self._close_feed(sub_id)
        self.feeds[sub_id] = await self.service.subscribe_broadcast(
            body["channel"], body["event"], forward, self.status_forwarder(sub_id)
        )
        return {"sub_id": sub_id}

    async def broadcast_send(self, body: Dict[str, Any]) -> Dict[str, Any]:
        await self.service.broadcast(body["channel"], body["event"], body.get("payload") or {})
        return {}

    async def sub_close(self, body: Dict[str, Any]) -> Dict[str, Any]:
        await self._close_feed(str(body["sub_id"]))
        return {}

    async def presence_join(self, body: Dict[str, Any]) -> Dict[str, Any]:
        sub_id = str(body["sub_id"])
        channel = self.service.presence_channel(body["channel"], body["key"])

        def on_sync() -> None:
            self.enqueue(
                {"v": 1, "t": "presence.sync", "body": {"sub_id": sub_id, "state": channel.presence_state()}}
            )

        def relay(frame_type: str):
            def handler(key: str, presences) -> None:
                self.enqueue(
                    {"v": 1, "t": frame_type, "body": {"sub_id": sub_id, "key": key, "presences": presences}}
                )

            return handler

        channel.on_sync(on_sync)
        channel.on_join(relay("presence.join"))
        channel.on_leave(relay("presence.leave"))
        await channel.subscribe(self.status_forwarder(sub_id))
        self.presence[sub_id] = channel
        return {"sub_id": sub_id, "state": channel.presence_state()}

    async def presence_track(self, body: Dict[str, Any]) -> Dict[str, Any]:
        channel = self.presence.get(str(body["sub_id"]))
        if channel is None:
            raise SubscriptionFailed("unknown presence subscription")
        await channel.track(dict(body.get("payload") or {}))
        return {}

    async def presence_leave(self, body: Dict[str, Any]) -> Dict[str, Any]:
        channel = self.presence.pop(str(body["sub_id"]), None)
        if channel is not None:
            await channel.close()
        return {}

    async def rpc(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return {"result": await self.service.rpc(body["name"], body.get("params") or {})}

    async def _close_feed(self, sub_id: str) -> None:
        feed = self.feeds.pop(sub_id, None)
        if feed is not None:
            await feed.close()

    async def close(self) -> None:
        for sub_id in list(self.feeds):
            await self._close_feed(sub_id)
        for channel in list(self.presence.values()):
            try:
                await channel.close()
            except Exception as exc:
                logger.warning("closing presence channel failed: %s", exc)
        self.presence.clear()

    def handlers(self) -> Dict[str, Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]]:
        return {
            "rows.select": self.rows_select,
            "rows.insert": self.rows_insert,
            "rows.update": self.rows_update,
            "rows.upsert": self.rows_upsert,
            "rows.delete": self.rows_delete,
            "changes.subscribe": self.changes_subscribe,
            "broadcast.subscribe": self.broadcast_subscribe,
            "broadcast.send": self.broadcast_send,
            "sub.close": self.sub_close,
            "presence.join": self.presence_join,
            "presence.track": self.presence_track,
            "presence.leave": self.presence_leave,
            "rpc": self.rpc,
        }


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    service = request.app[SERVICE_KEY]
    authenticator: Authenticator = request.app[AUTHENTICATOR_KEY]  # type: ignore[assignment]
    ws_config: dict[str, Any] = request.app[WS_CONFIG_KEY]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    loop = asyncio.get_running_loop()
    last_activity = loop.time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=1000)
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = loop.time()
        missed_heartbeats = 0

    def enqueue(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                if loop.time() - last_activity >= ws_config["ping_interval_s"]:
                    enqueue({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    connection = _Connection(service, enqueue)
    handlers = connection.handlers()
    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        first_msg = await ws.receive()
        if first_msg.type != WSMsgType.TEXT:
            await ws.close(code=1002, message=b"invalid handshake")
            return ws
        try:
            payload = first_msg.json()
        except ValueError:
            await ws.close(code=1002, message=b"invalid json")
            return ws

        body = payload.get("body") or {}
        if payload.get("v") != 1 or payload.get("t") != "session.start":
            await ws.send_json(_error_frame("invalid_request", "first frame must start session", request_id=payload.get("id")))
            await ws.close()
            return ws
        identity = authenticator(str(body.get("auth_token") or ""), body)
        if identity is None:
            await ws.send_json(_error_frame("unauthorized", "invalid auth_token", request_id=payload.get("id")))
            await ws.close()
            return ws

        mark_activity()
        enqueue(
            {
                "v": 1,
                "t": "session.ready",
                "id": payload.get("id"),
                "body": {"user": {"id": identity.id, "email": identity.email, "metadata": identity.metadata}},
            }
        )
        logger.info("session started for %s", identity.id)

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    enqueue(_error_frame("invalid_request", "malformed json"))
                    continue

                mark_activity()
                request_id = frame.get("id")
                if frame.get("v") != 1:
                    enqueue(_error_frame("invalid_request", "unsupported version", request_id=request_id))
                    continue

                frame_type = frame.get("t")
                if frame_type == "ping":
                    enqueue({"v": 1, "t": "pong", "id": request_id})
                    continue
                if frame_type == "pong":
                    continue
                handler = handlers.get(frame_type)
                if handler is None:
                    enqueue(_error_frame("invalid_request", "unknown frame type", request_id=request_id))
                    continue
                try:
                    result = await handler(frame.get("body") or {})
                except (KeyError, TypeError, ValueError) as exc:
                    enqueue(_error_frame("invalid_request", f"bad {frame_type} request: {exc}", request_id=request_id))
                except ServiceError as exc:
                    enqueue(_error_frame(error_code_for(exc), str(exc), request_id=request_id))
                else:
                    enqueue(_result_frame(request_id, result))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        await connection.close()
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws
