"""aiohttp client for the chat gateway implementing ``RealtimeService``."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Callable, Dict, List, Mapping, Sequence

import aiohttp

from .models import Identity
from .service import (
    BroadcastCallback,
    ChangeCallback,
    ChangeEvent,
    ChannelStatus,
    IdentityProvider,
    NotAuthenticated,
    PresenceCallback,
    PresenceChannel,
    QueryFailed,
    RealtimeService,
    ServiceError,
    StatusCallback,
    Subscription,
    SubscriptionFailed,
    WriteFailed,
)

logger = logging.getLogger(__name__)

EXCEPTIONS = {
    "unauthorized": NotAuthenticated,
    "query_failed": QueryFailed,
    "write_failed": WriteFailed,
    "subscription_failed": SubscriptionFailed,
}


class _RemoteFeed(Subscription):
    def __init__(self, client: "RemoteRealtimeService", sub_id: str, callback, on_status: StatusCallback | None) -> None:
        self._client = client
        self.sub_id = sub_id
        self.callback = callback
        self.on_status = on_status
        self.closed = False

    def report(self, status: ChannelStatus) -> None:
        if self.on_status is not None:
            self.on_status(status)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._client._feeds.pop(self.sub_id, None)
        if self._client.connected:
            await self._client._request("sub.close", {"sub_id": self.sub_id})


class RemotePresenceChannel(PresenceChannel):
    def __init__(self, client: "RemoteRealtimeService", name: str, key: str) -> None:
        self._client = client
        self.name = name
        self.key = key
        self.sub_id = client._next_sub_id()
        self._state: Dict[str, List[Dict[str, Any]]] = {}
        self._sync_callbacks: List[Callable[[], None]] = []
        self._join_callbacks: List[PresenceCallback] = []
        self._leave_callbacks: List[PresenceCallback] = []
        self.on_status: StatusCallback | None = None
        self.joined = False

    def on_sync(self, callback: Callable[[], None]) -> None:
        self._sync_callbacks.append(callback)

    def on_join(self, callback: PresenceCallback) -> None:
        self._join_callbacks.append(callback)

    def on_leave(self, callback: PresenceCallback) -> None:
        self._leave_callbacks.append(callback)

    async def subscribe(self, on_status: StatusCallback | None = None) -> None:
        self.on_status = on_status
        self._client._presence[self.sub_id] = self
        try:
            result = await self._client._request(
                "presence.join", {"sub_id": self.sub_id, "channel": self.name, "key": self.key}
            )
        except ServiceError:
            self._client._presence.pop(self.sub_id, None)
            raise
        self.joined = True
        self._state = result.get("state") or {}

    async def track(self, payload: Dict[str, Any]) -> None:
        await self._client._request("presence.track", {"sub_id": self.sub_id, "payload": payload})

    def presence_state(self) -> Dict[str, List[Dict[str, Any]]]:
        return {key: list(presences) for key, presences in self._state.items()}

    async def close(self) -> None:
        self._client._presence.pop(self.sub_id, None)
        if self.joined and self._client.connected:
            self.joined = False
            await self._client._request("presence.leave", {"sub_id": self.sub_id})

    def _dispatch(self, frame_type: str, body: Dict[str, Any]) -> None:
        if frame_type == "presence.sync":
            self._state = body.get("state") or {}
            for callback in list(self._sync_callbacks):
                callback()
            return
        callbacks = self._join_callbacks if frame_type == "presence.join" else self._leave_callbacks
        for callback in list(callbacks):
            callback(str(body.get("key")), list(body.get("presences") or []))


class RemoteRealtimeService(RealtimeService, IdentityProvider):
    """Speaks the gateway frame protocol over one WebSocket.

    The same object is the identity provider: the gateway reports the
    authenticated user in its ``session.ready`` frame.
    """

    def __init__(
        self,
        url: str,
        auth_token: str,
        *,
        session: aiohttp.ClientSession | None = None,
        request_timeout_s: float = 10.0,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        self.url = url
        self.auth_token = auth_token
        self.request_timeout_s = request_timeout_s
        self.metadata = dict(metadata or {})
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._ids = itertools.count(1)
        self._sub_ids = itertools.count(1)
        self._pending: Dict[str, asyncio.Future] = {}
        self._feeds: Dict[str, _RemoteFeed] = {}
        self._presence: Dict[str, RemotePresenceChannel] = {}
        self.identity: Identity | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def _next_sub_id(self) -> str:
        return f"s{next(self._sub_ids)}"

    async def connect(self) -> Identity:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        self._ws = await self._session.ws_connect(self.url)
        await self._ws.send_json(
            {
                "v": 1,
                "t": "session.start",
                "id": "start",
                "body": {"auth_token": self.auth_token, "metadata": self.metadata},
            }
        )
        ready = await asyncio.wait_for(self._ws.receive_json(), timeout=self.request_timeout_s)
        if ready.get("t") != "session.ready":
            body = ready.get("body") or {}
            await self._ws.close()
            raise NotAuthenticated(str(body.get("message") or "session rejected"))
        user = ready["body"]["user"]
        self.identity = Identity(id=str(user["id"]), email=user.get("email"), metadata=dict(user.get("metadata") or {}))
        self._reader_task = asyncio.create_task(self._read_loop())
        return self.identity

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
        if self._reader_task is not None:
            await asyncio.gather(self._reader_task, return_exceptions=True)
            self._reader_task = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def current_user(self) -> Identity | None:
        return self.identity

    async def _request(self, frame_type: str, body: Dict[str, Any]) -> Dict[str, Any]:
        if not self.connected:
            raise ServiceError("not connected")
        request_id = f"r{next(self._ids)}"
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._ws.send_json({"v": 1, "t": frame_type, "id": request_id, "body": body})
            return await asyncio.wait_for(future, timeout=self.request_timeout_s)
        except asyncio.TimeoutError as exc:
            raise ServiceError(f"{frame_type} timed out") from exc
        finally:
            self._pending.pop(request_id, None)

    async def _read_loop(self) -> None:
        assert self._ws is not None
        try:
            async for msg in self._ws:
                if msg.type != aiohttp.WSMsgType.TEXT:
                    if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.ERROR):
                        break
                    continue
                try:
                    frame = msg.json()
                except ValueError:
                    logger.warning("dropping malformed frame from gateway")
                    continue
                await self._dispatch(frame)
        finally:
            self._connection_lost()

    async def _dispatch(self, frame: Dict[str, Any]) -> None:
        frame_type = frame.get("t")
        body = frame.get("body") or {}
        if frame_type in ("result", "error"):
            future = self._pending.get(frame.get("id"))
            if future is None or future.done():
                return
            if frame_type == "result":
                future.set_result(body)
            else:
                exc_type = EXCEPTIONS.get(body.get("code"), ServiceError)
                future.set_exception(exc_type(str(body.get("message") or body.get("code"))))
        elif frame_type == "changes.event":
            feed = self._feeds.get(body.get("sub_id"))
            if feed is not None:
                feed.callback(ChangeEvent.from_frame_body(body["event"]))
        elif frame_type == "broadcast.event":
            feed = self._feeds.get(body.get("sub_id"))
            if feed is not None:
                feed.callback(dict(body.get("payload") or {}))
        elif frame_type == "sub.status":
            status = ChannelStatus(body["status"])
            feed = self._feeds.get(body.get("sub_id"))
            if feed is not None:
                feed.report(status)
            channel = self._presence.get(body.get("sub_id"))
            if channel is not None and channel.on_status is not None:
                channel.on_status(status)
        elif frame_type in ("presence.sync", "presence.join", "presence.leave"):
            channel = self._presence.get(body.get("sub_id"))
            if channel is not None:
                channel._dispatch(frame_type, body)
        elif frame_type == "ping":
            if self.connected:
                await self._ws.send_json({"v": 1, "t": "pong"})
        elif frame_type == "pong":
            return
        else:
            logger.debug("ignoring gateway frame %s", frame_type)

    def _connection_lost(self) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(ServiceError("connection lost"))
        feeds, self._feeds = list(self._feeds.values()), {}
        for feed in feeds:
            feed.closed = True
            feed.report(ChannelStatus.CLOSED)
        self._presence.clear()

    async def select(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        *,
        order_by: str = "created_at_ms",
        ascending: bool = True,
        limit: int | None = None,
    ) -> List[Dict[str, Any]]:
        result = await self._request(
            "rows.select",
            {"table": table, "filters": dict(filters or {}), "order_by": order_by, "ascending": ascending, "limit": limit},
        )
        return list(result.get("rows") or [])

    async def insert(self, table: str, row: Mapping[str, Any]) -> Dict[str, Any]:
        return (await self._request("rows.insert", {"table": table, "row": dict(row)}))["row"]

    async def update(self, table: str, row_id: str, changes: Mapping[str, Any]) -> Dict[str, Any]:
        result = await self._request("rows.update", {"table": table, "row_id": row_id, "changes": dict(changes)})
        return result["row"]

    async def upsert(self, table: str, row: Mapping[str, Any], on_conflict: Sequence[str]) -> Dict[str, Any]:
        result = await self._request(
            "rows.upsert", {"table": table, "row": dict(row), "on_conflict": list(on_conflict)}
        )
        return result["row"]

    async def delete(self, table: str, row_id: str) -> None:
        await self._request("rows.delete", {"table": table, "row_id": row_id})

    async def _open_feed(self, frame_type: str, body: Dict[str, Any], callback, on_status) -> Subscription:
        feed = _RemoteFeed(self, self._next_sub_id(), callback, on_status)
        self._feeds[feed.sub_id] = feed
        try:
            await self._request(frame_type, {**body, "sub_id": feed.sub_id})
        except ServiceError:
            self._feeds.pop(feed.sub_id, None)
            raise
        return feed

    async def subscribe_changes(
        self,
        table: str,
        filters: Mapping[str, Any] | None,
        callback: ChangeCallback,
        on_status: StatusCallback | None = None,
    ) -> Subscription:
        return await self._open_feed(
            "changes.subscribe", {"table": table, "filters": dict(filters or {})}, callback, on_status
        )

    async def subscribe_broadcast(
        self,
        channel: str,
        event: str,
        callback: BroadcastCallback,
        on_status: StatusCallback | None = None,
    ) -> Subscription:
        return await self._open_feed("broadcast.subscribe", {"channel": channel, "event": event}, callback, on_status)

    async def broadcast(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        await self._request("broadcast.send", {"channel": channel, "event": event, "payload": payload})

    def presence_channel(self, name: str, key: str) -> PresenceChannel:
        return RemotePresenceChannel(self, name, key)

    async def rpc(self, name: str, params: Mapping[str, Any]) -> Any:
        return (await self._request("rpc", {"name": name, "params": dict(params)})).get("result")
