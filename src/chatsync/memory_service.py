"""In-process implementation of the real-time service, used by tests, the
simulation CLI and the WebSocket gateway."""

from __future__ import annotations

import copy
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Mapping, Sequence, Tuple

from .hub import Subscription as HubSubscription
from .hub import SubscriptionHub
from .models import USER_PROFILES, Identity
from .service import (
    BroadcastCallback,
    ChangeCallback,
    ChangeEvent,
    ChangeKind,
    ChannelStatus,
    IdentityProvider,
    PresenceCallback,
    PresenceChannel,
    QueryFailed,
    RealtimeService,
    ServiceError,
    StatusCallback,
    Subscription,
    SubscriptionFailed,
    WriteFailed,
    row_matches,
)

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _sort_key(order_by: str) -> Callable[[Dict[str, Any]], Any]:
    def key(row: Dict[str, Any]) -> Any:
        value = row.get(order_by)
        return (value is None, value if value is not None else 0)

    return key


class InMemoryRowStore:
    """Tables of JSON-like rows keyed by ``id``, kept in insertion order."""

    def __init__(self) -> None:
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def select(
        self,
        table: str,
        filters: Mapping[str, Any] | None,
        order_by: str,
        ascending: bool,
        limit: int | None,
    ) -> List[Dict[str, Any]]:
        rows = [row for row in self._tables.get(table, {}).values() if row_matches(row, filters)]
        rows.sort(key=_sort_key(order_by), reverse=not ascending)
        if limit is not None:
            rows = rows[: max(limit, 0)]
        return copy.deepcopy(rows)

    def get(self, table: str, row_id: str) -> Dict[str, Any] | None:
        row = self._tables.get(table, {}).get(row_id)
        return copy.deepcopy(row) if row is not None else None

    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        rows = self._tables.setdefault(table, {})
        if row["id"] in rows:
            raise WriteFailed(f"duplicate id {row['id']} in {table}")
        rows[row["id"]] = copy.deepcopy(row)
        return copy.deepcopy(row)

    def update(self, table: str, row_id: str, changes: Mapping[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        rows = self._tables.get(table, {})
        if row_id not in rows:
            raise WriteFailed(f"no row {row_id} in {table}")
        old = rows[row_id]
        new = {**old, **copy.deepcopy(dict(changes)), "id": row_id}
        rows[row_id] = new
        return copy.deepcopy(old), copy.deepcopy(new)

    def find(self, table: str, key: Mapping[str, Any]) -> Dict[str, Any] | None:
        for row in self._tables.get(table, {}).values():
            if row_matches(row, key):
                return copy.deepcopy(row)
        return None

    def delete(self, table: str, row_id: str) -> Dict[str, Any] | None:
        return self._tables.get(table, {}).pop(row_id, None)

    def close(self) -> None:
        self._tables.clear()


class _FeedSubscription(Subscription):
    def __init__(self, hub: SubscriptionHub, entry: HubSubscription, on_status: StatusCallback | None) -> None:
        self._hub = hub
        self._entry = entry
        self._on_status = on_status
        self.closed = False

    def interrupt(self, status: ChannelStatus) -> None:
        if self.closed:
            return
        self._hub.unsubscribe(self._entry)
        self.closed = True
        if self._on_status is not None:
            self._on_status(status)

    async def close(self) -> None:
        if self.closed:
            return
        self._hub.unsubscribe(self._entry)
        self.closed = True


class _PresenceRoom:
    def __init__(self, name: str) -> None:
        self.name = name
        self.members: List["InMemoryPresenceChannel"] = []
        self.tracked: Dict["InMemoryPresenceChannel", Dict[str, Any]] = {}

    def state(self) -> Dict[str, List[Dict[str, Any]]]:
        state: Dict[str, List[Dict[str, Any]]] = {}
        for channel, payload in self.tracked.items():
            state.setdefault(channel.key, []).append(copy.deepcopy(payload))
        return state

    def track(self, channel: "InMemoryPresenceChannel", payload: Dict[str, Any]) -> None:
        self.tracked[channel] = dict(payload)
        for member in list(self.members):
            member._emit_join(channel.key, [dict(payload)])
        self._sync()

    def leave(self, channel: "InMemoryPresenceChannel") -> None:
        if channel in self.members:
            self.members.remove(channel)
        payload = self.tracked.pop(channel, None)
        if payload is not None:
            for member in list(self.members):
                member._emit_leave(channel.key, [payload])
            self._sync()

    def _sync(self) -> None:
        for member in list(self.members):
            member._emit_sync()


class InMemoryPresenceChannel(PresenceChannel):
    def __init__(self, service: "InMemoryRealtimeService", room: _PresenceRoom, key: str) -> None:
        self._service = service
        self._room = room
        self.key = key
        self._sync_callbacks: List[Callable[[], None]] = []
        self._join_callbacks: List[PresenceCallback] = []
        self._leave_callbacks: List[PresenceCallback] = []
        self.subscribed = False

    def on_sync(self, callback: Callable[[], None]) -> None:
        self._sync_callbacks.append(callback)

    def on_join(self, callback: PresenceCallback) -> None:
        self._join_callbacks.append(callback)

    def on_leave(self, callback: PresenceCallback) -> None:
        self._leave_callbacks.append(callback)

    async def subscribe(self, on_status: StatusCallback | None = None) -> None:
        if self._service.presence_failure:
            if on_status is not None:
                on_status(ChannelStatus.CHANNEL_ERROR)
            raise SubscriptionFailed(f"presence channel {self._room.name} unavailable")
        self.subscribed = True
        self._room.members.append(self)
        if on_status is not None:
            on_status(ChannelStatus.SUBSCRIBED)
        self._emit_sync()

    async def track(self, payload: Dict[str, Any]) -> None:
        if not self.subscribed:
            raise SubscriptionFailed("track requires a subscribed presence channel")
        self._room.track(self, payload)

    def presence_state(self) -> Dict[str, List[Dict[str, Any]]]:
        return self._room.state()

    async def close(self) -> None:
        self.subscribed = False
        self._room.leave(self)

    def _emit_sync(self) -> None:
        for callback in list(self._sync_callbacks):
            callback()

    def _emit_join(self, key: str, presences: List[Dict[str, Any]]) -> None:
        for callback in list(self._join_callbacks):
            callback(key, presences)

    def _emit_leave(self, key: str, presences: List[Dict[str, Any]]) -> None:
        for callback in list(self._leave_callbacks):
            callback(key, presences)


class InMemoryRealtimeService(RealtimeService):
    """Reference service: rows live in a row store, feeds fan out through a hub.

    Failure injection knobs let tests exercise degraded paths:
    ``feed_failure`` answers new change-feed subscriptions with a status
    other than SUBSCRIBED, ``presence_failure`` makes presence channels fail
    to subscribe, ``failing_tables`` rejects reads and writes on the named
    tables, and ``rpc_failure`` rejects RPC calls.
    """

    def __init__(self, store=None, *, now_func=_now_ms, id_factory=None) -> None:
        self.store = store if store is not None else InMemoryRowStore()
        self._now = now_func
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._changes = SubscriptionHub()
        self._broadcasts = SubscriptionHub()
        self._feeds: List[_FeedSubscription] = []
        self._rooms: Dict[str, _PresenceRoom] = {}
        self.feed_failure: ChannelStatus | None = None
        self.presence_failure = False
        self.failing_tables: set[str] = set()
        self.rpc_failure = False
        self.rpc_calls: List[Tuple[str, Dict[str, Any]]] = []

    def _check_table(self, table: str, error: type[ServiceError]) -> None:
        if table in self.failing_tables:
            raise error(f"table {table} unavailable")

    def _stamp(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        now_ms = self._now()
        stamped = dict(row)
        stamped.setdefault("id", self._id_factory())
        stamped.setdefault("created_at_ms", now_ms)
        stamped["updated_at_ms"] = now_ms
        return stamped

    def _publish(self, event: ChangeEvent) -> None:
        self._changes.broadcast(event.table, event, event.record)

    async def select(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        *,
        order_by: str = "created_at_ms",
        ascending: bool = True,
        limit: int | None = None,
    ) -> List[Dict[str, Any]]:
        self._check_table(table, QueryFailed)
        return self.store.select(table, filters, order_by, ascending, limit)

    async def insert(self, table: str, row: Mapping[str, Any]) -> Dict[str, Any]:
        self._check_table(table, WriteFailed)
        stored = self.store.insert(table, self._stamp(row))
        self._publish(ChangeEvent(table=table, kind=ChangeKind.INSERT, new=stored))
        return stored

    async def update(self, table: str, row_id: str, changes: Mapping[str, Any]) -> Dict[str, Any]:
        self._check_table(table, WriteFailed)
        old, new = self.store.update(table, row_id, {**changes, "updated_at_ms": self._now()})
        self._publish(ChangeEvent(table=table, kind=ChangeKind.UPDATE, new=new, old=old))
        return new

    async def upsert(self, table: str, row: Mapping[str, Any], on_conflict: Sequence[str]) -> Dict[str, Any]:
        self._check_table(table, WriteFailed)
        key = {column: row.get(column) for column in on_conflict}
        existing = self.store.find(table, key)
        if existing is None:
            stored = self.store.insert(table, self._stamp(row))
            self._publish(ChangeEvent(table=table, kind=ChangeKind.INSERT, new=stored))
            return stored
        changes = {k: v for k, v in row.items() if k != "id"}
        changes["updated_at_ms"] = self._now()
        old, new = self.store.update(table, existing["id"], changes)
        self._publish(ChangeEvent(table=table, kind=ChangeKind.UPDATE, new=new, old=old))
        return new

    async def delete(self, table: str, row_id: str) -> None:
        self._check_table(table, WriteFailed)
        old = self.store.delete(table, row_id)
        if old is not None:
            self._publish(ChangeEvent(table=table, kind=ChangeKind.DELETE, old=old))

    async def subscribe_changes(
        self,
        table: str,
        filters: Mapping[str, Any] | None,
        callback: ChangeCallback,
        on_status: StatusCallback | None = None,
    ) -> Subscription:
        return self._open_feed(self._changes, table, filters, callback, on_status)

    async def subscribe_broadcast(
        self,
        channel: str,
        event: str,
        callback: BroadcastCallback,
        on_status: StatusCallback | None = None,
    ) -> Subscription:
        return self._open_feed(self._broadcasts, f"{channel}#{event}", None, callback, on_status)

    def _open_feed(self, hub, topic, filters, callback, on_status) -> _FeedSubscription:
        entry = hub.subscribe(topic, callback, filters)
        feed = _FeedSubscription(hub, entry, on_status)
        self._feeds = [f for f in self._feeds if not f.closed]
        self._feeds.append(feed)
        if self.feed_failure is not None:
            feed.interrupt(self.feed_failure)
        elif on_status is not None:
            on_status(ChannelStatus.SUBSCRIBED)
        return feed

    async def broadcast(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        self._broadcasts.broadcast(f"{channel}#{event}", copy.deepcopy(payload))

    def presence_channel(self, name: str, key: str) -> PresenceChannel:
        room = self._rooms.setdefault(name, _PresenceRoom(name))
        return InMemoryPresenceChannel(self, room, key)

    async def rpc(self, name: str, params: Mapping[str, Any]) -> Any:
        if self.rpc_failure:
            raise ServiceError(f"rpc {name} unavailable")
        self.rpc_calls.append((name, dict(params)))
        if name == "update_user_presence":
            user_id = str(params["user_id"])
            status = str(params.get("status") or "online")
            profile = {
                "user_id": user_id,
                "status": status,
                "is_online": status == "online",
                "last_seen_ms": self._now(),
            }
            existing = self.store.find(USER_PROFILES, {"user_id": user_id})
            if existing is None:
                self.store.insert(USER_PROFILES, self._stamp({**profile, "id": user_id}))
            else:
                self.store.update(USER_PROFILES, existing["id"], {**profile, "updated_at_ms": self._now()})
            return None
        raise ServiceError(f"unknown rpc {name}")

    def interrupt_feeds(self, status: ChannelStatus = ChannelStatus.CHANNEL_ERROR) -> int:
        """Drop every live feed, reporting ``status`` to its owner."""

        live = [feed for feed in self._feeds if not feed.closed]
        for feed in live:
            feed.interrupt(status)
        self._feeds = []
        logger.debug("interrupted %d feeds with %s", len(live), status.value)
        return len(live)

    def live_feed_count(self) -> int:
        return sum(1 for feed in self._feeds if not feed.closed)

    def close(self) -> None:
        self.store.close()


class StaticIdentityProvider(IdentityProvider):
    def __init__(self, identity: Identity | None = None) -> None:
        self.identity = identity

    async def current_user(self) -> Identity | None:
        return self.identity
