"""Contracts of the hosted real-time data and presence service."""

from __future__ import annotations

import abc
import enum
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Sequence

from .models import Identity


class ServiceError(Exception):
    """Base class for failures reported by the real-time service."""


class NotAuthenticated(ServiceError):
    pass


class SubscriptionFailed(ServiceError):
    pass


class WriteFailed(ServiceError):
    pass


class QueryFailed(ServiceError):
    pass


class ChannelStatus(str, enum.Enum):
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


class ChangeKind(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    """One row change pushed by a change-feed."""

    table: str
    kind: ChangeKind
    new: Dict[str, Any] = field(default_factory=dict)
    old: Dict[str, Any] = field(default_factory=dict)

    @property
    def record(self) -> Dict[str, Any]:
        """The row the event is about: ``old`` for deletes, ``new`` otherwise."""

        return self.old if self.kind is ChangeKind.DELETE else self.new

    def to_frame_body(self) -> Dict[str, Any]:
        return {"table": self.table, "kind": self.kind.value, "new": self.new, "old": self.old}

    @classmethod
    def from_frame_body(cls, body: Mapping[str, Any]) -> "ChangeEvent":
        return cls(
            table=str(body["table"]),
            kind=ChangeKind(body["kind"]),
            new=dict(body.get("new") or {}),
            old=dict(body.get("old") or {}),
        )


StatusCallback = Callable[[ChannelStatus], None]
ChangeCallback = Callable[[ChangeEvent], None]
BroadcastCallback = Callable[[Dict[str, Any]], None]
PresenceCallback = Callable[[str, List[Dict[str, Any]]], None]


def row_matches(row: Mapping[str, Any], filters: Mapping[str, Any] | None) -> bool:
    if not filters:
        return True
    return all(row.get(key) == value for key, value in filters.items())


class Subscription(abc.ABC):
    """Handle to a live feed; closing it stops delivery."""

    @abc.abstractmethod
    async def close(self) -> None:
        ...


class PresenceChannel(abc.ABC):
    """A pub/sub topic whose members share a presence map keyed by member key."""

    @abc.abstractmethod
    def on_sync(self, callback: Callable[[], None]) -> None:
        ...

    @abc.abstractmethod
    def on_join(self, callback: PresenceCallback) -> None:
        ...

    @abc.abstractmethod
    def on_leave(self, callback: PresenceCallback) -> None:
        ...

    @abc.abstractmethod
    async def subscribe(self, on_status: StatusCallback | None = None) -> None:
        ...

    @abc.abstractmethod
    async def track(self, payload: Dict[str, Any]) -> None:
        ...

    @abc.abstractmethod
    def presence_state(self) -> Dict[str, List[Dict[str, Any]]]:
        ...

    @abc.abstractmethod
    async def close(self) -> None:
        ...


class RealtimeService(abc.ABC):
    """Row store with change-feeds, broadcast, presence and RPC."""

    @abc.abstractmethod
    async def select(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        *,
        order_by: str = "created_at_ms",
        ascending: bool = True,
        limit: int | None = None,
    ) -> List[Dict[str, Any]]:
        ...

    @abc.abstractmethod
    async def insert(self, table: str, row: Mapping[str, Any]) -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    async def update(self, table: str, row_id: str, changes: Mapping[str, Any]) -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    async def upsert(
        self, table: str, row: Mapping[str, Any], on_conflict: Sequence[str]
    ) -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    async def delete(self, table: str, row_id: str) -> None:
        ...

    @abc.abstractmethod
    async def subscribe_changes(
        self,
        table: str,
        filters: Mapping[str, Any] | None,
        callback: ChangeCallback,
        on_status: StatusCallback | None = None,
    ) -> Subscription:
        ...

    @abc.abstractmethod
    async def subscribe_broadcast(
        self,
        channel: str,
        event: str,
        callback: BroadcastCallback,
        on_status: StatusCallback | None = None,
    ) -> Subscription:
        ...

    @abc.abstractmethod
    async def broadcast(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        ...

    @abc.abstractmethod
    def presence_channel(self, name: str, key: str) -> PresenceChannel:
        ...

    @abc.abstractmethod
    async def rpc(self, name: str, params: Mapping[str, Any]) -> Any:
        ...


class IdentityProvider(abc.ABC):
    @abc.abstractmethod
    async def current_user(self) -> Identity | None:
        ...
