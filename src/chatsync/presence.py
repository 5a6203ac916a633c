"""Process-wide presence tracking on a shared presence channel.

Presence is best-effort: every failure here is logged and swallowed so chat
keeps working without it. Online users are always rebuilt from the latest
``sync`` snapshot; ``join`` and ``leave`` only feed the debug log.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Sequence

from .models import Identity, UserProfile
from .service import ChannelStatus, PresenceChannel, RealtimeService
from .tasks import cancel_task

logger = logging.getLogger(__name__)

PRESENCE_RPC = "update_user_presence"

Listener = Callable[[List[UserProfile]], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


def profile_from_presence(payload: Mapping[str, Any], now_ms: int) -> UserProfile:
    user_id = str(payload.get("user_id") or "")
    status = str(payload.get("status") or "online")
    return UserProfile(
        id=user_id,
        user_id=user_id,
        display_name=str(payload.get("display_name") or "") or None,
        avatar_url=str(payload["avatar_url"]) if payload.get("avatar_url") else None,
        status=status,
        is_online=True,
        last_seen_ms=now_ms,
        created_at_ms=now_ms,
        updated_at_ms=now_ms,
    )


def apply_sync(
    old: Sequence[UserProfile], snapshot: Mapping[str, Sequence[Mapping[str, Any]]], now_ms: int
) -> List[UserProfile]:
    """Replace the online set with ``snapshot``; the last payload per key wins.

    ``old`` is accepted for symmetry with the other reducers and never merged.
    """

    online: List[UserProfile] = []
    for key, presences in snapshot.items():
        if not presences:
            continue
        payload = dict(presences[-1])
        payload.setdefault("user_id", key)
        online.append(profile_from_presence(payload, now_ms))
    return online


class PresenceTracker:
    """Shared by every open chat scope; joined once, left when the last scope releases it."""

    def __init__(
        self,
        service: RealtimeService,
        *,
        channel_name: str = "user-presence",
        now_func=_now_ms,
    ) -> None:
        self._service = service
        self.channel_name = channel_name
        self._now = now_func
        self.online_users: List[UserProfile] = []
        self.identity: Identity | None = None
        self.synced = False
        self.failed = False
        self._channel: PresenceChannel | None = None
        self._listeners: List[Listener] = []
        self._refs = 0
        self._start_task: asyncio.Task | None = None

    @property
    def resolved(self) -> bool:
        return self.synced or self.failed

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def acquire(self, identity: Identity) -> None:
        """Register one more user of the tracker, starting it in the background if needed."""

        self._refs += 1
        if self._start_task is None:
            self._start_task = asyncio.create_task(self.start(identity))
        elif self.identity is not None and self.identity.id != identity.id:
            logger.warning("presence already tracked for %s, ignoring %s", self.identity.id, identity.id)

    async def release(self) -> None:
        if self._refs == 0:
            return
        self._refs -= 1
        if self._refs == 0:
            await self.stop()

    async def start(self, identity: Identity) -> None:
        self.identity = identity
        try:
            await self._service.rpc(PRESENCE_RPC, {"user_id": identity.id, "status": "online"})
        except Exception as exc:
            logger.warning("could not mark %s online: %s", identity.id, exc)

        try:
            channel = self._service.presence_channel(self.channel_name, identity.id)
            self._channel = channel
            channel.on_sync(self._handle_sync)
            channel.on_join(self._handle_join)
            channel.on_leave(self._handle_leave)

            statuses: List[ChannelStatus] = []
            await channel.subscribe(statuses.append)
            if ChannelStatus.SUBSCRIBED not in statuses:
                self.failed = True
                logger.warning("presence channel %s not subscribed: %s", self.channel_name, statuses)
                return
            await channel.track(
                {
                    "user_id": identity.id,
                    "display_name": identity.display_name,
                    "avatar_url": identity.avatar_url,
                    "status": "online",
                }
            )
            logger.info("tracking presence for %s on %s", identity.id, self.channel_name)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.failed = True
            logger.warning("presence unavailable for %s: %s", identity.id, exc)

    async def stop(self) -> None:
        task, self._start_task = self._start_task, None
        await cancel_task(task)
        channel, self._channel = self._channel, None
        if channel is not None:
            try:
                await channel.close()
            except Exception as exc:
                logger.warning("leaving presence channel failed: %s", exc)
        self.online_users = []
        self.synced = False
        self.failed = False
        self.identity = None

    def _handle_sync(self) -> None:
        channel = self._channel
        if channel is None:
            return
        self.online_users = apply_sync(self.online_users, channel.presence_state(), self._now())
        self.synced = True
        for listener in list(self._listeners):
            listener(list(self.online_users))

    def _handle_join(self, key: str, presences: List[Dict[str, Any]]) -> None:
        logger.debug("presence join %s: %s", key, presences)

    def _handle_leave(self, key: str, presences: List[Dict[str, Any]]) -> None:
        logger.debug("presence leave %s: %s", key, presences)
