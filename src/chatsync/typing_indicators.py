from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Sequence

from .models import TYPING_INDICATORS, Scope, TypingIndicator, UserProfile
from .service import ChangeEvent, ChangeKind, RealtimeService, row_matches
from .tasks import cancel_task, spawn_detached

logger = logging.getLogger(__name__)

TYPING_CONFLICT_KEY = ("conversation_id", "group_id", "user_id")


def typing_filters(scope: Scope) -> Dict[str, str | None]:
    """Typing rows of every scope share one table, so both ids are matched."""

    return {"conversation_id": scope.conversation_id, "group_id": scope.group_id}


def _now_ms() -> int:
    return int(time.time() * 1000)


def apply_typing_event(typing_users: Sequence[TypingIndicator], indicator: TypingIndicator) -> List[TypingIndicator]:
    """Most recent write per user wins; ``is_typing=False`` removes the user."""

    if not indicator.is_typing:
        return [existing for existing in typing_users if existing.user_id != indicator.user_id]
    updated = list(typing_users)
    for index, existing in enumerate(updated):
        if existing.user_id == indicator.user_id:
            updated[index] = indicator
            return updated
    updated.append(indicator)
    return updated


def sweep_stale(typing_users: Sequence[TypingIndicator], now_ms: int, stale_after_ms: int) -> List[TypingIndicator]:
    cutoff = now_ms - stale_after_ms
    return [indicator for indicator in typing_users if indicator.last_typed_ms > cutoff]


class TypingAggregator:
    """Tracks who is typing in one scope and expires entries that go quiet."""

    def __init__(
        self,
        service: RealtimeService,
        scope: Scope,
        *,
        on_change: Callable[[List[TypingIndicator]], None] | None = None,
        stale_after_s: float = 10.0,
        sweep_interval_s: float = 5.0,
        now_func=_now_ms,
    ) -> None:
        self._service = service
        self.scope = scope
        self._on_change = on_change
        self.stale_after_ms = int(stale_after_s * 1000)
        self.sweep_interval_s = sweep_interval_s
        self._now = now_func
        self.typing_users: List[TypingIndicator] = []
        self._sweeper_task: asyncio.Task | None = None

    def _replace(self, typing_users: List[TypingIndicator]) -> None:
        if typing_users == self.typing_users:
            return
        self.typing_users = typing_users
        if self._on_change is not None:
            self._on_change(list(typing_users))

    def apply(self, event: ChangeEvent) -> None:
        if event.kind is ChangeKind.DELETE:
            user_id = event.old.get("user_id")
            self._replace([t for t in self.typing_users if t.user_id != user_id])
            return
        if not row_matches(event.new, typing_filters(self.scope)):
            return
        self._replace(apply_typing_event(self.typing_users, TypingIndicator.from_row(event.new)))

    def sweep(self) -> None:
        self._replace(sweep_stale(self.typing_users, self._now(), self.stale_after_ms))

    async def set_typing(self, user: UserProfile, is_typing: bool) -> None:
        row = {
            "conversation_id": self.scope.conversation_id,
            "group_id": self.scope.group_id,
            "user_id": user.user_id,
            "user_name": user.display_name or "Unknown User",
            "is_typing": is_typing,
            "last_typed_ms": self._now(),
        }
        await self._service.upsert(TYPING_INDICATORS, row, TYPING_CONFLICT_KEY)

    def start_sweeper(self) -> None:
        if self._sweeper_task is None:
            self._sweeper_task = asyncio.create_task(self._sweep_loop())

    async def stop_sweeper(self) -> None:
        task, self._sweeper_task = self._sweeper_task, None
        await cancel_task(task)

    async def _sweep_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.sweep_interval_s)
                self.sweep()
        except asyncio.CancelledError:
            return


class TypingDebouncer:
    """Composer-side helper: reports typing on input and stops after an idle period."""

    def __init__(self, send: Callable[[bool], Awaitable[object]], *, idle_s: float = 2.0) -> None:
        self._send = send
        self.idle_s = idle_s
        self.is_typing = False
        self._idle_task: asyncio.Task | None = None

    def text_changed(self, text: str) -> None:
        if text.strip():
            if not self.is_typing:
                self.is_typing = True
                spawn_detached("typing start", self._send(True))
            self._restart_idle_timer()
        elif self.is_typing:
            self._stop()

    def message_sent(self) -> None:
        self._stop(force=True)

    def _stop(self, *, force: bool = False) -> None:
        if self._idle_task is not None:
            self._idle_task.cancel()
            self._idle_task = None
        if self.is_typing or force:
            self.is_typing = False
            spawn_detached("typing stop", self._send(False))

    def _restart_idle_timer(self) -> None:
        if self._idle_task is not None:
            self._idle_task.cancel()
        self._idle_task = asyncio.create_task(self._expire())

    async def _expire(self) -> None:
        try:
            await asyncio.sleep(self.idle_s)
        except asyncio.CancelledError:
            return
        self._idle_task = None
        if self.is_typing:
            self.is_typing = False
            spawn_detached("typing stop", self._send(False))

    async def close(self) -> None:
        task, self._idle_task = self._idle_task, None
        await cancel_task(task)
