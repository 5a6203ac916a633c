from __future__ import annotations

import asyncio
import enum
import logging
from typing import Callable, List, Sequence

from .models import UserProfile
from .tasks import cancel_task

logger = logging.getLogger(__name__)


class VisibilityPhase(str, enum.Enum):
    LOADING = "loading"
    RESOLVED = "resolved"
    TIMED_OUT = "timed_out"


def chat_should_be_offered(online_users: Sequence[UserProfile], current_user: UserProfile | None) -> bool:
    """True when someone else is online, or when the online list is empty but
    the local profile is known (presence may simply be lagging)."""

    if current_user is None:
        return False
    if online_users:
        return any(user.user_id != current_user.user_id for user in online_users)
    return True


class VisibilityController:
    """Decides whether the chat entry point is offered, with a timeout fallback."""

    def __init__(self, *, timeout_s: float = 10.0) -> None:
        self.timeout_s = timeout_s
        self.resolved = False
        self.timed_out = False
        self._offered = False
        self._listeners: List[Callable[[bool], None]] = []
        self._timer: asyncio.Task | None = None

    @property
    def phase(self) -> VisibilityPhase:
        if self.timed_out:
            return VisibilityPhase.TIMED_OUT
        if self.resolved:
            return VisibilityPhase.RESOLVED
        return VisibilityPhase.LOADING

    @property
    def visible(self) -> bool:
        return self.timed_out or self._offered

    def add_listener(self, listener: Callable[[bool], None]) -> None:
        self._listeners.append(listener)

    def start(self) -> None:
        if self._timer is None and not self.timed_out:
            self._timer = asyncio.create_task(self._expire())

    async def stop(self) -> None:
        task, self._timer = self._timer, None
        await cancel_task(task)

    def update(
        self,
        online_users: Sequence[UserProfile],
        current_user: UserProfile | None,
        *,
        loading: bool,
    ) -> bool:
        before = self.visible
        self._offered = chat_should_be_offered(online_users, current_user)
        if not loading:
            self.resolved = True
        self._notify(before)
        return self.visible

    async def _expire(self) -> None:
        try:
            await asyncio.sleep(self.timeout_s)
        except asyncio.CancelledError:
            return
        self._timer = None
        before = self.visible
        self.timed_out = True
        if not before:
            logger.info("chat visibility timed out after %.1fs, offering chat", self.timeout_s)
        self._notify(before)

    def _notify(self, before: bool) -> None:
        if self.visible == before:
            return
        for listener in list(self._listeners):
            listener(self.visible)
