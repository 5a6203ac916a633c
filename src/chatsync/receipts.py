from __future__ import annotations

import asyncio
import time
from typing import Iterable, List, Set, Tuple

from .models import READ_RECEIPTS, Message
from .service import RealtimeService
from .tasks import ErrorSink, spawn_detached

RECEIPT_CONFLICT_KEY = ("message_id", "user_id")


def _now_ms() -> int:
    return int(time.time() * 1000)


class ReadReceiptReporter:
    """Write-only side channel recording which inbound messages the reader has seen."""

    def __init__(
        self,
        service: RealtimeService,
        reader_id: str,
        *,
        now_func=_now_ms,
        on_error: ErrorSink | None = None,
    ) -> None:
        self._service = service
        self.reader_id = reader_id
        self._now = now_func
        self._on_error = on_error
        self._reported: Set[Tuple[str, str]] = set()
        self._pending: Set[Tuple[str, str]] = set()

    async def write(self, message_id: str, scope_kind: str) -> None:
        await self._service.upsert(
            READ_RECEIPTS,
            {
                "message_id": message_id,
                "message_type": scope_kind,
                "user_id": self.reader_id,
                "read_at_ms": self._now(),
            },
            RECEIPT_CONFLICT_KEY,
        )

    def mark_read(self, message_id: str, scope_kind: str) -> asyncio.Task:
        key = (message_id, scope_kind)
        self._pending.add(key)
        task = spawn_detached(f"read receipt {message_id}", self.write(message_id, scope_kind), on_error=self._on_error)
        task.add_done_callback(lambda done: self._settle(key, done))
        return task

    def _settle(self, key: Tuple[str, str], task: asyncio.Task) -> None:
        self._pending.discard(key)
        # failed writes stay unreported so the next pass retries them
        if not task.cancelled() and task.result().ok:
            self._reported.add(key)

    def report_unread(self, messages: Iterable[Message], scope_kind: str) -> List[asyncio.Task]:
        """Mark every inbound message not reported yet; returns the spawned writes."""

        tasks: List[asyncio.Task] = []
        for message in messages:
            if message.sender_id == self.reader_id:
                continue
            key = (message.id, scope_kind)
            if key in self._reported or key in self._pending:
                continue
            tasks.append(self.mark_read(message.id, scope_kind))
        return tasks
