from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Tuple

from .models import Attachment, Scope

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class QueuedMessage:
    id: str
    scope: Scope
    text: str
    message_type: str = "text"
    reply_to_id: str | None = None
    attachments: Tuple[Attachment, ...] = ()
    queued_at_ms: int = 0
    retry_count: int = 0


Sender = Callable[[QueuedMessage], Awaitable[object]]


class Outbox:
    """Per-scope queue of messages that could not be sent, retried on reconnect."""

    def __init__(self, *, max_retries: int = 3, now_func=_now_ms) -> None:
        self.max_retries = max_retries
        self._now = now_func
        self._ids = itertools.count(1)
        self._queues: Dict[Scope, List[QueuedMessage]] = {}

    def enqueue(
        self,
        scope: Scope,
        text: str,
        *,
        message_type: str = "text",
        reply_to_id: str | None = None,
        attachments=(),
    ) -> QueuedMessage:
        queued = QueuedMessage(
            id=f"q{next(self._ids)}",
            scope=scope,
            text=text,
            message_type=message_type,
            reply_to_id=reply_to_id,
            attachments=tuple(attachments),
            queued_at_ms=self._now(),
        )
        self._queues.setdefault(scope, []).append(queued)
        logger.info("queued message %s for %s", queued.id, scope.channel_name)
        return queued

    def pending(self, scope: Scope | None = None) -> List[QueuedMessage]:
        if scope is not None:
            return list(self._queues.get(scope, []))
        return [queued for queue in self._queues.values() for queued in queue]

    async def flush(self, scope: Scope, send: Sender) -> Tuple[int, int]:
        """Send queued messages for ``scope`` in order.

        Returns ``(sent, dropped)``. A message that keeps failing is dropped
        once its retry count exceeds ``max_retries``; the remaining queue is
        kept for the next flush after the first failure.
        """

        queue = self._queues.get(scope, [])
        sent = dropped = 0
        while queue:
            queued = queue[0]
            try:
                await send(queued)
            except Exception as exc:
                queued.retry_count += 1
                if queued.retry_count > self.max_retries:
                    queue.pop(0)
                    dropped += 1
                    logger.warning("dropping queued message %s after %d retries: %s", queued.id, self.max_retries, exc)
                    continue
                logger.info("queued message %s still failing (%d): %s", queued.id, queued.retry_count, exc)
                break
            queue.pop(0)
            sent += 1
        if not queue:
            self._queues.pop(scope, None)
        return sent, dropped
