from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Set


logger = logging.getLogger(__name__)


@dataclass
class WriteResult:
    """Outcome of a fire-and-forget write. Callers may ignore it."""

    ok: bool
    error: str | None = None


ErrorSink = Callable[[str, BaseException], None]

_detached: Set[asyncio.Task] = set()


async def _guard(label: str, awaitable: Awaitable[object], on_error: ErrorSink | None) -> WriteResult:
    try:
        await awaitable
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.warning("%s failed: %s", label, exc)
        if on_error is not None:
            on_error(label, exc)
        return WriteResult(ok=False, error=str(exc))
    return WriteResult(ok=True)


def spawn_detached(
    label: str, awaitable: Awaitable[object], *, on_error: ErrorSink | None = None
) -> asyncio.Task:
    """Run ``awaitable`` in the background; failures are logged, never raised."""

    task = asyncio.create_task(_guard(label, awaitable, on_error))
    _detached.add(task)
    task.add_done_callback(_detached.discard)
    return task


async def cancel_task(task: asyncio.Task | None) -> None:
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
