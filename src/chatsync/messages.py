"""Folding of message change-feed events into an ordered message list."""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Mapping, Sequence

from .models import MESSAGE_TYPES, Attachment, Message, Scope, UserProfile
from .service import ChangeEvent, ChangeKind, RealtimeService

logger = logging.getLogger(__name__)

NEW_MESSAGE_EVENT = "new_message"


def apply_insert(messages: Sequence[Message], message: Message) -> List[Message]:
    """Append ``message`` unless a message with the same id is already present."""

    if any(existing.id == message.id for existing in messages):
        return list(messages)
    return [*messages, message]


def apply_update(messages: Sequence[Message], changes: Mapping[str, Any]) -> List[Message]:
    """Shallow-merge ``changes`` into the message whose id matches ``changes["id"]``."""

    message_id = changes.get("id")
    updated: List[Message] = []
    for existing in messages:
        if existing.id == message_id:
            existing = Message.from_row({**existing.to_row(), **changes})
        updated.append(existing)
    return updated


def apply_delete(messages: Sequence[Message], message_id: str) -> List[Message]:
    return [existing for existing in messages if existing.id != message_id]


def apply_change(messages: Sequence[Message], event: ChangeEvent) -> List[Message]:
    if event.kind is ChangeKind.INSERT:
        return apply_insert(messages, Message.from_row(event.new))
    if event.kind is ChangeKind.UPDATE:
        return apply_update(messages, event.new)
    if event.kind is ChangeKind.DELETE:
        return apply_delete(messages, str(event.old.get("id")))
    raise ValueError(f"unsupported change kind: {event.kind}")


def receiver_for(conversation_id: str, sender_id: str) -> str | None:
    """Direct conversation ids join both participants with ``_``."""

    for participant in conversation_id.split("_"):
        if participant and participant != sender_id:
            return participant
    return None


class MessageStream:
    """Reads history for a scope and writes outbound messages."""

    def __init__(
        self,
        service: RealtimeService,
        *,
        history_limit: int | None = 50,
        scoped_history_limit: int | None = None,
    ) -> None:
        self._service = service
        self.history_limit = history_limit
        self.scoped_history_limit = scoped_history_limit

    def _limit_for(self, scope: Scope) -> int | None:
        if scope.kind == "global":
            return self.history_limit
        return self.scoped_history_limit

    async def load_history(self, scope: Scope) -> List[Message]:
        """Return the newest non-deleted messages of ``scope`` in chronological order."""

        rows = await self._service.select(
            scope.message_table,
            {**scope.filters(), "is_deleted": False},
            order_by="created_at_ms",
            ascending=False,
            limit=self._limit_for(scope),
        )
        rows.reverse()
        history: List[Message] = []
        for row in rows:
            try:
                history = apply_insert(history, Message.from_row(row))
            except ValueError as exc:
                logger.warning("skipping malformed message row in %s: %s", scope.message_table, exc)
        return history

    async def send(
        self,
        scope: Scope,
        sender: UserProfile,
        text: str,
        *,
        message_type: str = "text",
        reply_to_id: str | None = None,
        attachments: Iterable[Attachment] = (),
    ) -> Message:
        if not text.strip():
            raise ValueError("message text must not be empty")
        if message_type not in MESSAGE_TYPES:
            raise ValueError(f"unsupported message type: {message_type}")

        row: dict[str, Any] = {
            **scope.filters(),
            "sender_id": sender.user_id,
            "sender_name": sender.display_name or "Unknown User",
            "message_text": text,
            "message_type": message_type,
            "reply_to_id": reply_to_id,
            "attachments": [attachment.to_row() for attachment in attachments],
            "metadata": {},
            "message_status": "sent",
            "is_edited": False,
            "is_deleted": False,
            "is_forwarded": False,
            "is_pinned": False,
        }
        if scope.conversation_id:
            row["receiver_id"] = receiver_for(scope.conversation_id, sender.user_id)

        stored = await self._service.insert(scope.message_table, row)
        try:
            await self._service.broadcast(scope.channel_name, NEW_MESSAGE_EVENT, {"message": stored})
        except Exception as exc:
            logger.warning("broadcast of message %s on %s failed: %s", stored.get("id"), scope.channel_name, exc)
        return Message.from_row(stored)
