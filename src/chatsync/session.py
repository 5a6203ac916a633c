"""Connection lifecycle for one chat surface.

``ChatSessionManager`` owns at most one live session. Each session has an
id; every feed callback captures that id and is dropped once the id is no
longer the active one, so events for a closed scope never reach the state of
the next scope.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List

from .config import ChatConfig
from .messages import NEW_MESSAGE_EVENT, MessageStream, apply_change, apply_insert
from .models import (
    CONVERSATIONS,
    GROUPS,
    TYPING_INDICATORS,
    USER_PROFILES,
    Attachment,
    ChatState,
    ConnectionState,
    ConversationSummary,
    GroupSummary,
    Identity,
    Message,
    Scope,
    TypingIndicator,
    UserProfile,
)
from .outbox import Outbox, QueuedMessage
from .presence import PresenceTracker
from .receipts import ReadReceiptReporter
from .service import (
    ChangeEvent,
    ChannelStatus,
    IdentityProvider,
    RealtimeService,
    Subscription,
)
from .tasks import cancel_task, spawn_detached
from .typing_indicators import TypingAggregator, TypingDebouncer, typing_filters
from .visibility import VisibilityController

logger = logging.getLogger(__name__)

FEEDS = ("messages", "broadcast", "typing")

STATUS_ERRORS = {
    ChannelStatus.CHANNEL_ERROR: "Connection error - attempting to reconnect...",
    ChannelStatus.TIMED_OUT: "Connection timeout - please check your internet connection",
    ChannelStatus.CLOSED: "Connection closed",
}
LOAD_ERROR = "Failed to load messages"
SEND_ERROR = "Failed to send message"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(eq=False)
class _Session:
    id: int
    scope: Scope
    state: ChatState
    identity: Identity | None = None
    feeds: Dict[str, Subscription] = field(default_factory=dict)
    feed_status: Dict[str, ChannelStatus] = field(default_factory=dict)
    typing: TypingAggregator | None = None
    receipts: ReadReceiptReporter | None = None
    reconnect_task: asyncio.Task | None = None
    remove_presence_listener: Callable[[], None] | None = None
    presence_acquired: bool = False


class ChatSessionManager:
    """Opens, tracks and tears down the feeds behind one chat surface."""

    def __init__(
        self,
        service: RealtimeService,
        identity: IdentityProvider,
        *,
        config: ChatConfig | None = None,
        presence: PresenceTracker | None = None,
        outbox: Outbox | None = None,
        now_func=_now_ms,
    ) -> None:
        self.config = config or ChatConfig()
        self._service = service
        self._identity = identity
        self._now = now_func
        self.presence = presence or PresenceTracker(
            service, channel_name=self.config.presence_channel, now_func=now_func
        )
        self.outbox = outbox or Outbox(max_retries=self.config.outbox_max_retries, now_func=now_func)
        self.messages = MessageStream(
            service,
            history_limit=self.config.history_limit,
            scoped_history_limit=self.config.scoped_history_limit or None,
        )
        self.visibility = VisibilityController(timeout_s=self.config.visibility_timeout_s)
        self._sessions: Dict[int, _Session] = {}
        self._active_id: int | None = None
        self._ids = itertools.count(1)
        self._listeners: List[Callable[[ChatState], None]] = []
        self._idle_state = ChatState(connection_state=ConnectionState.IDLE)

    # -- read side -----------------------------------------------------

    @property
    def state(self) -> ChatState:
        session = self._active()
        return session.state if session is not None else self._idle_state

    @property
    def chat_available(self) -> bool:
        return self.visibility.visible

    def add_listener(self, listener: Callable[[ChatState], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _active(self) -> _Session | None:
        if self._active_id is None:
            return None
        return self._sessions.get(self._active_id)

    def _live(self, session_id: int) -> _Session | None:
        if session_id != self._active_id:
            return None
        return self._sessions.get(session_id)

    def _changed(self, session: _Session) -> None:
        if session.id != self._active_id:
            return
        state = session.state
        self.visibility.update(state.online_users, state.current_user, loading=state.is_loading)
        for listener in list(self._listeners):
            listener(state)

    def _transition(self, session: _Session, new_state: ConnectionState, error: str | None = None) -> None:
        old_state = session.state.connection_state
        session.state.connection_state = new_state
        if new_state in (ConnectionState.CONNECTED, ConnectionState.DEGRADED) or error is not None:
            session.state.error = error
        if old_state is not new_state:
            logger.info("chat %s: %s -> %s", session.scope.channel_name, old_state.value, new_state.value)

    # -- lifecycle -----------------------------------------------------

    async def open(self, scope: Scope) -> ChatState:
        """Close any live session, then connect ``scope`` and load its history."""

        await self.close()
        session = _Session(
            id=next(self._ids),
            scope=scope,
            state=ChatState(scope=scope, is_loading=True),
        )
        self._sessions[session.id] = session
        self._active_id = session.id
        self._transition(session, ConnectionState.CONNECTING)
        self.visibility = VisibilityController(timeout_s=self.config.visibility_timeout_s)
        self.visibility.start()
        self._changed(session)
        await self._setup(session)
        return session.state

    async def close(self) -> None:
        """Tear down the live session. Safe to call repeatedly."""

        session_id, self._active_id = self._active_id, None
        await self.visibility.stop()
        if session_id is None:
            return
        session = self._sessions.pop(session_id, None)
        if session is not None:
            await self._teardown(session)

    async def _setup(self, session: _Session) -> None:
        sid = session.id
        try:
            identity = await self._identity.current_user()
        except Exception as exc:
            logger.exception("resolving the current user failed")
            self._fail_setup(session, exc)
            return
        if self._live(sid) is None:
            return
        if identity is None:
            logger.info("no authenticated user, chat %s stays closed", session.scope.channel_name)
            session.state.is_loading = False
            self._transition(session, ConnectionState.CLOSED)
            self._changed(session)
            return

        session.identity = identity
        self.presence.acquire(identity)
        session.presence_acquired = True
        session.remove_presence_listener = self.presence.add_listener(
            lambda users, sid=sid: self._on_presence(sid, users)
        )
        if self.presence.synced:
            session.state.online_users = list(self.presence.online_users)
        session.typing = TypingAggregator(
            self._service,
            session.scope,
            on_change=lambda users, sid=sid: self._on_typing(sid, users),
            stale_after_s=self.config.typing_stale_after_s,
            sweep_interval_s=self.config.typing_sweep_interval_s,
            now_func=self._now,
        )
        session.receipts = ReadReceiptReporter(self._service, identity.id, now_func=self._now)

        try:
            await self._subscribe_feeds(session)
        except Exception as exc:
            if self._live(sid) is None:
                await self._teardown(session)
                return
            logger.warning("subscribing %s failed: %s", session.scope.channel_name, exc)
            self._transition(session, ConnectionState.DEGRADED, f"Failed to connect to chat: {exc}")
            self._schedule_reconnect(session)
        if self._live(sid) is None:
            await self._teardown(session)
            return

        await self._load_history(session, initial=True)
        if self._live(sid) is None:
            await self._teardown(session)
            return
        await self._load_profile(session)
        if self._live(sid) is None:
            await self._teardown(session)
            return

        session.typing.start_sweeper()
        session.state.is_loading = False
        self._changed(session)
        self._report_unread(session)
        if session.state.is_connected:
            await self._flush_outbox(session)

    def _fail_setup(self, session: _Session, exc: BaseException) -> None:
        if self._live(session.id) is None:
            return
        session.state.is_loading = False
        self._transition(session, ConnectionState.DEGRADED, f"Failed to connect to chat: {exc}")
        self._changed(session)

    async def _subscribe_feeds(self, session: _Session) -> None:
        sid = session.id
        scope = session.scope
        session.feed_status.clear()
        session.feeds["messages"] = await self._service.subscribe_changes(
            scope.message_table,
            scope.filters(),
            lambda event, sid=sid: self._on_message_change(sid, event),
            lambda status, sid=sid: self._on_feed_status(sid, "messages", status),
        )
        session.feeds["broadcast"] = await self._service.subscribe_broadcast(
            scope.channel_name,
            NEW_MESSAGE_EVENT,
            lambda payload, sid=sid: self._on_broadcast(sid, payload),
            lambda status, sid=sid: self._on_feed_status(sid, "broadcast", status),
        )
        session.feeds["typing"] = await self._service.subscribe_changes(
            TYPING_INDICATORS,
            typing_filters(scope),
            lambda event, sid=sid: self._on_typing_change(sid, event),
            lambda status, sid=sid: self._on_feed_status(sid, "typing", status),
        )

    async def _close_feeds(self, session: _Session) -> None:
        while session.feeds:
            name, feed = session.feeds.popitem()
            try:
                await feed.close()
            except Exception as exc:
                logger.warning("closing %s feed for %s failed: %s", name, session.scope.channel_name, exc)

    async def _teardown(self, session: _Session) -> None:
        task, session.reconnect_task = session.reconnect_task, None
        if task is not asyncio.current_task():
            await cancel_task(task)
        if session.typing is not None:
            await session.typing.stop_sweeper()
        await self._close_feeds(session)
        if session.remove_presence_listener is not None:
            session.remove_presence_listener()
            session.remove_presence_listener = None
        if session.presence_acquired:
            session.presence_acquired = False
            await self.presence.release()
        session.state.is_loading = False
        self._transition(session, ConnectionState.CLOSED)

    # -- reconnect -----------------------------------------------------

    def _schedule_reconnect(self, session: _Session) -> None:
        if session.reconnect_task is not None and not session.reconnect_task.done():
            return
        session.reconnect_task = asyncio.create_task(self._reconnect(session.id))

    async def _reconnect(self, sid: int) -> None:
        policy = self.config.reconnect
        for attempt in itertools.count(1):
            if not policy.allows(attempt):
                logger.warning("giving up reconnecting after %d attempts", attempt - 1)
                return
            await asyncio.sleep(policy.delay_for(attempt))
            session = self._live(sid)
            if session is None:
                return
            logger.info("reconnecting %s (attempt %d)", session.scope.channel_name, attempt)
            await self._close_feeds(session)
            try:
                await self._subscribe_feeds(session)
            except Exception as exc:
                logger.warning("reconnect attempt %d for %s failed: %s", attempt, session.scope.channel_name, exc)
                continue
            if self._live(sid) is None:
                return
            if self._all_feeds_subscribed(session):
                if self.config.refresh_on_reconnect:
                    await self._load_history(session)
                    self._report_unread(session)
                await self._flush_outbox(session)
                return

    def _all_feeds_subscribed(self, session: _Session) -> bool:
        return all(session.feed_status.get(name) is ChannelStatus.SUBSCRIBED for name in FEEDS)

    # -- feed handlers -------------------------------------------------

    def _on_feed_status(self, sid: int, feed: str, status: ChannelStatus) -> None:
        session = self._live(sid)
        if session is None:
            return
        session.feed_status[feed] = status
        if status is ChannelStatus.SUBSCRIBED:
            if self._all_feeds_subscribed(session):
                self._transition(session, ConnectionState.CONNECTED)
                self._changed(session)
            return
        logger.warning("%s feed for %s reported %s", feed, session.scope.channel_name, status.value)
        self._transition(session, ConnectionState.DEGRADED, STATUS_ERRORS[status])
        self._changed(session)
        self._schedule_reconnect(session)

    def _on_message_change(self, sid: int, event: ChangeEvent) -> None:
        session = self._live(sid)
        if session is None:
            logger.debug("dropping %s event for closed session %d", event.kind.value, sid)
            return
        try:
            session.state.messages = apply_change(session.state.messages, event)
        except (KeyError, ValueError) as exc:
            logger.warning("ignoring malformed %s event on %s: %s", event.kind.value, event.table, exc)
            return
        self._changed(session)
        self._report_unread(session)

    def _on_broadcast(self, sid: int, payload: Dict[str, Any]) -> None:
        session = self._live(sid)
        if session is None:
            return
        row = payload.get("message")
        if not isinstance(row, dict) or not session.scope.matches(row):
            return
        try:
            message = Message.from_row(row)
        except (KeyError, ValueError) as exc:
            logger.warning("ignoring malformed broadcast on %s: %s", session.scope.channel_name, exc)
            return
        messages = apply_insert(session.state.messages, message)
        if len(messages) != len(session.state.messages):
            session.state.messages = messages
            self._changed(session)
            self._report_unread(session)

    def _on_typing_change(self, sid: int, event: ChangeEvent) -> None:
        session = self._live(sid)
        if session is None or session.typing is None:
            return
        try:
            session.typing.apply(event)
        except (KeyError, ValueError) as exc:
            logger.warning("ignoring malformed typing event: %s", exc)

    def _on_typing(self, sid: int, typing_users: List[TypingIndicator]) -> None:
        session = self._live(sid)
        if session is None:
            return
        session.state.typing_users = typing_users
        self._changed(session)

    def _on_presence(self, sid: int, online_users: List[UserProfile]) -> None:
        session = self._live(sid)
        if session is None:
            return
        session.state.online_users = online_users
        self._changed(session)

    # -- loads ---------------------------------------------------------

    async def _load_history(self, session: _Session, *, initial: bool = False) -> None:
        """Replace the message list with a fresh history snapshot.

        Messages that arrived on the feed while the snapshot was loading are
        kept after it. A failed reload keeps the current list and only sets
        ``error``; ``load_error`` is reserved for a failed first load.
        """

        sid = session.id
        known_ids = {message.id for message in session.state.messages}
        try:
            history = await self.messages.load_history(session.scope)
        except Exception as exc:
            logger.warning("loading history for %s failed: %s", session.scope.channel_name, exc)
            if self._live(sid) is not None:
                if initial or session.state.load_error is not None:
                    session.state.load_error = LOAD_ERROR
                else:
                    session.state.error = LOAD_ERROR
                self._changed(session)
            return
        if self._live(sid) is None:
            return
        messages = history
        for message in session.state.messages:
            if message.id not in known_ids:
                messages = apply_insert(messages, message)
        session.state.messages = messages
        session.state.load_error = None
        if session.state.error == LOAD_ERROR:
            session.state.error = None
        self._changed(session)

    async def _load_profile(self, session: _Session) -> None:
        if session.identity is None:
            return
        try:
            rows = await self._service.select(USER_PROFILES, {"user_id": session.identity.id}, limit=1)
        except Exception as exc:
            logger.warning("loading profile for %s failed: %s", session.identity.id, exc)
            return
        if rows and self._live(session.id) is not None:
            session.state.current_user = UserProfile.from_row(rows[0])
            self._changed(session)

    def sweep_typing(self) -> None:
        """Run the stale-typing sweep now instead of waiting for the timer."""

        session = self._active()
        if session is not None and session.typing is not None:
            session.typing.sweep()

    async def refresh_messages(self) -> None:
        session = self._active()
        if session is not None:
            await self._load_history(session)

    async def refresh_summaries(self) -> None:
        """Load the conversations and groups the local user takes part in."""

        session = self._active()
        if session is None or session.identity is None:
            return
        sid = session.id
        user_id = session.identity.id
        try:
            conversation_rows = await self._service.select(CONVERSATIONS, order_by="updated_at_ms", ascending=False)
            group_rows = await self._service.select(GROUPS, order_by="updated_at_ms", ascending=False)
        except Exception as exc:
            logger.warning("loading conversation list failed: %s", exc)
            return
        if self._live(sid) is None:
            return
        session.state.conversations = [
            ConversationSummary.from_row(row) for row in conversation_rows if user_id in (row.get("participants") or ())
        ]
        session.state.groups = [
            GroupSummary.from_row(row)
            for row in group_rows
            if user_id in (row.get("members") or ()) or row.get("created_by") == user_id
        ]
        self._changed(session)

    # -- outbound operations -------------------------------------------

    async def send_message(
        self,
        text: str,
        *,
        message_type: str = "text",
        reply_to_id: str | None = None,
        attachments: Iterable[Attachment] = (),
    ) -> Message | None:
        """Write a message for the open scope. Returns ``None`` when nothing was sent.

        The message list is not touched here; the write comes back through
        the change-feed or the broadcast.
        """

        session = self._active()
        if session is None or session.state.current_user is None or not text.strip():
            return None
        sid = session.id
        attachments = tuple(attachments)
        try:
            message = await self.messages.send(
                session.scope,
                session.state.current_user,
                text,
                message_type=message_type,
                reply_to_id=reply_to_id,
                attachments=attachments,
            )
        except Exception as exc:
            logger.warning("sending to %s failed: %s", session.scope.channel_name, exc)
            if self._live(sid) is None:
                return None
            session.state.error = SEND_ERROR
            if not isinstance(exc, ValueError):
                self.outbox.enqueue(
                    session.scope,
                    text,
                    message_type=message_type,
                    reply_to_id=reply_to_id,
                    attachments=attachments,
                )
            self._changed(session)
            return None
        if self._live(sid) is None:
            return None
        return message

    def update_typing_indicator(self, is_typing: bool) -> asyncio.Task | None:
        session = self._active()
        if session is None or session.typing is None or session.state.current_user is None:
            return None
        return spawn_detached("typing update", session.typing.set_typing(session.state.current_user, is_typing))

    def typing_debouncer(self) -> TypingDebouncer:
        """Composer helper; each report goes to whichever scope is open when it fires."""

        return TypingDebouncer(self._send_typing, idle_s=self.config.typing_idle_s)

    async def _send_typing(self, is_typing: bool) -> None:
        session = self._active()
        if session is None or session.typing is None or session.state.current_user is None:
            return
        await session.typing.set_typing(session.state.current_user, is_typing)

    def mark_message_as_read(self, message_id: str, scope_kind: str | None = None) -> asyncio.Task | None:
        session = self._active()
        if session is None or session.receipts is None:
            return None
        return session.receipts.mark_read(message_id, scope_kind or session.scope.kind)

    def _report_unread(self, session: _Session) -> None:
        if not self.config.auto_mark_read or session.receipts is None:
            return
        if session.scope.kind == "global" or session.state.current_user is None:
            return
        session.receipts.report_unread(session.state.messages, session.scope.kind)

    async def _flush_outbox(self, session: _Session) -> None:
        if not self.outbox.pending(session.scope):
            return

        async def send(queued: QueuedMessage) -> None:
            if self._live(session.id) is None or session.state.current_user is None:
                raise RuntimeError("session closed")
            await self.messages.send(
                queued.scope,
                session.state.current_user,
                queued.text,
                message_type=queued.message_type,
                reply_to_id=queued.reply_to_id,
                attachments=queued.attachments,
            )

        sent, dropped = await self.outbox.flush(session.scope, send)
        logger.info("outbox for %s: %d sent, %d dropped", session.scope.channel_name, sent, dropped)
        if sent and self._live(session.id) is not None and session.state.error == SEND_ERROR:
            session.state.error = None
            self._changed(session)

