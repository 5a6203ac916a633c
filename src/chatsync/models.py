from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Tuple


MESSAGE_TYPES = ("text", "image", "file", "audio", "video", "location")
MESSAGE_STATUSES = ("sent", "delivered", "seen")
PRESENCE_STATUSES = ("online", "offline", "away", "busy")

DIRECT_MESSAGES = "direct_messages"
GROUP_MESSAGES = "group_messages"
GLOBAL_MESSAGES = "chat_messages"
TYPING_INDICATORS = "typing_indicators"
READ_RECEIPTS = "message_read_receipts"
USER_PROFILES = "user_profiles"
CONVERSATIONS = "conversations"
GROUPS = "groups"


def _opt_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _opt_int(value: Any) -> int | None:
    if value is None:
        return None
    return int(value)


@dataclass(frozen=True)
class Scope:
    """Partition key of a chat session: a conversation, a group, or the global feed."""

    conversation_id: str | None = None
    group_id: str | None = None

    def __post_init__(self) -> None:
        if self.conversation_id and self.group_id:
            raise ValueError("scope cannot name both a conversation and a group")

    @classmethod
    def direct(cls, conversation_id: str) -> "Scope":
        return cls(conversation_id=conversation_id)

    @classmethod
    def group(cls, group_id: str) -> "Scope":
        return cls(group_id=group_id)

    @classmethod
    def global_feed(cls) -> "Scope":
        return cls()

    @property
    def kind(self) -> str:
        if self.conversation_id:
            return "direct"
        if self.group_id:
            return "group"
        return "global"

    @property
    def channel_name(self) -> str:
        if self.conversation_id:
            return f"conversation:{self.conversation_id}"
        if self.group_id:
            return f"group:{self.group_id}"
        return "global:chat"

    @property
    def message_table(self) -> str:
        if self.conversation_id:
            return DIRECT_MESSAGES
        if self.group_id:
            return GROUP_MESSAGES
        return GLOBAL_MESSAGES

    def filters(self) -> Dict[str, str]:
        """Equality filter selecting rows that belong to this scope."""

        if self.conversation_id:
            return {"conversation_id": self.conversation_id}
        if self.group_id:
            return {"group_id": self.group_id}
        return {}

    def matches(self, row: Mapping[str, Any]) -> bool:
        return all(row.get(key) == value for key, value in self.filters().items())


@dataclass(frozen=True)
class Attachment:
    type: str
    url: str
    name: str
    size: int | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Attachment":
        return cls(
            type=str(row.get("type", "file")),
            url=str(row.get("url", "")),
            name=str(row.get("name", "")),
            size=_opt_int(row.get("size")),
        )

    def to_row(self) -> Dict[str, Any]:
        row: Dict[str, Any] = {"type": self.type, "url": self.url, "name": self.name}
        if self.size is not None:
            row["size"] = self.size
        return row


@dataclass(frozen=True)
class Message:
    """A chat message as stored by the row store and shown in the UI."""

    id: str
    sender_id: str
    message_text: str
    sender_name: str = ""
    message_type: str = "text"
    conversation_id: str | None = None
    group_id: str | None = None
    receiver_id: str | None = None
    reply_to_id: str | None = None
    is_edited: bool = False
    is_deleted: bool = False
    is_forwarded: bool = False
    is_pinned: bool = False
    message_status: str = "sent"
    attachments: Tuple[Attachment, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at_ms: int = 0
    updated_at_ms: int = 0
    edited_at_ms: int | None = None
    deleted_at_ms: int | None = None

    def __post_init__(self) -> None:
        if self.conversation_id and self.group_id:
            raise ValueError("message cannot belong to both a conversation and a group")

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Message":
        if not row.get("id"):
            raise ValueError("message row requires an id")
        created_at_ms = int(row.get("created_at_ms") or 0)
        return cls(
            id=str(row["id"]),
            sender_id=str(row.get("sender_id", "")),
            sender_name=str(row.get("sender_name") or ""),
            message_text=str(row.get("message_text", "")),
            message_type=str(row.get("message_type") or "text"),
            conversation_id=_opt_str(row.get("conversation_id")),
            group_id=_opt_str(row.get("group_id")),
            receiver_id=_opt_str(row.get("receiver_id")),
            reply_to_id=_opt_str(row.get("reply_to_id")),
            is_edited=bool(row.get("is_edited", False)),
            is_deleted=bool(row.get("is_deleted", False)),
            is_forwarded=bool(row.get("is_forwarded", False)),
            is_pinned=bool(row.get("is_pinned", False)),
            message_status=str(row.get("message_status") or "sent"),
            attachments=tuple(Attachment.from_row(item) for item in row.get("attachments") or ()),
            metadata=dict(row.get("metadata") or {}),
            created_at_ms=created_at_ms,
            updated_at_ms=int(row.get("updated_at_ms") or created_at_ms),
            edited_at_ms=_opt_int(row.get("edited_at_ms")),
            deleted_at_ms=_opt_int(row.get("deleted_at_ms")),
        )

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row["attachments"] = [attachment.to_row() for attachment in self.attachments]
        row["metadata"] = dict(self.metadata)
        return row


@dataclass(frozen=True)
class TypingIndicator:
    user_id: str
    user_name: str = ""
    is_typing: bool = True
    last_typed_ms: int = 0
    conversation_id: str | None = None
    group_id: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "TypingIndicator":
        return cls(
            user_id=str(row["user_id"]),
            user_name=str(row.get("user_name") or ""),
            is_typing=bool(row.get("is_typing", False)),
            last_typed_ms=int(row.get("last_typed_ms") or 0),
            conversation_id=_opt_str(row.get("conversation_id")),
            group_id=_opt_str(row.get("group_id")),
        )

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class UserProfile:
    id: str
    user_id: str
    username: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None
    bio: str | None = None
    phone_number: str | None = None
    status: str = "offline"
    custom_status: str | None = None
    last_seen_ms: int = 0
    is_online: bool = False
    show_last_seen: bool = True
    show_status: bool = True
    created_at_ms: int = 0
    updated_at_ms: int = 0

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "UserProfile":
        user_id = str(row.get("user_id") or row.get("id") or "")
        status = str(row.get("status") or "offline")
        if status not in PRESENCE_STATUSES:
            status = "online" if row.get("is_online") else "offline"
        return cls(
            id=str(row.get("id") or user_id),
            user_id=user_id,
            username=_opt_str(row.get("username")),
            display_name=_opt_str(row.get("display_name")),
            avatar_url=_opt_str(row.get("avatar_url")),
            bio=_opt_str(row.get("bio")),
            phone_number=_opt_str(row.get("phone_number")),
            status=status,
            custom_status=_opt_str(row.get("custom_status")),
            last_seen_ms=int(row.get("last_seen_ms") or 0),
            is_online=bool(row.get("is_online", False)),
            show_last_seen=bool(row.get("show_last_seen", True)),
            show_status=bool(row.get("show_status", True)),
            created_at_ms=int(row.get("created_at_ms") or 0),
            updated_at_ms=int(row.get("updated_at_ms") or 0),
        )

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ConversationSummary:
    id: str
    participants: Tuple[str, ...] = ()
    unread_count: int = 0
    last_message_id: str | None = None
    created_at_ms: int = 0
    updated_at_ms: int = 0

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ConversationSummary":
        return cls(
            id=str(row["id"]),
            participants=tuple(str(p) for p in row.get("participants") or ()),
            unread_count=int(row.get("unread_count") or 0),
            last_message_id=_opt_str(row.get("last_message_id")),
            created_at_ms=int(row.get("created_at_ms") or 0),
            updated_at_ms=int(row.get("updated_at_ms") or 0),
        )


@dataclass(frozen=True)
class GroupSummary:
    id: str
    name: str
    created_by: str = ""
    description: str | None = None
    avatar_url: str | None = None
    group_type: str = "group"
    is_private: bool = False
    max_members: int = 256
    members: Tuple[str, ...] = ()
    unread_count: int = 0
    created_at_ms: int = 0
    updated_at_ms: int = 0

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "GroupSummary":
        return cls(
            id=str(row["id"]),
            name=str(row.get("name") or ""),
            created_by=str(row.get("created_by") or ""),
            description=_opt_str(row.get("description")),
            avatar_url=_opt_str(row.get("avatar_url")),
            group_type=str(row.get("group_type") or "group"),
            is_private=bool(row.get("is_private", False)),
            max_members=int(row.get("max_members") or 256),
            members=tuple(str(m) for m in row.get("members") or ()),
            unread_count=int(row.get("unread_count") or 0),
            created_at_ms=int(row.get("created_at_ms") or 0),
            updated_at_ms=int(row.get("updated_at_ms") or 0),
        )


@dataclass(frozen=True)
class Identity:
    """The authenticated user as reported by the identity provider."""

    id: str
    email: str | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return str(self.metadata.get("display_name") or self.email or self.id)

    @property
    def avatar_url(self) -> str | None:
        return _opt_str(self.metadata.get("avatar_url"))


class ConnectionState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    CLOSED = "closed"


@dataclass
class ChatState:
    """Aggregate read by the presentation layer for one open scope."""

    scope: Scope = field(default_factory=Scope)
    messages: List[Message] = field(default_factory=list)
    typing_users: List[TypingIndicator] = field(default_factory=list)
    online_users: List[UserProfile] = field(default_factory=list)
    current_user: UserProfile | None = None
    conversations: List[ConversationSummary] = field(default_factory=list)
    groups: List[GroupSummary] = field(default_factory=list)
    connection_state: ConnectionState = ConnectionState.IDLE
    is_loading: bool = False
    error: str | None = None
    load_error: str | None = None

    @property
    def is_connected(self) -> bool:
        return self.connection_state is ConnectionState.CONNECTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope": {"conversation_id": self.scope.conversation_id, "group_id": self.scope.group_id},
            "messages": [message.to_row() for message in self.messages],
            "typing_users": [indicator.to_row() for indicator in self.typing_users],
            "online_users": [profile.to_row() for profile in self.online_users],
            "current_user": self.current_user.to_row() if self.current_user else None,
            "conversations": [asdict(summary) for summary in self.conversations],
            "groups": [asdict(summary) for summary in self.groups],
            "connection_state": self.connection_state.value,
            "is_connected": self.is_connected,
            "is_loading": self.is_loading,
            "error": self.error,
            "load_error": self.load_error,
        }
