"""Real-time chat synchronization core: messages, typing, presence and visibility."""

from .config import ChatConfig, ReconnectPolicy
from .memory_service import InMemoryRealtimeService, StaticIdentityProvider
from .models import ChatState, ConnectionState, Identity, Message, Scope, TypingIndicator, UserProfile
from .presence import PresenceTracker
from .session import ChatSessionManager
from .visibility import VisibilityController, chat_should_be_offered

__all__ = [
    "ChatConfig",
    "ReconnectPolicy",
    "InMemoryRealtimeService",
    "StaticIdentityProvider",
    "ChatState",
    "ConnectionState",
    "Identity",
    "Message",
    "Scope",
    "TypingIndicator",
    "UserProfile",
    "PresenceTracker",
    "ChatSessionManager",
    "VisibilityController",
    "chat_should_be_offered",
]
