"""Canonical events produced by the transport and consumed by the merger."""
from __future__ import annotations

from typing import Union

from chat_core.domain.events.connection_events import ConnectionDown, ConnectionUp
from chat_core.domain.events.conversation_events import (
    ConversationUpdated,
    MemberJoined,
    MemberLeft,
)
from chat_core.domain.events.message_events import (
    MessageDeleted,
    MessageDelivered,
    MessageRead,
    MessageReceived,
    MessageUpdated,
    ReactionUpdated,
)
from chat_core.domain.events.presence_events import (
    PresenceChanged,
    TypingStarted,
    TypingStopped,
)
from chat_core.domain.events.types import EventType

ChatEvent = Union[
    MessageReceived,
    MessageUpdated,
    MessageDeleted,
    MessageRead,
    MessageDelivered,
    ReactionUpdated,
    TypingStarted,
    TypingStopped,
    PresenceChanged,
    ConversationUpdated,
    MemberJoined,
    MemberLeft,
    ConnectionUp,
    ConnectionDown,
]

__all__ = [
    "ChatEvent",
    "ConnectionDown",
    "ConnectionUp",
    "ConversationUpdated",
    "EventType",
    "MemberJoined",
    "MemberLeft",
    "MessageDeleted",
    "MessageDelivered",
    "MessageRead",
    "MessageReceived",
    "MessageUpdated",
    "PresenceChanged",
    "ReactionUpdated",
    "TypingStarted",
    "TypingStopped",
]
