from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

from chat_core.domain.entities.message import Message, Reaction, Receipt
from chat_core.domain.events.types import EventType


@dataclass(frozen=True, slots=True)
class MessageReceived:
    type: ClassVar[EventType] = EventType.MESSAGE_RECEIVED

    conversation_id: str
    message: Message


@dataclass(frozen=True, slots=True)
class MessageUpdated:
    type: ClassVar[EventType] = EventType.MESSAGE_UPDATED

    conversation_id: str
    message_id: str
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class MessageDeleted:
    type: ClassVar[EventType] = EventType.MESSAGE_DELETED

    conversation_id: str
    message_id: str
    deleted_for: frozenset[str] = frozenset()


@dataclass(frozen=True, slots=True)
class MessageRead:
    type: ClassVar[EventType] = EventType.MESSAGE_READ

    conversation_id: str
    message_id: str
    receipt: Receipt


@dataclass(frozen=True, slots=True)
class ReactionUpdated:
    type: ClassVar[EventType] = EventType.REACTION_UPDATED

    conversation_id: str
    message_id: str
    reactions: tuple[Reaction, ...] = ()


@dataclass(frozen=True, slots=True)
class MessageDelivered:
    type: ClassVar[EventType] = EventType.MESSAGE_DELIVERED

    conversation_id: str
    message_id: str
    receipt: Receipt | None = None
