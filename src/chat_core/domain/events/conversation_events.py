from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

from chat_core.domain.entities.conversation import Member
from chat_core.domain.events.types import EventType


@dataclass(frozen=True, slots=True)
class ConversationUpdated:
    type: ClassVar[EventType] = EventType.CONVERSATION_UPDATED

    conversation_id: str
    patch: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class MemberJoined:
    type: ClassVar[EventType] = EventType.MEMBER_JOINED

    conversation_id: str
    member: Member


@dataclass(frozen=True, slots=True)
class MemberLeft:
    type: ClassVar[EventType] = EventType.MEMBER_LEFT

    conversation_id: str
    user_id: str
