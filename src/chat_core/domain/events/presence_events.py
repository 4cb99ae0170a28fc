from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import ClassVar

from chat_core.domain.events.types import EventType


@dataclass(frozen=True, slots=True)
class TypingStarted:
    type: ClassVar[EventType] = EventType.TYPING_STARTED

    conversation_id: str
    user_id: str
    user_name: str = ""


@dataclass(frozen=True, slots=True)
class TypingStopped:
    type: ClassVar[EventType] = EventType.TYPING_STOPPED

    conversation_id: str
    user_id: str


@dataclass(frozen=True, slots=True)
class PresenceChanged:
    user_id: str
    online: bool
    last_seen: datetime | None = None

    @property
    def type(self) -> EventType:
        return EventType.PRESENCE_ONLINE if self.online else EventType.PRESENCE_OFFLINE
