from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from chat_core.domain.value_objects.enums import ConversationKind, MessageKind


@dataclass(frozen=True, slots=True)
class Member:
    user_id: str
    name: str = ""


@dataclass(frozen=True, slots=True)
class LastMessage:
    message_id: str
    kind: MessageKind
    preview: str
    sender_id: str
    sender_name: str
    at: datetime


@dataclass(frozen=True, slots=True)
class Conversation:
    id: str
    kind: ConversationKind
    name: str
    description: str = ""
    peer_id: str | None = None
    peer_online: bool = False
    peer_last_seen: datetime | None = None
    member_count: int = 0
    members: tuple[Member, ...] | None = None
    last_message: LastMessage | None = None
    unread_count: int = 0
    muted: bool = False
    archived: bool = False
    pinned: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def last_activity(self) -> datetime | None:
        if self.last_message is not None:
            if self.updated_at is None or self.last_message.at > self.updated_at:
                return self.last_message.at
        return self.updated_at or self.created_at
