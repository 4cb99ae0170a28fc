from __future__ import annotations

from dataclasses import dataclass

from chat_core.domain.entities.message import ForwardInfo, Message
from chat_core.domain.value_objects.enums import MessageKind


@dataclass(frozen=True, slots=True)
class OutboundPayload:
    content: str
    correlation_token: str
    kind: MessageKind = MessageKind.TEXT
    attachment_ids: tuple[str, ...] = ()
    reply_to_id: str | None = None
    forwarded_from: ForwardInfo | None = None


@dataclass(frozen=True, slots=True)
class MessagePage:
    messages: tuple[Message, ...]
    has_more_before: bool = False
