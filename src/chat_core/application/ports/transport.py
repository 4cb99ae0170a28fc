from __future__ import annotations

from datetime import datetime
from typing import Any, Awaitable, Callable, Protocol

from chat_core.application.dto.message import MessagePage, OutboundPayload
from chat_core.domain.entities.conversation import Conversation, Member
from chat_core.domain.entities.message import Message, Reaction
from chat_core.domain.events import ChatEvent
from chat_core.domain.value_objects.enums import ConversationKind

EventHandler = Callable[[ChatEvent], Awaitable[None]]


class Transport(Protocol):
    """REST request/response plus a reconnectable typed event stream.

    Request methods raise ``ChatError`` subclasses on failure.
    """

    @property
    def is_connected(self) -> bool: ...

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    def subscribe(self, handler: EventHandler) -> None: ...

    async def emit(self, event: str, data: Any) -> None: ...

    async def list_conversations(self, kind: ConversationKind) -> list[Conversation]: ...

    async def list_messages(
        self,
        conversation_id: str,
        kind: ConversationKind,
        *,
        before: str | None = None,
        after: str | None = None,
        limit: int = 50,
    ) -> MessagePage: ...

    async def list_members(self, conversation_id: str) -> list[Member]: ...

    async def send_message(
        self,
        conversation_id: str,
        kind: ConversationKind,
        payload: OutboundPayload,
    ) -> Message: ...

    async def edit_message(self, message_id: str, content: str) -> Message | None: ...

    async def soft_delete_message(self, message_id: str, deleted_for: list[str]) -> None: ...

    async def react(self, message_id: str, reaction_kind: str) -> tuple[Reaction, ...] | None: ...

    async def mark_read(
        self,
        conversation_id: str,
        message_ids: list[str],
        read_at: datetime,
    ) -> None: ...

    async def create_group(
        self,
        name: str,
        description: str = "",
        member_ids: list[str] | None = None,
    ) -> Conversation: ...

    async def create_private(self, peer_id: str) -> Conversation: ...

    async def update_conversation_settings(
        self,
        conversation_id: str,
        settings: dict[str, Any],
    ) -> None: ...

    async def delete_conversation(self, conversation_id: str) -> None: ...
