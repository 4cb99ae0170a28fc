"""``Transport`` implementation over aiohttp: REST plus a WebSocket event stream."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, TypeVar

import aiohttp
import pydantic

from chat_core.application.dto.message import MessagePage, OutboundPayload
from chat_core.application.exceptions import ChatError, ValidationError
from chat_core.application.ports.clock import Sleeper
from chat_core.application.ports.identity import IdentityProvider
from chat_core.application.ports.transport import EventHandler
from chat_core.domain.entities.conversation import Conversation, Member
from chat_core.domain.entities.message import Message, Reaction
from chat_core.domain.events import ChatEvent, ConnectionDown, ConnectionUp
from chat_core.domain.value_objects.enums import ConversationKind
from chat_core.infrastructure.transport.rest import RestClient
from chat_core.infrastructure.transport.wire import (
    WireConversation,
    WireMember,
    WireMessage,
    WireReaction,
    parse_event,
    send_body,
    settings_body,
)
from chat_core.infrastructure.transport.ws import EventStream
from chat_core.services.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

_KIND_SEGMENT = {ConversationKind.GROUP: "groups", ConversationKind.PRIVATE: "private"}


def _items(body: Any, *keys: str) -> list[Any]:
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        for key in keys:
            value = body.get(key)
            if isinstance(value, list):
                return value
    return []


def _parse(operation: str, fn: Callable[[], T]) -> T:
    try:
        return fn()
    except (pydantic.ValidationError, KeyError, TypeError) as exc:
        raise ValidationError(
            "Malformed server response", operation=operation, cause=exc,
        ) from exc


class AiohttpTransport:
    def __init__(
        self,
        api_base_url: str,
        ws_url: str,
        identity: IdentityProvider,
        *,
        session: aiohttp.ClientSession | None = None,
        read_timeout: float = 10.0,
        write_timeout: float = 20.0,
        heartbeat: float = 20.0,
        reconnect_policy: RetryPolicy | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._rest = RestClient(
            api_base_url,
            identity,
            session=session,
            read_timeout=read_timeout,
            write_timeout=write_timeout,
        )
        self._stream = EventStream(
            ws_url,
            self._rest.headers,
            self._on_frame,
            self._on_state,
            session=session,
            heartbeat=heartbeat,
            backoff=reconnect_policy,
            sleep=sleep,
        )
        self._handlers: list[EventHandler] = []

    # -- event stream ------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._stream.connected

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    async def connect(self) -> None:
        await self._stream.start()

    async def close(self) -> None:
        await self._stream.stop()
        await self._rest.close()

    async def emit(self, event: str, data: Any) -> None:
        await self._stream.send(event, data)

    async def _publish(self, event: ChatEvent) -> None:
        for handler in list(self._handlers):
            try:
                await handler(event)
            except Exception:
                logger.exception("Event handler failed on %s", event.type)

    async def _on_state(self, connected: bool, reconnect: bool, reason: str) -> None:
        if connected:
            await self._publish(ConnectionUp(reconnect=reconnect))
        else:
            await self._publish(ConnectionDown(reason=reason))

    async def _on_frame(self, name: str, data: Any) -> None:
        if not isinstance(data, dict):
            logger.warning("Dropping %s frame with non-object payload", name)
            return
        try:
            event = parse_event(name, data)
        except (pydantic.ValidationError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Dropping malformed %s event: %s", name, exc)
            return
        if event is None:
            logger.debug("Ignoring %s event", name)
            return
        await self._publish(event)

    # -- conversations -----------------------------------------------------

    async def list_conversations(self, kind: ConversationKind) -> list[Conversation]:
        operation = f"list {kind} conversations"
        body = await self._rest.request("GET", f"/api/chat/{_KIND_SEGMENT[kind]}", operation=operation)
        raw = _items(body, "chats", "groups", "items")
        return _parse(operation, lambda: [WireConversation.model_validate(c).to_domain(kind) for c in raw])

    async def list_members(self, conversation_id: str) -> list[Member]:
        operation = "list members"
        body = await self._rest.request(
            "GET", f"/api/chat/groups/{conversation_id}/members", operation=operation,
        )
        raw = _items(body, "members", "items")
        return _parse(
            operation,
            lambda: [WireMember.model_validate(WireMember.coerce(m)).to_domain() for m in raw],
        )

    async def create_group(
        self,
        name: str,
        description: str = "",
        member_ids: list[str] | None = None,
    ) -> Conversation:
        operation = "create group"
        body = await self._rest.request(
            "POST",
            "/api/chat/groups",
            operation=operation,
            json={"name": name.strip(), "description": description.strip(), "type": "public"},
        )
        wire = _parse(operation, lambda: WireConversation.model_validate(body))
        for user_id in member_ids or ():
            try:
                await self._rest.request(
                    "POST",
                    f"/api/chat/groups/{wire.id}/join",
                    operation="add group member",
                    json={"userId": user_id},
                )
            except ChatError as exc:
                logger.warning("Adding %s to group %s failed: %s", user_id, wire.id, exc.kind)
        if wire.member_count is None:
            wire.member_count = len(member_ids or ()) + 1
        return wire.to_domain(ConversationKind.GROUP)

    async def create_private(self, peer_id: str) -> Conversation:
        operation = "open private conversation"
        body = await self._rest.request(
            "POST", "/api/chat/private", operation=operation, json={"participantId": peer_id},
        )
        return _parse(
            operation,
            lambda: WireConversation.model_validate(body).to_domain(ConversationKind.PRIVATE),
        )

    async def update_conversation_settings(
        self,
        conversation_id: str,
        settings: dict[str, Any],
    ) -> None:
        await self._rest.request(
            "PATCH",
            f"/api/chats/{conversation_id}",
            operation="update conversation settings",
            json=settings_body(settings),
        )

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._rest.request(
            "DELETE", f"/api/chats/{conversation_id}", operation="delete conversation",
        )

    # -- messages ----------------------------------------------------------

    async def list_messages(
        self,
        conversation_id: str,
        kind: ConversationKind,
        *,
        before: str | None = None,
        after: str | None = None,
        limit: int = 50,
    ) -> MessagePage:
        operation = "list messages"
        body = await self._rest.request(
            "GET",
            f"/api/chat/{_KIND_SEGMENT[kind]}/{conversation_id}/messages",
            operation=operation,
            params={"before": before, "after": after, "limit": limit},
        )
        raw = _items(body, "messages", "items")
        messages = _parse(
            operation,
            lambda: sorted(
                (WireMessage.model_validate(m).to_domain(conversation_id) for m in raw),
                key=lambda m: m.sort_key,
            ),
        )
        has_more = body.get("hasMore") if isinstance(body, dict) else None
        if not isinstance(has_more, bool):
            has_more = len(messages) >= limit
        return MessagePage(messages=tuple(messages), has_more_before=has_more)

    async def send_message(
        self,
        conversation_id: str,
        kind: ConversationKind,
        payload: OutboundPayload,
    ) -> Message:
        operation = "send message"
        body = await self._rest.request(
            "POST",
            f"/api/chat/{_KIND_SEGMENT[kind]}/{conversation_id}/messages",
            operation=operation,
            json=send_body(payload),
        )
        return _parse(operation, lambda: WireMessage.model_validate(body).to_domain(conversation_id))

    async def edit_message(self, message_id: str, content: str) -> Message | None:
        operation = "edit message"
        body = await self._rest.request(
            "PATCH", f"/api/messages/{message_id}", operation=operation, json={"content": content},
        )
        if not isinstance(body, dict) or not {"id", "_id"} & body.keys():
            return None
        return _parse(operation, lambda: WireMessage.model_validate(body).to_domain())

    async def soft_delete_message(self, message_id: str, deleted_for: list[str]) -> None:
        await self._rest.request(
            "PATCH",
            f"/api/messages/{message_id}",
            operation="delete message",
            json={"isDeleted": True, "deletedFor": list(deleted_for)},
        )

    async def react(self, message_id: str, reaction_kind: str) -> tuple[Reaction, ...] | None:
        operation = "react to message"
        body = await self._rest.request(
            "POST",
            f"/api/messages/{message_id}/react",
            operation=operation,
            json={"reactionKind": reaction_kind},
        )
        if not isinstance(body, dict) or not isinstance(body.get("reactions"), list):
            return None
        return _parse(
            operation,
            lambda: tuple(WireReaction.model_validate(r).to_domain() for r in body["reactions"]),
        )

    async def mark_read(
        self,
        conversation_id: str,
        message_ids: list[str],
        read_at: datetime,
    ) -> None:
        await self._rest.request(
            "POST",
            f"/api/chats/{conversation_id}/read",
            operation="mark read",
            json={"messageIds": list(message_ids), "readAt": read_at},
        )
