"""Shared test fixtures."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest

from chat_core.application.dto.message import MessagePage, OutboundPayload
from chat_core.application.dto.notice import Notice
from chat_core.application.ports.transport import EventHandler
from chat_core.client import ChatClient
from chat_core.domain.entities.conversation import Conversation, Member
from chat_core.domain.entities.message import Message, Reaction
from chat_core.domain.events import ChatEvent
from chat_core.domain.value_objects.enums import ConversationKind, DeliveryStatus
from chat_core.infrastructure.storage.memory import InMemoryQueueStorage
from chat_core.services.retry_policy import RetryPolicy

BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return BASE_TIME + timedelta(seconds=seconds)


def make_message(
    message_id: str = "m1",
    *,
    conversation_id: str = "c1",
    sender_id: str = "u2",
    content: str = "hello",
    seconds: float = 0,
    **overrides: Any,
) -> Message:
    values: dict[str, Any] = {
        "id": message_id,
        "conversation_id": conversation_id,
        "sender_id": sender_id,
        "sender_name": sender_id.upper(),
        "content": content,
        "created_at": at(seconds),
        "status": DeliveryStatus.SENT,
    }
    values.update(overrides)
    return Message(**values)


def make_conversation(
    conversation_id: str = "c1",
    *,
    kind: ConversationKind = ConversationKind.GROUP,
    name: str | None = None,
    **overrides: Any,
) -> Conversation:
    values: dict[str, Any] = {
        "id": conversation_id,
        "kind": kind,
        "name": name or f"Chat {conversation_id}",
        "created_at": BASE_TIME - timedelta(days=1),
    }
    values.update(overrides)
    return Conversation(**values)


async def wait_until(predicate: Callable[[], bool], attempts: int = 200) -> None:
    """Yield to the loop until ``predicate`` holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@dataclass
class FakeClock:
    current: datetime = BASE_TIME

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


@dataclass
class FakeIdentity:
    user_id: str = "u1"
    user_name: str = "U1"
    token: str | None = "token"
    expired: bool = False

    def auth_token(self) -> str | None:
        return self.token

    def is_expired(self) -> bool:
        return self.expired


@dataclass
class FakeNotifier:
    notices: list[Notice] = field(default_factory=list)

    def notify(self, notice: Notice) -> None:
        self.notices.append(notice)


@dataclass
class RecordingSleeper:
    delays: list[float] = field(default_factory=list)

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@dataclass
class FakeTransport:
    """In-memory server: history per conversation plus scripted failures."""

    user_id: str = "u1"
    is_connected: bool = True
    conversations: dict[ConversationKind, list[Conversation]] = field(default_factory=dict)
    history: dict[str, list[Message]] = field(default_factory=dict)
    members: dict[str, list[Member]] = field(default_factory=dict)
    failures: dict[str, list[Exception]] = field(default_factory=dict)
    replies: list[Message] = field(default_factory=list)
    confirmed: dict[str, Message] = field(default_factory=dict)
    sent: list[tuple[str, OutboundPayload]] = field(default_factory=list)
    emitted: list[tuple[str, Any]] = field(default_factory=list)
    calls: list[tuple[str, tuple[Any, ...]]] = field(default_factory=list)
    handlers: list[EventHandler] = field(default_factory=list)
    send_gate: asyncio.Event | None = None
    edit_result: Message | None = None
    react_result: tuple[Reaction, ...] | None = None
    _seq: int = 0

    def fail(self, operation: str, *errors: Exception) -> None:
        self.failures.setdefault(operation, []).extend(errors)

    def called(self, operation: str) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == operation]

    def _check(self, operation: str, *args: Any) -> None:
        self.calls.append((operation, args))
        queued = self.failures.get(operation)
        if queued:
            raise queued.pop(0)

    def reply_for(self, conversation_id: str, payload: OutboundPayload) -> Message:
        """The server copy of an outbound payload; stable per correlation token."""
        message = self.confirmed.get(payload.correlation_token)
        if message is not None:
            return message
        self._seq += 1
        if self.replies:
            template = self.replies.pop(0)
        else:
            template = make_message(f"srv-{self._seq}", seconds=60 + self._seq)
        message = replace(
            template,
            conversation_id=conversation_id,
            sender_id=self.user_id,
            sender_name=self.user_id.upper(),
            content=payload.content,
            kind=payload.kind,
            forwarded_from=payload.forwarded_from,
            correlation_token=payload.correlation_token,
        )
        self.confirmed[payload.correlation_token] = message
        self.history.setdefault(conversation_id, []).append(message)
        return message

    async def publish(self, event: ChatEvent) -> None:
        for handler in list(self.handlers):
            await handler(event)

    # -- Transport ---------------------------------------------------------

    async def connect(self) -> None:
        self.is_connected = True

    async def close(self) -> None:
        self.is_connected = False

    def subscribe(self, handler: EventHandler) -> None:
        self.handlers.append(handler)

    async def emit(self, event: str, data: Any) -> None:
        self.emitted.append((event, data))

    async def list_conversations(self, kind: ConversationKind) -> list[Conversation]:
        self._check("list_conversations", kind)
        return list(self.conversations.get(kind, []))

    async def list_messages(
        self,
        conversation_id: str,
        kind: ConversationKind,
        *,
        before: str | None = None,
        after: str | None = None,
        limit: int = 50,
    ) -> MessagePage:
        self._check("list_messages", conversation_id, before)
        rows = sorted(self.history.get(conversation_id, []), key=lambda m: m.sort_key)
        if before is not None:
            ids = [m.id for m in rows]
            rows = rows[: ids.index(before)] if before in ids else []
        return MessagePage(messages=tuple(rows[-limit:]), has_more_before=len(rows) > limit)

    async def list_members(self, conversation_id: str) -> list[Member]:
        self._check("list_members", conversation_id)
        return list(self.members.get(conversation_id, []))

    async def send_message(
        self,
        conversation_id: str,
        kind: ConversationKind,
        payload: OutboundPayload,
    ) -> Message:
        self.sent.append((conversation_id, payload))
        self._check("send_message", conversation_id, payload.content)
        if self.send_gate is not None:
            await self.send_gate.wait()
        return self.reply_for(conversation_id, payload)

    async def edit_message(self, message_id: str, content: str) -> Message | None:
        self._check("edit_message", message_id, content)
        return self.edit_result

    async def soft_delete_message(self, message_id: str, deleted_for: list[str]) -> None:
        self._check("soft_delete_message", message_id, tuple(deleted_for))

    async def react(self, message_id: str, reaction_kind: str) -> tuple[Reaction, ...] | None:
        self._check("react", message_id, reaction_kind)
        return self.react_result

    async def mark_read(
        self,
        conversation_id: str,
        message_ids: list[str],
        read_at: datetime,
    ) -> None:
        self._check("mark_read", conversation_id, tuple(message_ids))

    async def create_group(
        self,
        name: str,
        description: str = "",
        member_ids: list[str] | None = None,
    ) -> Conversation:
        self._check("create_group", name, tuple(member_ids or ()))
        return make_conversation(
            "g-new", name=name, description=description, member_count=len(member_ids or ()) + 1,
        )

    async def create_private(self, peer_id: str) -> Conversation:
        self._check("create_private", peer_id)
        return make_conversation(
            f"p-{peer_id}", kind=ConversationKind.PRIVATE, name=peer_id, peer_id=peer_id,
        )

    async def update_conversation_settings(
        self,
        conversation_id: str,
        settings: dict[str, Any],
    ) -> None:
        self._check("update_conversation_settings", conversation_id, dict(settings))

    async def delete_conversation(self, conversation_id: str) -> None:
        self._check("delete_conversation", conversation_id)


def fast_policy(**overrides: Any) -> RetryPolicy:
    values: dict[str, Any] = {"base_delay": 0.0, "jitter": 0.0, "rand": lambda: 0.5}
    values.update(overrides)
    return RetryPolicy(**values)


def make_client(
    transport: FakeTransport | None = None,
    *,
    identity: FakeIdentity | None = None,
    storage: InMemoryQueueStorage | None = None,
    **overrides: Any,
) -> ChatClient:
    transport = transport or FakeTransport()
    identity = identity or FakeIdentity(user_id=transport.user_id, user_name=transport.user_id.upper())
    kwargs: dict[str, Any] = {
        "policy": fast_policy(),
        "clock": FakeClock(),
        "sleep": RecordingSleeper(),
    }
    kwargs.update(overrides)
    return ChatClient(
        transport, identity, FakeNotifier(), storage or InMemoryQueueStorage(), **kwargs,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def identity() -> FakeIdentity:
    return FakeIdentity()


@pytest.fixture
def sleeper() -> RecordingSleeper:
    return RecordingSleeper()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
