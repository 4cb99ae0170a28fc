from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from datetime import datetime
from enum import StrEnum
from typing import Any, Callable, Mapping

from chat_core.application.dto.notice import NoticeAction
from chat_core.application.exceptions import ChatError, ErrorKind, NotFoundError
from chat_core.application.ports.notifier import Notifier
from chat_core.application.ports.transport import Transport
from chat_core.domain.entities.conversation import Conversation, LastMessage, Member
from chat_core.domain.entities.message import Message
from chat_core.domain.value_objects.enums import ConversationKind
from chat_core.services.history_service import HistoryService
from chat_core.services.presence import TypingTracker
from chat_core.services.retry_policy import RetryPolicy, notice_for

logger = logging.getLogger(__name__)

_CONVERSATION_FIELDS = frozenset(f.name for f in fields(Conversation)) - {"id", "kind"}
_SETTINGS_FIELDS = frozenset({"muted", "archived", "pinned", "name", "description"})
_PREVIEW_LIMIT = 120


class RegistryChangeKind(StrEnum):
    LOADED = "loaded"
    UPDATED = "updated"
    REMOVED = "removed"
    SELECTED = "selected"


@dataclass(frozen=True, slots=True)
class RegistryChange:
    kind: RegistryChangeKind
    conversation_id: str | None = None


RegistryListener = Callable[[RegistryChange], None]


def _activity_key(conversation: Conversation) -> tuple[int, float]:
    at = conversation.last_activity
    return (0 if conversation.pinned else 1, -(at.timestamp() if at else float("-inf")))


def _preview(message: Message) -> str:
    if message.content:
        return message.content[:_PREVIEW_LIMIT]
    if message.attachments:
        return f"[{message.kind}]"
    return ""


class ConversationRegistry:
    """All known conversations plus the single active selection."""

    def __init__(
        self,
        transport: Transport,
        history: HistoryService,
        typing: TypingTracker,
        policy: RetryPolicy,
        notifier: Notifier,
    ) -> None:
        self._transport = transport
        self._history = history
        self._typing = typing
        self._policy = policy
        self._notifier = notifier
        self._conversations: dict[str, Conversation] = {}
        self._active: str | None = None
        self._listeners: list[RegistryListener] = []

    def subscribe(self, listener: RegistryListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _publish(self, kind: RegistryChangeKind, conversation_id: str | None = None) -> None:
        change = RegistryChange(kind, conversation_id)
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("Registry listener failed on %s", kind)

    # -- reads -------------------------------------------------------------

    @property
    def active_id(self) -> str | None:
        return self._active

    def get(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def kind_of(self, conversation_id: str) -> ConversationKind:
        conversation = self._conversations.get(conversation_id)
        return conversation.kind if conversation else ConversationKind.GROUP

    def list(self) -> list[Conversation]:
        """Pinned first, then most recent activity first."""
        return sorted(self._conversations.values(), key=_activity_key)

    def search(self, query: str) -> list[Conversation]:
        needle = query.strip().casefold()
        if not needle:
            return self.list()
        return [
            c for c in self.list()
            if needle in c.name.casefold()
            or needle in c.description.casefold()
            or (c.last_message is not None and needle in c.last_message.preview.casefold())
        ]

    # -- loading -----------------------------------------------------------

    async def load(self) -> list[Conversation]:
        try:
            groups = await self._policy.call(
                "list group conversations",
                lambda: self._transport.list_conversations(ConversationKind.GROUP),
            )
        except ChatError as exc:
            logger.warning("Loading conversations failed: %s", exc.kind)
            self._notifier.notify(notice_for(exc, action=NoticeAction.REFRESH))
            return self.list()

        try:
            private = await self._policy.call(
                "list private conversations",
                lambda: self._transport.list_conversations(ConversationKind.PRIVATE),
            )
        except ChatError as exc:
            if exc.kind == ErrorKind.AUTH:
                self._notifier.notify(notice_for(exc))
                return self.list()
            logger.info("Private conversations unavailable (%s), continuing without", exc.kind)
            private = []

        previous = self._conversations
        self._conversations = {}
        for conversation in [*groups, *private]:
            old = previous.get(conversation.id)
            if old is not None and old.members is not None and conversation.members is None:
                conversation = replace(conversation, members=old.members)
            self._conversations[conversation.id] = conversation
        if self._active is not None and self._active in self._conversations:
            self._conversations[self._active] = replace(
                self._conversations[self._active], unread_count=0,
            )
        logger.info(
            "Loaded %d group and %d private conversations", len(groups), len(private),
        )
        self._publish(RegistryChangeKind.LOADED)
        return self.list()

    async def load_members(self, conversation_id: str) -> tuple[Member, ...]:
        conversation = self._require(conversation_id)
        if conversation.members is not None:
            return conversation.members
        members = await self._policy.call(
            f"list members {conversation_id}",
            lambda: self._transport.list_members(conversation_id),
        )
        self.update(conversation_id, {"members": tuple(members), "member_count": len(members)})
        return tuple(members)

    # -- selection ---------------------------------------------------------

    async def select(self, conversation_id: str) -> list[Message] | None:
        """Make ``conversation_id`` the active conversation and load its history.

        Selecting the already-active conversation does nothing and returns None.
        """
        conversation = self._require(conversation_id)
        if self._active == conversation_id:
            return None
        self._history.cancel_pending()
        previous = self._active
        self._active = conversation_id
        if previous is not None:
            self._typing.clear(previous)
            await self._room("leave", previous)
        self.clear_unread(conversation_id)
        await self._room("join", conversation_id)
        self._publish(RegistryChangeKind.SELECTED, conversation_id)
        return await self._history.open(conversation_id, conversation.kind)

    def deselect(self) -> None:
        if self._active is None:
            return
        self._typing.clear(self._active)
        self._history.cancel_pending()
        self._active = None
        self._publish(RegistryChangeKind.SELECTED, None)

    async def _room(self, action: str, conversation_id: str) -> None:
        if not self._transport.is_connected:
            return
        if self.kind_of(conversation_id) == ConversationKind.PRIVATE:
            await self._transport.emit(
                f"{action}_chat", {"chatId": conversation_id, "chatType": "private"},
            )
        else:
            await self._transport.emit(f"{action}_group", conversation_id)

    async def rejoin(self) -> None:
        """Re-enter the active room after the event stream reconnects."""
        if self._active is not None:
            await self._room("join", self._active)

    # -- mutations ---------------------------------------------------------

    def _require(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found", operation="select conversation")
        return conversation

    def upsert(self, conversation: Conversation) -> None:
        self._conversations[conversation.id] = conversation
        self._publish(RegistryChangeKind.UPDATED, conversation.id)

    def update(self, conversation_id: str, patch: Mapping[str, Any]) -> Conversation | None:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return None
        changes = {k: v for k, v in patch.items() if k in _CONVERSATION_FIELDS}
        if not changes:
            return conversation
        updated = replace(conversation, **changes)
        self._conversations[conversation_id] = updated
        self._publish(RegistryChangeKind.UPDATED, conversation_id)
        return updated

    def remove(self, conversation_id: str) -> Conversation | None:
        removed = self._conversations.pop(conversation_id, None)
        if removed is None:
            return None
        if self._active == conversation_id:
            self.deselect()
        self._history.cache.invalidate(conversation_id)
        self._publish(RegistryChangeKind.REMOVED, conversation_id)
        return removed

    def increment_unread(self, conversation_id: str, by: int = 1) -> None:
        conversation = self._conversations.get(conversation_id)
        if conversation is not None:
            self.update(conversation_id, {"unread_count": conversation.unread_count + by})

    def clear_unread(self, conversation_id: str) -> None:
        conversation = self._conversations.get(conversation_id)
        if conversation is not None and conversation.unread_count:
            self.update(conversation_id, {"unread_count": 0})

    def record_message(self, message: Message, viewer_id: str | None) -> None:
        """Update the last-message summary and unread counter for a new message."""
        conversation = self._conversations.get(message.conversation_id)
        if conversation is None:
            return
        last = conversation.last_message
        patch: dict[str, Any] = {}
        if last is None or message.created_at >= last.at:
            patch["last_message"] = LastMessage(
                message_id=message.id,
                kind=message.kind,
                preview=_preview(message),
                sender_id=message.sender_id,
                sender_name=message.sender_name,
                at=message.created_at,
            )
            patch["updated_at"] = message.created_at
        if message.sender_id != viewer_id and message.conversation_id != self._active:
            patch["unread_count"] = conversation.unread_count + 1
        if patch:
            self.update(message.conversation_id, patch)

    def apply_presence(self, user_id: str, online: bool, at: datetime | None) -> None:
        for conversation in list(self._conversations.values()):
            if conversation.kind == ConversationKind.PRIVATE and conversation.peer_id == user_id:
                self.update(
                    conversation.id,
                    {"peer_online": online, "peer_last_seen": None if online else at},
                )

    def member_joined(self, conversation_id: str, member: Member) -> None:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return
        patch: dict[str, Any] = {"member_count": conversation.member_count + 1}
        if conversation.members is not None:
            if any(m.user_id == member.user_id for m in conversation.members):
                return
            patch["members"] = conversation.members + (member,)
        self.update(conversation_id, patch)

    def member_left(self, conversation_id: str, user_id: str) -> None:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return
        patch: dict[str, Any] = {"member_count": max(0, conversation.member_count - 1)}
        if conversation.members is not None:
            patch["members"] = tuple(m for m in conversation.members if m.user_id != user_id)
        self.update(conversation_id, patch)

    # -- remote operations -------------------------------------------------

    async def create_group(
        self,
        name: str,
        description: str = "",
        member_ids: list[str] | None = None,
    ) -> Conversation:
        conversation = await self._policy.call(
            "create group",
            lambda: self._transport.create_group(name, description, member_ids),
        )
        self.upsert(conversation)
        return conversation

    async def create_private(self, peer_id: str) -> Conversation:
        for existing in self._conversations.values():
            if existing.kind == ConversationKind.PRIVATE and existing.peer_id == peer_id:
                return existing
        conversation = await self._policy.call(
            "open private conversation",
            lambda: self._transport.create_private(peer_id),
        )
        self.upsert(conversation)
        return conversation

    async def update_settings(self, conversation_id: str, **settings: Any) -> Conversation:
        unknown = set(settings) - _SETTINGS_FIELDS
        if unknown:
            raise ValueError(f"Unknown conversation settings: {sorted(unknown)}")
        previous = self._require(conversation_id)
        updated = self.update(conversation_id, settings) or previous
        try:
            await self._policy.call(
                f"update settings {conversation_id}",
                lambda: self._transport.update_conversation_settings(conversation_id, settings),
            )
        except ChatError as exc:
            self.upsert(previous)
            self._notifier.notify(notice_for(exc, conversation_id=conversation_id))
            raise
        return updated

    async def delete(self, conversation_id: str) -> None:
        self._require(conversation_id)
        try:
            await self._policy.call(
                f"delete conversation {conversation_id}",
                lambda: self._transport.delete_conversation(conversation_id),
            )
        except ChatError as exc:
            if exc.kind != ErrorKind.NOT_FOUND:
                self._notifier.notify(notice_for(exc, conversation_id=conversation_id))
                raise
        self.remove(conversation_id)
