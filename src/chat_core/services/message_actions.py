from __future__ import annotations

import logging

from chat_core.application.dto.notice import Notice, NoticeAction, NoticeLevel
from chat_core.application.exceptions import (
    ChatError,
    ErrorKind,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from chat_core.application.ports.clock import Clock, SystemClock
from chat_core.application.ports.identity import IdentityProvider
from chat_core.application.ports.notifier import Notifier
from chat_core.application.ports.transport import Transport
from chat_core.domain.entities.message import ForwardInfo, Message, toggle_reaction
from chat_core.domain.value_objects.enums import DeleteScope, MessageKind
from chat_core.services.conversation_registry import ConversationRegistry
from chat_core.services.message_store import MessageStore
from chat_core.services.outbound_pipeline import OutboundPipeline
from chat_core.services.retry_policy import RetryPolicy, notice_for

logger = logging.getLogger(__name__)


def _has_reacted(message: Message, kind: str, user_id: str) -> bool:
    reaction = message.reaction(kind)
    return reaction is not None and user_id in reaction.users


class MessageActions:
    """Reply, forward, react, edit, delete and read receipts on existing messages.

    Local state is updated first; a rejected request rolls it back and is
    reported through the notifier.
    """

    def __init__(
        self,
        transport: Transport,
        store: MessageStore,
        pipeline: OutboundPipeline,
        registry: ConversationRegistry,
        identity: IdentityProvider,
        policy: RetryPolicy,
        notifier: Notifier,
        *,
        clock: Clock | None = None,
    ) -> None:
        self._transport = transport
        self._store = store
        self._pipeline = pipeline
        self._registry = registry
        self._identity = identity
        self._policy = policy
        self._notifier = notifier
        self._clock = clock or SystemClock()

    def _require(self, message_id: str, operation: str) -> Message:
        message = self._store.get(message_id, self._identity.user_id)
        if message is None:
            raise NotFoundError("Message not found", operation=operation)
        return message

    def _surface(self, exc: ChatError, message: Message, action: NoticeAction | None = None) -> None:
        logger.warning("%s on %s failed: %r", exc.operation, message.id, exc)
        if exc.kind == ErrorKind.NOT_FOUND:
            self._store.remove(message.id)
        self._notifier.notify(
            notice_for(
                exc,
                action=action,
                conversation_id=message.conversation_id,
                message_id=message.id,
            )
        )

    async def reply(
        self,
        conversation_id: str,
        content: str,
        reply_to_id: str,
        *,
        kind: MessageKind = MessageKind.TEXT,
    ) -> Message:
        return await self._pipeline.send(
            conversation_id,
            content,
            kind=kind,
            conversation_kind=self._registry.kind_of(conversation_id),
            reply_to_id=reply_to_id,
        )

    async def forward(self, message_id: str, target_ids: list[str]) -> list[Message]:
        """Re-send a message into each target conversation, keeping its origin."""
        source = self._require(message_id, "forward message")
        if source.optimistic:
            raise ValidationError("Message has not been sent yet", operation="forward message")
        origin = source.forwarded_from
        info = ForwardInfo(
            message_id=origin.message_id if origin else source.id,
            sender_id=origin.sender_id if origin else source.sender_id,
            sender_name=origin.sender_name if origin else source.sender_name,
            conversation_id=origin.conversation_id if origin else source.conversation_id,
            forwarded_by=self._identity.user_id,
        )
        sent = []
        for target in target_ids:
            sent.append(
                await self._pipeline.send(
                    target,
                    source.content,
                    kind=source.kind,
                    conversation_kind=self._registry.kind_of(target),
                    attachments=source.attachments,
                    forwarded_from=info,
                )
            )
        if sent:
            self._notifier.notify(Notice(level=NoticeLevel.SUCCESS, message="Message forwarded"))
        return sent

    async def edit(self, message_id: str, content: str) -> Message | None:
        original = self._require(message_id, "edit message")
        if original.sender_id != self._identity.user_id:
            raise ForbiddenError("Only the author can edit a message", operation="edit message")
        if original.optimistic:
            raise ValidationError("Message has not been sent yet", operation="edit message")
        if original.content == content:
            return original

        self._store.patch(
            message_id,
            {"content": content, "is_edited": True, "edited_at": self._clock.now()},
        )
        try:
            confirmed = await self._policy.call(
                "edit message", lambda: self._transport.edit_message(message_id, content),
            )
        except ChatError as exc:
            current = self._store.lookup(message_id)
            if exc.kind != ErrorKind.NOT_FOUND and current is not None and current.content == content:
                self._store.revert(
                    message_id,
                    {
                        "content": original.content,
                        "is_edited": original.is_edited,
                        "edited_at": original.edited_at,
                    },
                )
            self._surface(exc, original, NoticeAction.RETRY)
            return None
        if confirmed is not None:
            self._store.append(confirmed)
        return self._store.get(message_id)

    async def delete(self, message_id: str, scope: DeleteScope = DeleteScope.EVERYONE) -> bool:
        viewer = self._identity.user_id
        original = self._require(message_id, "delete message")
        if original.optimistic:
            return await self._pipeline.remove(message_id)

        if scope == DeleteScope.EVERYONE:
            if original.sender_id != viewer:
                raise ForbiddenError(
                    "Only the author can delete for everyone", operation="delete message",
                )
            deleted_for: frozenset[str] = frozenset()
            self._store.remove(message_id)
        else:
            deleted_for = original.deleted_for | {viewer}
            self._store.patch(message_id, {"is_deleted": True, "deleted_for": deleted_for})

        try:
            await self._policy.call(
                "delete message",
                lambda: self._transport.soft_delete_message(message_id, sorted(deleted_for)),
            )
        except ChatError as exc:
            if exc.kind == ErrorKind.NOT_FOUND:
                self._store.remove(message_id)
                return True
            if scope == DeleteScope.EVERYONE:
                if self._store.lookup(message_id) is None:
                    self._store.restore(original)
            else:
                self._store.revert(
                    message_id,
                    {"is_deleted": original.is_deleted, "deleted_for": original.deleted_for},
                )
            self._surface(exc, original, NoticeAction.RETRY)
            return False
        return True

    async def react(self, message_id: str, reaction_kind: str) -> Message | None:
        """Toggle the viewer's reaction; a second call with the same kind undoes it."""
        viewer = self._identity.user_id
        original = self._require(message_id, "react to message")
        toggled = toggle_reaction(original, reaction_kind, viewer)
        self._store.patch(message_id, {"reactions": toggled.reactions})
        reacted = _has_reacted(toggled, reaction_kind, viewer)
        try:
            reactions = await self._policy.call(
                "react to message",
                lambda: self._transport.react(message_id, reaction_kind),
            )
        except ChatError as exc:
            current = self._store.lookup(message_id)
            if (
                exc.kind != ErrorKind.NOT_FOUND
                and current is not None
                and _has_reacted(current, reaction_kind, viewer) == reacted
            ):
                undone = toggle_reaction(current, reaction_kind, viewer)
                self._store.patch(message_id, {"reactions": undone.reactions})
            self._surface(exc, original)
            return None
        if reactions is not None:
            self._store.merge_reactions(message_id, reactions)
        return self._store.get(message_id)

    async def mark_read(
        self,
        conversation_id: str,
        message_ids: list[str] | None = None,
    ) -> int:
        """Record read receipts for the viewer; defaults to every unread message."""
        viewer = self._identity.user_id
        if message_ids is None:
            message_ids = [
                m.id for m in self._store.messages(conversation_id, viewer)
                if not m.optimistic
                and m.sender_id != viewer
                and all(r.user_id != viewer for r in m.read_by)
            ]
        self._registry.clear_unread(conversation_id)
        if not message_ids:
            return 0

        at = self._clock.now()
        for message_id in message_ids:
            self._store.mark_read(message_id, viewer, at)
        try:
            await self._policy.call(
                f"mark read {conversation_id}",
                lambda: self._transport.mark_read(conversation_id, message_ids, at),
            )
        except ChatError as exc:
            if exc.kind == ErrorKind.AUTH:
                self._notifier.notify(notice_for(exc))
            else:
                logger.warning("Read receipts for %s not delivered: %s", conversation_id, exc.kind)
        return len(message_ids)
