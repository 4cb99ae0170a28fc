"""Per-conversation ordered message timelines.

The store is the only writer of message rows. Every mutation is synchronous
and publishes exactly one ``StoreChange`` to listeners once it is complete.
"""
from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass, fields, replace
from datetime import datetime
from enum import StrEnum
from typing import Any, Callable, Iterable, Mapping

from chat_core.domain.entities.message import (
    Message,
    Reaction,
    Receipt,
    advance_status,
    normalize_reactions,
    upsert_receipt,
)
from chat_core.domain.value_objects.enums import DeliveryStatus

logger = logging.getLogger(__name__)

_MESSAGE_FIELDS = frozenset(f.name for f in fields(Message))
_IMMUTABLE_FIELDS = frozenset({"id", "conversation_id", "reply_to"})

SortKey = tuple[datetime, int, str]


class ChangeKind(StrEnum):
    ADDED = "added"
    UPDATED = "updated"
    REMOVED = "removed"
    REPLACED = "replaced"
    RESET = "reset"


@dataclass(frozen=True, slots=True)
class StoreChange:
    kind: ChangeKind
    conversation_id: str
    message_id: str | None = None
    previous_id: str | None = None


StoreListener = Callable[[StoreChange], None]


class _Timeline:
    """Sorted sort-keys plus id lookup for one conversation."""

    __slots__ = ("keys", "by_id")

    def __init__(self) -> None:
        self.keys: list[SortKey] = []
        self.by_id: dict[str, Message] = {}

    def insert(self, message: Message) -> None:
        key = message.sort_key
        # Live traffic lands at the tail; only fall back to bisect otherwise.
        if not self.keys or key > self.keys[-1]:
            self.keys.append(key)
        else:
            bisect.insort(self.keys, key)
        self.by_id[message.id] = message

    def discard(self, message: Message) -> None:
        key = message.sort_key
        i = bisect.bisect_left(self.keys, key)
        if i < len(self.keys) and self.keys[i] == key:
            del self.keys[i]
        self.by_id.pop(message.id, None)

    def ordered(self) -> list[Message]:
        return [self.by_id[k[2]] for k in self.keys]

    def __len__(self) -> int:
        return len(self.keys)


def _merge(existing: Message, incoming: Message, *, retry: bool = False) -> Message:
    """Fold a fresher copy of a message into the stored one."""
    status = advance_status(existing.status, incoming.status, retry=retry)
    edited_at = existing.edited_at
    content = existing.content
    if incoming.edited_at is not None and (edited_at is None or incoming.edited_at >= edited_at):
        edited_at = incoming.edited_at
        content = incoming.content
    elif edited_at is None:
        content = incoming.content

    read_by = existing.read_by
    for r in incoming.read_by:
        read_by = upsert_receipt(read_by, r)
    delivered_to = existing.delivered_to
    for r in incoming.delivered_to:
        delivered_to = upsert_receipt(delivered_to, r)

    return replace(
        incoming,
        conversation_id=existing.conversation_id,
        content=content,
        status=status,
        edited_at=edited_at,
        is_edited=existing.is_edited or incoming.is_edited,
        read_by=read_by,
        delivered_to=delivered_to,
        reply_to=existing.reply_to or incoming.reply_to,
        correlation_token=existing.correlation_token or incoming.correlation_token,
        optimistic=existing.optimistic and incoming.optimistic,
    )


def _hidden_globally(message: Message) -> bool:
    return message.is_deleted and not message.deleted_for


class MessageStore:
    def __init__(self, viewer_id: str | None = None) -> None:
        self.viewer_id = viewer_id
        self._timelines: dict[str, _Timeline] = {}
        self._index: dict[str, str] = {}
        self._tokens: dict[str, str] = {}
        self._listeners: list[StoreListener] = []

    # -- observers ---------------------------------------------------------

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _publish(self, change: StoreChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("Store listener failed on %s", change.kind)

    # -- reads -------------------------------------------------------------

    def has_conversation(self, conversation_id: str) -> bool:
        return conversation_id in self._timelines

    def conversation_ids(self) -> list[str]:
        return list(self._timelines)

    def contains(self, message_id: str) -> bool:
        return message_id in self._index

    def get(self, message_id: str, viewer: str | None = None) -> Message | None:
        """Return the message if ``viewer`` (default: the store's viewer) may see it."""
        message = self._raw(message_id)
        if message is None:
            return None
        if not message.is_visible_to(viewer if viewer is not None else self.viewer_id):
            return None
        return message

    def lookup(self, message_id: str) -> Message | None:
        """Return the stored record regardless of who may see it."""
        return self._raw(message_id)

    def find_by_correlation(self, token: str) -> Message | None:
        message_id = self._tokens.get(token)
        return self._raw(message_id) if message_id else None

    def messages(self, conversation_id: str, viewer: str | None = None) -> list[Message]:
        timeline = self._timelines.get(conversation_id)
        if timeline is None:
            return []
        who = viewer if viewer is not None else self.viewer_id
        return [m for m in timeline.ordered() if m.is_visible_to(who)]

    def oldest_confirmed(self, conversation_id: str) -> Message | None:
        timeline = self._timelines.get(conversation_id)
        if timeline is None:
            return None
        for key in timeline.keys:
            message = timeline.by_id[key[2]]
            if not message.optimistic:
                return message
        return None

    def size(self, conversation_id: str) -> int:
        timeline = self._timelines.get(conversation_id)
        return len(timeline) if timeline else 0

    def _raw(self, message_id: str) -> Message | None:
        conversation_id = self._index.get(message_id)
        if conversation_id is None:
            return None
        return self._timelines[conversation_id].by_id.get(message_id)

    # -- internal mutation helpers ----------------------------------------

    def _timeline(self, conversation_id: str) -> _Timeline:
        timeline = self._timelines.get(conversation_id)
        if timeline is None:
            timeline = self._timelines[conversation_id] = _Timeline()
        return timeline

    def _attach(self, message: Message) -> None:
        self._timeline(message.conversation_id).insert(message)
        self._index[message.id] = message.conversation_id
        if message.correlation_token:
            self._tokens[message.correlation_token] = message.id

    def _detach(self, message: Message) -> None:
        timeline = self._timelines.get(message.conversation_id)
        if timeline is not None:
            timeline.discard(message)
        self._index.pop(message.id, None)
        if message.correlation_token and self._tokens.get(message.correlation_token) == message.id:
            del self._tokens[message.correlation_token]

    def _swap(self, old: Message, new: Message) -> None:
        if old.sort_key == new.sort_key:
            self._timelines[old.conversation_id].by_id[old.id] = new
            if new.correlation_token:
                self._tokens[new.correlation_token] = new.id
        else:
            self._detach(old)
            self._attach(new)

    def _upsert(self, message: Message) -> ChangeKind | None:
        existing = self._raw(message.id)
        if existing is None and message.optimistic and self._superseded(message):
            return None
        if _hidden_globally(message):
            if existing is not None:
                self._detach(existing)
                return ChangeKind.REMOVED
            return None
        if existing is None:
            self._drop_optimistic_twin(message)
            self._attach(message)
            return ChangeKind.ADDED
        self._swap(existing, _merge(existing, message))
        return ChangeKind.UPDATED

    def _drop_optimistic_twin(self, message: Message) -> None:
        # A server copy carrying a pending record's token supersedes that record.
        if message.optimistic or not message.correlation_token:
            return
        twin = self._raw(self._tokens.get(message.correlation_token, ""))
        if twin is not None and twin.optimistic and twin.id != message.id:
            logger.debug("Dropping %s, superseded by %s", twin.id, message.id)
            self._detach(twin)

    def _superseded(self, message: Message) -> bool:
        if not message.correlation_token:
            return False
        return self._tokens.get(message.correlation_token, message.id) != message.id

    # -- mutations ---------------------------------------------------------

    def load_initial(self, conversation_id: str, messages: Iterable[Message]) -> None:
        """Reset a conversation to ``messages``, keeping local optimistic records."""
        previous = self._timelines.get(conversation_id)
        pending = [m for m in previous.by_id.values() if m.optimistic] if previous else []
        if previous is not None:
            for m in list(previous.by_id.values()):
                self._detach(m)
        self._timelines[conversation_id] = _Timeline()
        for m in messages:
            if m.conversation_id == conversation_id:
                self._upsert(m)
        for m in pending:
            if not self.contains(m.id) and not self._superseded(m):
                self._attach(m)
        self._publish(StoreChange(ChangeKind.RESET, conversation_id))

    def prepend(self, conversation_id: str, page: Iterable[Message]) -> int:
        """Merge an older page; returns how many records were new."""
        return self.merge_page(conversation_id, page)

    def merge_page(self, conversation_id: str, page: Iterable[Message]) -> int:
        self._timeline(conversation_id)
        added = 0
        for m in page:
            if m.conversation_id != conversation_id:
                continue
            if self._upsert(m) == ChangeKind.ADDED:
                added += 1
        self._publish(StoreChange(ChangeKind.RESET, conversation_id))
        return added

    def append(self, message: Message) -> bool:
        """Insert ``message`` at its ordered position.

        A message whose id is already stored is patched in place instead and
        ``False`` is returned.
        """
        change = self._upsert(message)
        if change is not None:
            self._publish(StoreChange(change, message.conversation_id, message.id))
        return change == ChangeKind.ADDED

    def replace(self, old_id: str, message: Message) -> Message:
        """Atomically swap a temp record for its confirmed counterpart.

        If the confirmed id is already present (the echo won the race) the
        temp record is dropped and the stored record is patched.
        """
        old = self._raw(old_id)
        token = message.correlation_token or (old.correlation_token if old else None)
        confirmed = replace(
            message,
            optimistic=False,
            correlation_token=token,
            reply_to=message.reply_to or (old.reply_to if old else None),
        )
        if old is not None and old.id != confirmed.id:
            self._detach(old)
        existing = self._raw(confirmed.id)
        if existing is None:
            self._attach(confirmed)
            result = confirmed
        else:
            result = _merge(existing, confirmed)
            if existing.optimistic:
                result = replace(result, optimistic=False)
            self._swap(existing, result)
        self._publish(
            StoreChange(ChangeKind.REPLACED, result.conversation_id, result.id, previous_id=old_id)
        )
        return result

    def patch(
        self,
        message_id: str,
        changes: Mapping[str, Any],
        *,
        retry: bool = False,
    ) -> Message | None:
        existing = self._raw(message_id)
        if existing is None:
            return None
        updates: dict[str, Any] = {}
        for name, value in changes.items():
            if name not in _MESSAGE_FIELDS or name in _IMMUTABLE_FIELDS:
                logger.debug("Ignoring patch of field %r on %s", name, message_id)
                continue
            if name == "status":
                value = advance_status(existing.status, DeliveryStatus(value), retry=retry)
            elif name == "edited_at":
                if value is None or (existing.edited_at is not None and value < existing.edited_at):
                    continue
            elif name == "content" and "edited_at" in changes:
                new_at = changes["edited_at"]
                if existing.edited_at is not None and (new_at is None or new_at < existing.edited_at):
                    continue
            elif name == "reactions":
                value = normalize_reactions(tuple(value))
            elif name == "deleted_for":
                value = frozenset(value)
            updates[name] = value
        if not updates:
            return existing
        patched = replace(existing, **updates)
        if _hidden_globally(patched):
            self._detach(existing)
            self._publish(StoreChange(ChangeKind.REMOVED, existing.conversation_id, message_id))
            return None
        self._swap(existing, patched)
        self._publish(StoreChange(ChangeKind.UPDATED, patched.conversation_id, message_id))
        return patched

    def remove(self, message_id: str) -> Message | None:
        existing = self._raw(message_id)
        if existing is None:
            return None
        self._detach(existing)
        self._publish(StoreChange(ChangeKind.REMOVED, existing.conversation_id, message_id))
        return existing

    def restore(self, message: Message) -> None:
        """Put back an exact earlier copy of a record, bypassing merge rules.

        Used to roll back a local mutation the server rejected.
        """
        existing = self._raw(message.id)
        if existing is None:
            self._attach(message)
            kind = ChangeKind.ADDED
        else:
            self._swap(existing, message)
            kind = ChangeKind.UPDATED
        self._publish(StoreChange(kind, message.conversation_id, message.id))

    def revert(self, message_id: str, values: Mapping[str, Any]) -> Message | None:
        """Put back earlier values of the given fields, bypassing merge rules.

        Fields not named in ``values`` keep whatever arrived in the meantime.
        """
        existing = self._raw(message_id)
        if existing is None:
            return None
        updates = {
            name: value for name, value in values.items()
            if name in _MESSAGE_FIELDS and name not in _IMMUTABLE_FIELDS
        }
        reverted = replace(existing, **updates)
        self._swap(existing, reverted)
        self._publish(StoreChange(ChangeKind.UPDATED, reverted.conversation_id, message_id))
        return reverted

    def merge_reactions(self, message_id: str, reactions: Iterable[Reaction]) -> Message | None:
        """Overwrite the reaction set; the server copy is authoritative."""
        return self.patch(message_id, {"reactions": tuple(reactions)})

    def mark_read(self, message_id: str, viewer: str, at: datetime) -> Message | None:
        existing = self._raw(message_id)
        if existing is None:
            return None
        changes: dict[str, Any] = {
            "read_by": upsert_receipt(existing.read_by, Receipt(user_id=viewer, at=at)),
        }
        if viewer != existing.sender_id and not existing.optimistic:
            changes["status"] = DeliveryStatus.READ
        return self.patch(message_id, changes)

    def mark_delivered(self, message_id: str, user_id: str, at: datetime) -> Message | None:
        existing = self._raw(message_id)
        if existing is None:
            return None
        changes: dict[str, Any] = {
            "delivered_to": upsert_receipt(existing.delivered_to, Receipt(user_id=user_id, at=at)),
        }
        if user_id != existing.sender_id and not existing.optimistic:
            changes["status"] = DeliveryStatus.DELIVERED
        return self.patch(message_id, changes)

    def drop(self, conversation_id: str) -> None:
        timeline = self._timelines.pop(conversation_id, None)
        if timeline is None:
            return
        for m in timeline.by_id.values():
            self._index.pop(m.id, None)
            if m.correlation_token:
                self._tokens.pop(m.correlation_token, None)
        self._publish(StoreChange(ChangeKind.RESET, conversation_id))
