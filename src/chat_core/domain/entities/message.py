from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime

from chat_core.domain.value_objects.enums import DeliveryStatus, MessageKind


@dataclass(frozen=True, slots=True)
class Attachment:
    id: str
    kind: str
    size: int = 0
    uri: str = ""
    thumbnails: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ReplySnapshot:
    """Denormalized copy of the replied-to message, taken at reply time."""

    message_id: str
    content: str
    sender_id: str
    sender_name: str
    kind: MessageKind = MessageKind.TEXT


@dataclass(frozen=True, slots=True)
class ForwardInfo:
    message_id: str
    sender_id: str
    sender_name: str = ""
    conversation_id: str | None = None
    forwarded_by: str | None = None


@dataclass(frozen=True, slots=True)
class Reaction:
    kind: str
    users: frozenset[str] = frozenset()

    @property
    def count(self) -> int:
        return len(self.users)


@dataclass(frozen=True, slots=True)
class Receipt:
    user_id: str
    at: datetime


@dataclass(frozen=True, slots=True)
class Message:
    id: str
    conversation_id: str
    sender_id: str
    content: str
    created_at: datetime
    kind: MessageKind = MessageKind.TEXT
    sender_name: str = ""
    sender_avatar: str | None = None
    attachments: tuple[Attachment, ...] = ()
    reply_to: ReplySnapshot | None = None
    forwarded_from: ForwardInfo | None = None
    reactions: tuple[Reaction, ...] = ()
    status: DeliveryStatus = DeliveryStatus.SENT
    delivered_to: tuple[Receipt, ...] = ()
    read_by: tuple[Receipt, ...] = ()
    is_edited: bool = False
    edited_at: datetime | None = None
    is_deleted: bool = False
    deleted_for: frozenset[str] = field(default_factory=frozenset)
    correlation_token: str | None = None
    moderation_status: str | None = None
    optimistic: bool = False

    @property
    def sort_key(self) -> tuple[datetime, int, str]:
        # Optimistic records sort after server records sharing a timestamp.
        return (self.created_at, 1 if self.optimistic else 0, self.id)

    def is_visible_to(self, viewer: str | None) -> bool:
        if not self.is_deleted:
            return True
        if not self.deleted_for:
            return False
        return viewer is None or viewer not in self.deleted_for

    def reaction(self, kind: str) -> Reaction | None:
        for r in self.reactions:
            if r.kind == kind:
                return r
        return None


def advance_status(
    current: DeliveryStatus,
    new: DeliveryStatus,
    *,
    retry: bool = False,
) -> DeliveryStatus:
    """Return the status after applying ``new`` to ``current``.

    Statuses only move forward along queued -> sending -> sent -> delivered
    -> read. ``failed`` is reachable from queued/sending and left only by an
    explicit retry (back to sending). A server confirmation of a failed send
    goes through ``MessageStore.replace``, which swaps in the server record
    rather than advancing the failed one. Disallowed transitions keep
    ``current``.
    """
    if new == current:
        return current
    if current == DeliveryStatus.FAILED:
        if retry and new in (DeliveryStatus.SENDING, DeliveryStatus.QUEUED):
            return new
        return current
    if new == DeliveryStatus.FAILED:
        if current in (DeliveryStatus.QUEUED, DeliveryStatus.SENDING):
            return new
        return current
    if retry and current == DeliveryStatus.SENDING and new == DeliveryStatus.QUEUED:
        return new
    return new if new.rank > current.rank else current


def toggle_reaction(message: Message, kind: str, user_id: str) -> Message:
    """Add or remove ``user_id``'s reaction ``kind``; empty kinds are dropped."""
    reactions: list[Reaction] = []
    found = False
    for r in message.reactions:
        if r.kind != kind:
            reactions.append(r)
            continue
        found = True
        users = r.users - {user_id} if user_id in r.users else r.users | {user_id}
        if users:
            reactions.append(Reaction(kind=kind, users=users))
    if not found:
        reactions.append(Reaction(kind=kind, users=frozenset({user_id})))
    return replace(message, reactions=tuple(reactions))


def normalize_reactions(reactions: list[Reaction] | tuple[Reaction, ...]) -> tuple[Reaction, ...]:
    """Collapse duplicate kinds and drop empty ones, keeping first-seen order."""
    merged: dict[str, frozenset[str]] = {}
    for r in reactions:
        merged[r.kind] = merged.get(r.kind, frozenset()) | r.users
    return tuple(Reaction(kind=k, users=u) for k, u in merged.items() if u)


def upsert_receipt(receipts: tuple[Receipt, ...], receipt: Receipt) -> tuple[Receipt, ...]:
    kept = tuple(r for r in receipts if r.user_id != receipt.user_id)
    return kept + (receipt,)
