"""Wire models: server JSON in both legacy and current shapes, normalized once.

Nothing past this module sees ``_id``, ``timestamp`` or ``messageType``.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, field_validator

from chat_core.application.dto.message import OutboundPayload
from chat_core.domain.entities.conversation import Conversation, LastMessage, Member
from chat_core.domain.entities.message import (
    Attachment,
    ForwardInfo,
    Message,
    Reaction,
    Receipt,
    ReplySnapshot,
    normalize_reactions,
)
from chat_core.domain.events import (
    ChatEvent,
    ConversationUpdated,
    MemberJoined,
    MemberLeft,
    MessageDeleted,
    MessageDelivered,
    MessageRead,
    MessageReceived,
    MessageUpdated,
    PresenceChanged,
    ReactionUpdated,
    TypingStarted,
    TypingStopped,
)
from chat_core.domain.value_objects.enums import ConversationKind, DeliveryStatus, MessageKind

UNKNOWN_SENDER = "Unknown User"
PRIVATE_FALLBACK_NAME = "Private Chat"


def _as_id(value: Any) -> Any:
    if isinstance(value, dict):
        value = value.get("id") or value.get("_id") or value.get("userId")
    if isinstance(value, int):
        return str(value)
    return value


def _as_list(value: Any) -> Any:
    return [] if value is None else value


def _utc(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


WireId = Annotated[str, BeforeValidator(_as_id)]


class _WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("*", mode="after")
    @classmethod
    def _aware_datetimes(cls, value: Any) -> Any:
        return _utc(value)


class WireAttachment(_WireModel):
    id: WireId = Field("", validation_alias=AliasChoices("id", "_id", "fileId", "url"))
    kind: str = Field("", validation_alias=AliasChoices("type", "kind", "mimeType"))
    size: int = 0
    uri: str = Field("", validation_alias=AliasChoices("uri", "url"))
    thumbnails: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("thumbnails", "thumbnail"),
    )

    @field_validator("thumbnails", mode="before")
    @classmethod
    def _one_or_many(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return _as_list(value)

    def to_domain(self) -> Attachment:
        return Attachment(
            id=self.id or self.uri,
            kind=self.kind,
            size=self.size,
            uri=self.uri,
            thumbnails=tuple(self.thumbnails),
        )


class WireReceipt(_WireModel):
    user_id: WireId = Field(validation_alias=AliasChoices("userId", "user_id", "user"))
    at: datetime | None = Field(
        None, validation_alias=AliasChoices("readAt", "deliveredAt", "at", "timestamp"),
    )

    @classmethod
    def coerce(cls, value: Any) -> Any:
        if isinstance(value, (str, int)):
            return {"userId": value}
        return value

    def to_domain(self, default_at: datetime) -> Receipt:
        return Receipt(user_id=self.user_id, at=self.at or default_at)


class WireReaction(_WireModel):
    kind: str = Field(validation_alias=AliasChoices("type", "kind", "emoji", "reactionType"))
    users: list[WireId] = Field(default_factory=list)

    @field_validator("users", mode="before")
    @classmethod
    def _users(cls, value: Any) -> Any:
        return _as_list(value)

    def to_domain(self) -> Reaction:
        # A wire ``count`` is ignored; the user set is authoritative.
        return Reaction(kind=self.kind, users=frozenset(self.users))


class WireReplyTo(_WireModel):
    message_id: WireId = Field(validation_alias=AliasChoices("messageId", "id", "_id"))
    content: str = ""
    sender_id: WireId = Field("", validation_alias=AliasChoices("senderId", "sender"))
    sender_name: str = Field(UNKNOWN_SENDER, validation_alias="senderName")
    kind: str = Field("text", validation_alias=AliasChoices("type", "messageType"))

    def to_domain(self) -> ReplySnapshot:
        return ReplySnapshot(
            message_id=self.message_id,
            content=self.content,
            sender_id=self.sender_id,
            sender_name=self.sender_name,
            kind=MessageKind.parse(self.kind),
        )


class WireForwardedFrom(_WireModel):
    message_id: WireId = Field(validation_alias=AliasChoices("messageId", "id", "_id"))
    sender_id: WireId = Field("", validation_alias=AliasChoices("senderId", "sender"))
    sender_name: str = Field("", validation_alias="senderName")
    conversation_id: WireId | None = Field(
        None, validation_alias=AliasChoices("chatId", "conversationId", "groupId"),
    )
    forwarded_by: WireId | None = Field(None, validation_alias="forwardedBy")

    def to_domain(self) -> ForwardInfo:
        return ForwardInfo(
            message_id=self.message_id,
            sender_id=self.sender_id,
            sender_name=self.sender_name,
            conversation_id=self.conversation_id,
            forwarded_by=self.forwarded_by,
        )


class WireMessage(_WireModel):
    id: WireId = Field(validation_alias=AliasChoices("id", "_id"))
    chat_id: WireId | None = Field(
        None, validation_alias=AliasChoices("chatId", "conversationId", "groupId"),
    )
    sender_id: WireId = Field("", validation_alias=AliasChoices("senderId", "sender"))
    sender_name: str = Field(UNKNOWN_SENDER, validation_alias="senderName")
    sender_avatar: str | None = Field(None, validation_alias="senderAvatar")
    content: str = ""
    kind: str = Field("text", validation_alias=AliasChoices("type", "messageType"))
    created_at: datetime = Field(validation_alias=AliasChoices("createdAt", "timestamp"))
    status: str = "sent"
    delivered_to: list[WireReceipt] = Field(default_factory=list, validation_alias="deliveredTo")
    read_by: list[WireReceipt] = Field(default_factory=list, validation_alias="readBy")
    reactions: list[WireReaction] = Field(default_factory=list)
    reply_to: WireReplyTo | None = Field(None, validation_alias="replyTo")
    attachments: list[WireAttachment] = Field(
        default_factory=list, validation_alias=AliasChoices("attachments", "media"),
    )
    is_deleted: bool = Field(False, validation_alias="isDeleted")
    deleted_for: list[WireId] = Field(default_factory=list, validation_alias="deletedFor")
    is_edited: bool = Field(False, validation_alias="isEdited")
    edited_at: datetime | None = Field(None, validation_alias="editedAt")
    forwarded_from: WireForwardedFrom | None = Field(None, validation_alias="forwardedFrom")
    moderation_status: str | None = Field(None, validation_alias="moderationStatus")
    correlation_token: str | None = Field(
        None, validation_alias=AliasChoices("correlationToken", "clientMessageId"),
    )

    @field_validator("content", "sender_name", "kind", "status", mode="before")
    @classmethod
    def _null_to_default(cls, value: Any, info: Any) -> Any:
        if value is None:
            return cls.model_fields[info.field_name].default
        return value

    @field_validator(
        "delivered_to", "read_by", "reactions", "attachments", "deleted_for", mode="before",
    )
    @classmethod
    def _null_to_empty(cls, value: Any) -> Any:
        return _as_list(value)

    @field_validator("delivered_to", "read_by", mode="before")
    @classmethod
    def _bare_receipts(cls, value: Any) -> Any:
        return [WireReceipt.coerce(v) for v in _as_list(value)]

    def to_domain(self, conversation_id: str | None = None) -> Message:
        return Message(
            id=self.id,
            conversation_id=self.chat_id or conversation_id or "",
            sender_id=self.sender_id,
            sender_name=self.sender_name or UNKNOWN_SENDER,
            sender_avatar=self.sender_avatar,
            content=self.content,
            created_at=self.created_at,
            kind=MessageKind.parse(self.kind),
            attachments=tuple(a.to_domain() for a in self.attachments),
            reply_to=self.reply_to.to_domain() if self.reply_to else None,
            forwarded_from=self.forwarded_from.to_domain() if self.forwarded_from else None,
            reactions=normalize_reactions([r.to_domain() for r in self.reactions]),
            status=DeliveryStatus.parse(self.status),
            delivered_to=tuple(r.to_domain(self.created_at) for r in self.delivered_to),
            read_by=tuple(r.to_domain(self.created_at) for r in self.read_by),
            is_edited=self.is_edited or self.edited_at is not None,
            edited_at=self.edited_at,
            is_deleted=self.is_deleted,
            deleted_for=frozenset(self.deleted_for),
            correlation_token=self.correlation_token,
            moderation_status=self.moderation_status,
        )


class WireMember(_WireModel):
    user_id: WireId = Field(validation_alias=AliasChoices("userId", "id", "_id"))
    name: str = Field("", validation_alias=AliasChoices("name", "userName", "username", "displayName"))

    @classmethod
    def coerce(cls, value: Any) -> Any:
        if isinstance(value, (str, int)):
            return {"userId": value}
        return value

    def to_domain(self) -> Member:
        return Member(user_id=self.user_id, name=self.name or "")


class WireLastMessage(_WireModel):
    id: WireId = Field(validation_alias=AliasChoices("id", "_id"))
    content: str | None = ""
    kind: str = Field("text", validation_alias=AliasChoices("type", "messageType"))
    sender_id: WireId = Field("", validation_alias="senderId")
    sender_name: str | None = Field("", validation_alias="senderName")
    at: datetime = Field(validation_alias=AliasChoices("timestamp", "createdAt"))

    def to_domain(self) -> LastMessage:
        return LastMessage(
            message_id=self.id,
            kind=MessageKind.parse(self.kind),
            preview=self.content or "",
            sender_id=self.sender_id,
            sender_name=self.sender_name or "",
            at=self.at,
        )


class WireConversation(_WireModel):
    id: WireId = Field(validation_alias=AliasChoices("id", "_id"))
    name: str | None = None
    description: str | None = ""
    participant_id: WireId | None = Field(None, validation_alias="participantId")
    participant_name: str | None = Field(None, validation_alias="participantName")
    is_online: bool = Field(False, validation_alias="isOnline")
    last_seen: datetime | None = Field(None, validation_alias="lastSeen")
    member_count: int | None = Field(None, validation_alias="memberCount")
    members: list[WireMember] | None = None
    last_message: WireLastMessage | None = Field(None, validation_alias="lastMessage")
    unread_count: int = Field(0, validation_alias="unreadCount")
    muted: bool = Field(False, validation_alias=AliasChoices("isMuted", "muted"))
    archived: bool = Field(False, validation_alias=AliasChoices("isArchived", "archived"))
    pinned: bool = Field(False, validation_alias=AliasChoices("isPinned", "pinned"))
    created_at: datetime | None = Field(None, validation_alias="createdAt")
    updated_at: datetime | None = Field(None, validation_alias="updatedAt")

    @field_validator("members", mode="before")
    @classmethod
    def _bare_members(cls, value: Any) -> Any:
        if value is None:
            return None
        return [WireMember.coerce(v) for v in value]

    @field_validator("unread_count", mode="before")
    @classmethod
    def _unread(cls, value: Any) -> Any:
        return value or 0

    def to_domain(self, kind: ConversationKind) -> Conversation:
        members = tuple(m.to_domain() for m in self.members) if self.members else None
        if kind == ConversationKind.PRIVATE:
            name = self.participant_name or self.name or PRIVATE_FALLBACK_NAME
        else:
            name = self.name or ""
        return Conversation(
            id=self.id,
            kind=kind,
            name=name,
            description=self.description or "",
            peer_id=self.participant_id,
            peer_online=self.is_online,
            peer_last_seen=self.last_seen,
            member_count=self.member_count or (len(members) if members else 0),
            members=members,
            last_message=self.last_message.to_domain() if self.last_message else None,
            unread_count=self.unread_count,
            muted=self.muted,
            archived=self.archived,
            pinned=self.pinned,
            created_at=self.created_at,
            updated_at=self.updated_at or self.created_at,
        )


class WireMessagePatch(_WireModel):
    """The ``updates`` object of ``message_updated``, in canonical field names."""

    content: str | None = None
    is_edited: bool | None = Field(None, validation_alias="isEdited")
    edited_at: datetime | None = Field(None, validation_alias="editedAt")
    status: str | None = None
    is_deleted: bool | None = Field(None, validation_alias="isDeleted")
    deleted_for: list[WireId] | None = Field(None, validation_alias="deletedFor")
    reactions: list[WireReaction] | None = None
    moderation_status: str | None = Field(None, validation_alias="moderationStatus")

    def to_fields(self) -> dict[str, Any]:
        fields = self.model_dump(exclude_unset=True, exclude={"reactions"})
        if "status" in fields:
            fields["status"] = DeliveryStatus.parse(fields["status"])
        if "deleted_for" in fields:
            fields["deleted_for"] = frozenset(fields["deleted_for"] or ())
        if self.reactions is not None:
            fields["reactions"] = tuple(r.to_domain() for r in self.reactions)
        if fields.get("edited_at") is not None:
            fields.setdefault("is_edited", True)
        return fields


class WireConversationPatch(_WireModel):
    name: str | None = None
    description: str | None = None
    muted: bool | None = Field(None, validation_alias=AliasChoices("isMuted", "muted"))
    archived: bool | None = Field(None, validation_alias=AliasChoices("isArchived", "archived"))
    pinned: bool | None = Field(None, validation_alias=AliasChoices("isPinned", "pinned"))
    member_count: int | None = Field(None, validation_alias="memberCount")
    updated_at: datetime | None = Field(None, validation_alias="updatedAt")

    def to_patch(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


# -- event translation -------------------------------------------------------


def _chat_id(data: dict[str, Any]) -> str:
    return str(_as_id(data.get("chatId") or data.get("groupId") or data.get("conversationId") or ""))


def _parse_message_received(data: dict[str, Any]) -> ChatEvent:
    raw = data.get("message", data)
    message = WireMessage.model_validate(raw).to_domain(_chat_id(data) or None)
    return MessageReceived(conversation_id=message.conversation_id, message=message)


def _parse_message_updated(data: dict[str, Any]) -> ChatEvent:
    patch = WireMessagePatch.model_validate(data.get("updates") or {})
    return MessageUpdated(
        conversation_id=_chat_id(data),
        message_id=str(_as_id(data["messageId"])),
        fields=patch.to_fields(),
    )


def _parse_message_deleted(data: dict[str, Any]) -> ChatEvent:
    return MessageDeleted(
        conversation_id=_chat_id(data),
        message_id=str(_as_id(data["messageId"])),
        deleted_for=frozenset(str(_as_id(u)) for u in data.get("deletedFor") or ()),
    )


def _parse_message_read(data: dict[str, Any]) -> ChatEvent:
    receipt = WireReceipt.model_validate(WireReceipt.coerce(data["readBy"]))
    return MessageRead(
        conversation_id=_chat_id(data),
        message_id=str(_as_id(data["messageId"])),
        receipt=receipt.to_domain(datetime.now(timezone.utc)),
    )


def _parse_message_delivered(data: dict[str, Any]) -> ChatEvent:
    raw = data.get("deliveredTo") or data.get("userId")
    receipt = None
    if raw:
        wire = WireReceipt.model_validate(WireReceipt.coerce(raw))
        receipt = wire.to_domain(datetime.now(timezone.utc))
    return MessageDelivered(
        conversation_id=_chat_id(data),
        message_id=str(_as_id(data["messageId"])),
        receipt=receipt,
    )


def _parse_reaction_updated(data: dict[str, Any]) -> ChatEvent:
    reactions = [WireReaction.model_validate(r).to_domain() for r in data.get("reactions") or ()]
    return ReactionUpdated(
        conversation_id=_chat_id(data),
        message_id=str(_as_id(data["messageId"])),
        reactions=normalize_reactions(reactions),
    )


def _parse_presence(data: dict[str, Any], online: bool) -> ChatEvent:
    last_seen = None
    if not online and data.get("lastSeen"):
        last_seen = _utc(datetime.fromisoformat(str(data["lastSeen"]).replace("Z", "+00:00")))
    return PresenceChanged(user_id=str(_as_id(data["userId"])), online=online, last_seen=last_seen)


def _parse_member_joined(data: dict[str, Any]) -> ChatEvent:
    raw = data.get("user") or {"userId": data.get("userId"), "name": data.get("userName", "")}
    member = WireMember.model_validate(WireMember.coerce(raw)).to_domain()
    return MemberJoined(conversation_id=_chat_id(data), member=member)


def parse_event(name: str, data: dict[str, Any]) -> ChatEvent | None:
    """Translate a server event frame into a canonical event.

    Returns None for event names the core does not consume. Malformed
    payloads raise ``pydantic.ValidationError`` or ``KeyError``.
    """
    if name in ("new_message", "message_received"):
        return _parse_message_received(data)
    if name == "message_updated":
        return _parse_message_updated(data)
    if name == "message_deleted":
        return _parse_message_deleted(data)
    if name == "message_read":
        return _parse_message_read(data)
    if name in ("message_delivered", "private_message_delivered"):
        return _parse_message_delivered(data)
    if name in ("reaction_updated", "message_reaction_updated"):
        return _parse_reaction_updated(data)
    if name == "user_typing":
        return TypingStarted(
            conversation_id=_chat_id(data),
            user_id=str(_as_id(data["userId"])),
            user_name=data.get("userName") or "",
        )
    if name == "user_stopped_typing":
        return TypingStopped(conversation_id=_chat_id(data), user_id=str(_as_id(data["userId"])))
    if name == "user_online":
        return _parse_presence(data, True)
    if name == "user_offline":
        return _parse_presence(data, False)
    if name == "chat_updated":
        patch = WireConversationPatch.model_validate(data.get("updates") or {})
        return ConversationUpdated(conversation_id=_chat_id(data), patch=patch.to_patch())
    if name == "user_joined":
        return _parse_member_joined(data)
    if name == "user_left":
        return MemberLeft(conversation_id=_chat_id(data), user_id=str(_as_id(data["userId"])))
    return None


# -- outbound bodies ---------------------------------------------------------


def send_body(payload: OutboundPayload) -> dict[str, Any]:
    body: dict[str, Any] = {
        "content": payload.content,
        "messageType": payload.kind.value,
        "correlationToken": payload.correlation_token,
    }
    if payload.attachment_ids:
        body["attachments"] = list(payload.attachment_ids)
    if payload.reply_to_id:
        body["replyToId"] = payload.reply_to_id
    if payload.forwarded_from is not None:
        origin = payload.forwarded_from
        body["isForwarded"] = True
        body["forwardedFrom"] = {
            "messageId": origin.message_id,
            "senderId": origin.sender_id,
            "senderName": origin.sender_name,
            "chatId": origin.conversation_id,
            "forwardedBy": origin.forwarded_by,
        }
    return body


_SETTINGS_WIRE_NAMES = {
    "muted": "isMuted",
    "archived": "isArchived",
    "pinned": "isPinned",
    "name": "name",
    "description": "description",
}


def settings_body(settings: dict[str, Any]) -> dict[str, Any]:
    return {_SETTINGS_WIRE_NAMES.get(k, k): v for k, v in settings.items()}
