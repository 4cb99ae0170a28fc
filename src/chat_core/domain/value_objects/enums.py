from __future__ import annotations

from enum import StrEnum


class ConversationKind(StrEnum):
    GROUP = "group"
    PRIVATE = "private"


class MessageKind(StrEnum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    DOCUMENT = "document"
    LOCATION = "location"
    CONTACT = "contact"
    SYSTEM = "system"

    @classmethod
    def parse(cls, raw: str | None) -> MessageKind:
        if raw in cls._value2member_map_:
            return cls(raw)
        return cls.TEXT


class DeliveryStatus(StrEnum):
    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @classmethod
    def parse(cls, raw: str | None) -> DeliveryStatus:
        if raw in cls._value2member_map_:
            return cls(raw)
        return cls.SENT


_STATUS_RANK: dict[DeliveryStatus, int] = {
    DeliveryStatus.QUEUED: 0,
    DeliveryStatus.SENDING: 1,
    DeliveryStatus.SENT: 2,
    DeliveryStatus.DELIVERED: 3,
    DeliveryStatus.READ: 4,
    DeliveryStatus.FAILED: -1,
}


class DeleteScope(StrEnum):
    EVERYONE = "everyone"
    ME = "me"


class Connectivity(StrEnum):
    ONLINE = "online"
    OFFLINE = "offline"
    RESYNCING = "resyncing"
