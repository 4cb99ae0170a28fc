from __future__ import annotations

from enum import StrEnum


class EventType(StrEnum):
    MESSAGE_RECEIVED = "message.received"
    MESSAGE_UPDATED = "message.updated"
    MESSAGE_DELETED = "message.deleted"
    MESSAGE_READ = "message.read"
    MESSAGE_DELIVERED = "message.delivered"
    REACTION_UPDATED = "reaction.updated"
    TYPING_STARTED = "typing.started"
    TYPING_STOPPED = "typing.stopped"
    PRESENCE_ONLINE = "presence.online"
    PRESENCE_OFFLINE = "presence.offline"
    CONVERSATION_UPDATED = "conversation.updated"
    MEMBER_JOINED = "member.joined"
    MEMBER_LEFT = "member.left"
    CONNECTION_UP = "connection.up"
    CONNECTION_DOWN = "connection.down"
