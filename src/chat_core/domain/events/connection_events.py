from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar

from chat_core.domain.events.types import EventType


@dataclass(frozen=True, slots=True)
class ConnectionUp:
    type: ClassVar[EventType] = EventType.CONNECTION_UP

    reconnect: bool = False


@dataclass(frozen=True, slots=True)
class ConnectionDown:
    type: ClassVar[EventType] = EventType.CONNECTION_DOWN

    reason: str = ""
