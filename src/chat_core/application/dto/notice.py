from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from chat_core.application.exceptions import ErrorKind


class NoticeLevel(StrEnum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class NoticeAction(StrEnum):
    RETRY = "retry"
    REMOVE = "remove"
    REFRESH = "refresh"
    LOGIN = "login"


@dataclass(frozen=True, slots=True)
class Notice:
    """Toast-style feedback for the user."""

    level: NoticeLevel
    message: str
    error_kind: ErrorKind | None = None
    action: NoticeAction | None = None
    conversation_id: str | None = None
    message_id: str | None = None
