from __future__ import annotations

import logging
from typing import Callable

from chat_core.application.dto.notice import Notice, NoticeLevel

logger = logging.getLogger(__name__)

_LEVELS = {
    NoticeLevel.INFO: logging.INFO,
    NoticeLevel.SUCCESS: logging.INFO,
    NoticeLevel.WARNING: logging.WARNING,
    NoticeLevel.ERROR: logging.ERROR,
}


class LoggingNotifier:
    """Writes notices to the log and forwards them to any registered listeners."""

    def __init__(self) -> None:
        self._listeners: list[Callable[[Notice], None]] = []

    def subscribe(self, listener: Callable[[Notice], None]) -> None:
        self._listeners.append(listener)

    def notify(self, notice: Notice) -> None:
        suffix = f" [{notice.action}]" if notice.action else ""
        logger.log(_LEVELS[notice.level], "%s%s", notice.message, suffix)
        for listener in list(self._listeners):
            try:
                listener(notice)
            except Exception:
                logger.exception("Notice listener failed")
