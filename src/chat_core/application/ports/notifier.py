from __future__ import annotations

from typing import Protocol

from chat_core.application.dto.notice import Notice


class Notifier(Protocol):
    def notify(self, notice: Notice) -> None: ...
