from __future__ import annotations

from typing import Any, Protocol


class QueueStorage(Protocol):
    """Durable home for outbound records, scoped by conversation id."""

    async def load(self, conversation_id: str) -> list[dict[str, Any]]: ...

    async def save(self, conversation_id: str, records: list[dict[str, Any]]) -> None: ...

    async def conversations(self) -> list[str]: ...
