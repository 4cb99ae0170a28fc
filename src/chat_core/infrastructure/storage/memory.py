from __future__ import annotations

import copy
from typing import Any


class InMemoryQueueStorage:
    """Process-local queue storage; contents are lost on exit."""

    def __init__(self) -> None:
        self._records: dict[str, list[dict[str, Any]]] = {}

    async def load(self, conversation_id: str) -> list[dict[str, Any]]:
        return copy.deepcopy(self._records.get(conversation_id, []))

    async def save(self, conversation_id: str, records: list[dict[str, Any]]) -> None:
        if records:
            self._records[conversation_id] = copy.deepcopy(records)
        else:
            self._records.pop(conversation_id, None)

    async def conversations(self) -> list[str]:
        return list(self._records)
