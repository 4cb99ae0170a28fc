"""Outbound queue persisted in Redis, one JSON list per conversation."""
from __future__ import annotations

import json
import logging
from typing import Any

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


class RedisQueueStorage:
    """Implements application.ports.storage.QueueStorage."""

    def __init__(self, redis: aioredis.Redis, prefix: str = "chat_core:outbox") -> None:
        self._redis = redis
        self._prefix = prefix

    @property
    def _index_key(self) -> str:
        return f"{self._prefix}:index"

    def _key(self, conversation_id: str) -> str:
        return f"{self._prefix}:{conversation_id}"

    async def load(self, conversation_id: str) -> list[dict[str, Any]]:
        raw = await self._redis.get(self._key(conversation_id))
        if not raw:
            return []
        try:
            records = json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable outbox for %s", conversation_id)
            return []
        return records if isinstance(records, list) else []

    async def save(self, conversation_id: str, records: list[dict[str, Any]]) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            if records:
                pipe.set(self._key(conversation_id), json.dumps(records))
                pipe.sadd(self._index_key, conversation_id)
            else:
                pipe.delete(self._key(conversation_id))
                pipe.srem(self._index_key, conversation_id)
            await pipe.execute()

    async def conversations(self) -> list[str]:
        members = await self._redis.smembers(self._index_key)
        return sorted(m.decode() if isinstance(m, bytes) else m for m in members)
