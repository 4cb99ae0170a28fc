"""Ephemeral presence and typing state. Nothing here is persisted."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from chat_core.application.ports.clock import Clock, Sleeper, SystemClock
from chat_core.application.ports.transport import Transport

logger = logging.getLogger(__name__)

TypingListener = Callable[[str], None]


@dataclass(frozen=True, slots=True)
class TypingEntry:
    user_id: str
    name: str
    expires_at: datetime


class TypingTracker:
    """Who is typing where, with inactivity expiry.

    Entries are swept lazily on read and by a periodic tick once ``start``
    has been called.
    """

    def __init__(
        self,
        *,
        ttl: timedelta = timedelta(seconds=3),
        sweep_interval: float = 1.0,
        clock: Clock | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._ttl = ttl
        self._sweep_interval = sweep_interval
        self._clock = clock or SystemClock()
        self._sleep = sleep
        self._entries: dict[str, dict[str, TypingEntry]] = {}
        self._listeners: list[TypingListener] = []
        self._task: asyncio.Task[None] | None = None

    def subscribe(self, listener: TypingListener) -> None:
        self._listeners.append(listener)

    def _changed(self, conversation_id: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(conversation_id)
            except Exception:
                logger.exception("Typing listener failed")

    def started(self, conversation_id: str, user_id: str, name: str = "") -> None:
        entries = self._entries.setdefault(conversation_id, {})
        is_new = user_id not in entries
        entries[user_id] = TypingEntry(
            user_id=user_id, name=name, expires_at=self._clock.now() + self._ttl,
        )
        if is_new:
            self._changed(conversation_id)

    def stopped(self, conversation_id: str, user_id: str) -> None:
        entries = self._entries.get(conversation_id)
        if entries and entries.pop(user_id, None) is not None:
            if not entries:
                del self._entries[conversation_id]
            self._changed(conversation_id)

    def typing(self, conversation_id: str) -> list[TypingEntry]:
        self._sweep_conversation(conversation_id, self._clock.now())
        return list(self._entries.get(conversation_id, {}).values())

    def is_typing(self, conversation_id: str, user_id: str) -> bool:
        return any(e.user_id == user_id for e in self.typing(conversation_id))

    def clear(self, conversation_id: str) -> None:
        if self._entries.pop(conversation_id, None):
            self._changed(conversation_id)

    def clear_all(self) -> None:
        cleared = list(self._entries)
        self._entries.clear()
        for conversation_id in cleared:
            self._changed(conversation_id)

    def sweep(self) -> int:
        now = self._clock.now()
        return sum(self._sweep_conversation(cid, now) for cid in list(self._entries))

    def _sweep_conversation(self, conversation_id: str, now: datetime) -> int:
        entries = self._entries.get(conversation_id)
        if not entries:
            return 0
        expired = [uid for uid, e in entries.items() if e.expires_at <= now]
        for uid in expired:
            del entries[uid]
        if not entries:
            del self._entries[conversation_id]
        if expired:
            self._changed(conversation_id)
        return len(expired)

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._tick(), name="typing-sweeper")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _tick(self) -> None:
        while True:
            await self._sleep(self._sweep_interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("Typing sweep failed")


class PresenceTracker:
    def __init__(self) -> None:
        self._online: set[str] = set()
        self._last_seen: dict[str, datetime] = {}

    @property
    def online_users(self) -> frozenset[str]:
        return frozenset(self._online)

    def mark_online(self, user_id: str) -> None:
        self._online.add(user_id)
        self._last_seen.pop(user_id, None)

    def mark_offline(self, user_id: str, at: datetime) -> None:
        self._online.discard(user_id)
        self._last_seen[user_id] = at

    def is_online(self, user_id: str) -> bool:
        return user_id in self._online

    def last_seen(self, user_id: str) -> datetime | None:
        return self._last_seen.get(user_id)


class LocalTyping:
    """Emits this user's own typing_start / typing_stop signals.

    One ``typing_start`` per burst of keystrokes; ``typing_stop`` after
    ``idle`` seconds without a keystroke, or on ``stop``.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        idle: float = 2.0,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._idle = idle
        self._sleep = sleep
        self._active: str | None = None
        self._timer: asyncio.Task[None] | None = None

    @property
    def active_conversation(self) -> str | None:
        return self._active

    async def keystroke(self, conversation_id: str) -> None:
        if self._active is not None and self._active != conversation_id:
            await self.stop()
        if self._active is None:
            self._active = conversation_id
            await self._emit("typing_start", conversation_id)
        self._restart_timer()

    async def stop(self) -> None:
        self._cancel_timer()
        if self._active is None:
            return
        conversation_id, self._active = self._active, None
        await self._emit("typing_stop", conversation_id)

    def _restart_timer(self) -> None:
        self._cancel_timer()
        self._timer = asyncio.create_task(self._expire(), name="local-typing-idle")

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            if self._timer is not asyncio.current_task():
                self._timer.cancel()
        self._timer = None

    async def _expire(self) -> None:
        await self._sleep(self._idle)
        self._timer = None
        await self.stop()

    async def _emit(self, event: str, conversation_id: str) -> None:
        if not self._transport.is_connected:
            return
        try:
            await self._transport.emit(event, conversation_id)
        except Exception:
            logger.debug("Failed to emit %s for %s", event, conversation_id, exc_info=True)
