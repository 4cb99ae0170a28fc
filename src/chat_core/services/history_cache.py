"""Bounded cache of per-conversation message windows.

Capacity is a global message count. Eviction always drops the least recently
accessed conversation's window as a whole.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from chat_core.application.ports.clock import Clock, SystemClock
from chat_core.domain.entities.message import Message

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CacheWindow:
    conversation_id: str
    messages: tuple[Message, ...]
    has_more_before: bool
    fetched_at: datetime

    def __len__(self) -> int:
        return len(self.messages)


class HistoryCache:
    def __init__(
        self,
        max_messages: int = 500,
        *,
        stale_after: timedelta = timedelta(seconds=60),
        clock: Clock | None = None,
    ) -> None:
        if max_messages <= 0:
            raise ValueError("max_messages must be positive")
        self._max = max_messages
        self._stale_after = stale_after
        self._clock = clock or SystemClock()
        self._windows: OrderedDict[str, CacheWindow] = OrderedDict()
        self._total = 0

    @property
    def total_messages(self) -> int:
        return self._total

    @property
    def capacity(self) -> int:
        return self._max

    def conversation_ids(self) -> list[str]:
        return list(self._windows)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._windows

    def get(self, conversation_id: str) -> CacheWindow | None:
        window = self._windows.get(conversation_id)
        if window is not None:
            self._windows.move_to_end(conversation_id)
        return window

    def peek(self, conversation_id: str) -> CacheWindow | None:
        """Like ``get`` but without counting as an access."""
        return self._windows.get(conversation_id)

    def is_stale(self, conversation_id: str) -> bool:
        window = self._windows.get(conversation_id)
        if window is None:
            return True
        return self._clock.now() - window.fetched_at > self._stale_after

    def has_more_before(self, conversation_id: str) -> bool:
        window = self._windows.get(conversation_id)
        return True if window is None else window.has_more_before

    def touch(self, conversation_id: str) -> None:
        if conversation_id in self._windows:
            self._windows.move_to_end(conversation_id)

    def put(
        self,
        conversation_id: str,
        messages: tuple[Message, ...] | list[Message],
        *,
        has_more_before: bool,
    ) -> CacheWindow:
        ordered = tuple(sorted(messages, key=lambda m: m.sort_key))
        if len(ordered) > self._max:
            # Keep the newest slice; older history stays reachable via paging.
            ordered = ordered[-self._max:]
            has_more_before = True
        window = CacheWindow(
            conversation_id=conversation_id,
            messages=ordered,
            has_more_before=has_more_before,
            fetched_at=self._clock.now(),
        )
        self._store(window)
        return window

    def prepend_page(
        self,
        conversation_id: str,
        page: tuple[Message, ...] | list[Message],
        *,
        has_more_before: bool,
    ) -> CacheWindow | None:
        window = self._windows.get(conversation_id)
        if window is None:
            return None
        known = {m.id for m in window.messages}
        merged = tuple(sorted(
            [m for m in page if m.id not in known] + list(window.messages),
            key=lambda m: m.sort_key,
        ))
        if len(merged) > self._max:
            merged = merged[-self._max:]
            has_more_before = True
        updated = replace(window, messages=merged, has_more_before=has_more_before)
        self._store(updated)
        return updated

    def append_live(self, conversation_id: str, message: Message) -> bool:
        """Add or refresh one message in an existing window.

        Conversations with no window are left alone so a partial window is
        never mistaken for a real tail page.
        """
        window = self._windows.get(conversation_id)
        if window is None:
            return False
        kept = [m for m in window.messages if m.id != message.id]
        if message.correlation_token:
            kept = [m for m in kept if m.correlation_token != message.correlation_token]
        merged = tuple(sorted(kept + [message], key=lambda m: m.sort_key))
        has_more = window.has_more_before
        if len(merged) > self._max:
            merged = merged[-self._max:]
            has_more = True
        self._store(replace(window, messages=merged, has_more_before=has_more), touch=False)
        return True

    def remove_message(self, conversation_id: str, message_id: str) -> None:
        window = self._windows.get(conversation_id)
        if window is None:
            return
        kept = tuple(m for m in window.messages if m.id != message_id)
        if len(kept) != len(window.messages):
            self._store(replace(window, messages=kept), touch=False)

    def invalidate(self, conversation_id: str) -> None:
        window = self._windows.pop(conversation_id, None)
        if window is not None:
            self._total -= len(window)

    def clear(self) -> None:
        self._windows.clear()
        self._total = 0

    def _store(self, window: CacheWindow, *, touch: bool = True) -> None:
        cid = window.conversation_id
        previous = self._windows.get(cid)
        if previous is not None:
            self._total -= len(previous)
        self._windows[cid] = window
        self._total += len(window)
        if touch:
            self._windows.move_to_end(cid)
        self._evict(keep=cid)

    def _evict(self, keep: str) -> None:
        while self._total > self._max:
            victim = next((cid for cid in self._windows if cid != keep), None)
            if victim is None:
                break
            evicted = self._windows.pop(victim)
            self._total -= len(evicted)
            logger.debug("Evicted history window %s (%d messages)", victim, len(evicted))
