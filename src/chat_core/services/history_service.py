"""History loading: cache first, transport second, stale results discarded."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable

from chat_core.application.dto.message import MessagePage
from chat_core.application.dto.notice import NoticeAction
from chat_core.application.exceptions import ChatError, ErrorKind
from chat_core.application.ports.clock import Sleeper
from chat_core.application.ports.notifier import Notifier
from chat_core.application.ports.transport import Transport
from chat_core.domain.entities.message import Message
from chat_core.domain.value_objects.enums import ConversationKind
from chat_core.services.history_cache import HistoryCache
from chat_core.services.message_store import ChangeKind, MessageStore, StoreChange
from chat_core.services.retry_policy import RetryPolicy, notice_for

logger = logging.getLogger(__name__)

PageConfirmer = Callable[[Iterable[Message]], Awaitable[int]]


class HistoryService:
    def __init__(
        self,
        transport: Transport,
        store: MessageStore,
        cache: HistoryCache,
        policy: RetryPolicy,
        notifier: Notifier,
        *,
        page_size: int = 50,
        sleep: Sleeper = asyncio.sleep,
        confirm: PageConfirmer | None = None,
    ) -> None:
        self._transport = transport
        self._store = store
        self._cache = cache
        self._policy = policy
        self._notifier = notifier
        self._page_size = page_size
        self._sleep = sleep
        self._confirm = confirm
        self._generation = 0
        self._background: set[asyncio.Task[None]] = set()
        store.subscribe(self._mirror)

    @property
    def cache(self) -> HistoryCache:
        return self._cache

    def _mirror(self, change: StoreChange) -> None:
        """Keep cached windows in step with store mutations."""
        cid = change.conversation_id
        if cid not in self._cache or change.message_id is None:
            return
        if change.kind == ChangeKind.REMOVED:
            self._cache.remove_message(cid, change.message_id)
            return
        if change.kind == ChangeKind.REPLACED and change.previous_id:
            self._cache.remove_message(cid, change.previous_id)
        message = self._store.lookup(change.message_id)
        if message is not None:
            self._cache.append_live(cid, message)

    def cancel_pending(self) -> None:
        """Discard every in-flight fetch; their results will not be merged."""
        self._generation += 1
        for task in list(self._background):
            task.cancel()
        self._background.clear()

    async def _settle_own(self, messages: Iterable[Message]) -> None:
        """Let outstanding sends claim their server copies before a page lands."""
        if self._confirm is not None:
            await self._confirm(messages)

    async def _fetch(
        self,
        conversation_id: str,
        kind: ConversationKind,
        *,
        before: str | None = None,
    ) -> MessagePage:
        return await self._policy.call(
            f"list messages {conversation_id}",
            lambda: self._transport.list_messages(
                conversation_id, kind, before=before, limit=self._page_size,
            ),
            sleep=self._sleep,
        )

    async def open(self, conversation_id: str, kind: ConversationKind) -> list[Message]:
        """Load a conversation for display after it becomes the selection."""
        self.cancel_pending()
        generation = self._generation

        window = self._cache.get(conversation_id)
        if window is not None:
            await self._settle_own(window.messages)
            window = self._cache.get(conversation_id) or window
            self._store.load_initial(conversation_id, window.messages)
            self._schedule_refresh(conversation_id, kind, generation)
            return self._store.messages(conversation_id)

        try:
            page = await self._fetch(conversation_id, kind)
        except ChatError as exc:
            if generation != self._generation:
                return []
            self._on_load_failure(conversation_id, exc)
            return self._store.messages(conversation_id)

        if generation != self._generation:
            logger.debug("Discarding superseded history for %s", conversation_id)
            return []
        await self._settle_own(page.messages)
        if generation != self._generation:
            return []
        self._cache.put(conversation_id, page.messages, has_more_before=page.has_more_before)
        self._store.load_initial(conversation_id, page.messages)
        return self._store.messages(conversation_id)

    def _schedule_refresh(self, conversation_id: str, kind: ConversationKind, generation: int) -> None:
        task = asyncio.create_task(
            self._background_refresh(conversation_id, kind, generation),
            name=f"history-refresh-{conversation_id}",
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _background_refresh(
        self, conversation_id: str, kind: ConversationKind, generation: int,
    ) -> None:
        try:
            page = await self._fetch(conversation_id, kind)
        except ChatError as exc:
            logger.warning("Background refresh of %s failed: %s", conversation_id, exc.kind)
            return
        if generation != self._generation:
            return
        await self._apply_tail(conversation_id, page)

    async def _apply_tail(self, conversation_id: str, page: MessagePage) -> int:
        await self._settle_own(page.messages)
        window = self._cache.peek(conversation_id)
        known = {m.id for m in window.messages} if window is not None else set()
        overlaps = bool(known & {m.id for m in page.messages})
        if window is not None and page.has_more_before and not overlaps and known:
            # The tail jumped past the cached window; keep only the new tail.
            self._cache.put(conversation_id, page.messages, has_more_before=True)
            self._store.load_initial(conversation_id, page.messages)
            return len(page.messages)

        added = self._store.merge_page(conversation_id, page.messages)
        if window is not None:
            merged = {m.id: m for m in window.messages}
            for m in page.messages:
                stored = self._store.lookup(m.id)
                if stored is not None:
                    merged[m.id] = stored
                elif m.id in merged:
                    del merged[m.id]
            self._cache.put(
                conversation_id, list(merged.values()), has_more_before=window.has_more_before,
            )
        return added

    async def refresh_tail(self, conversation_id: str, kind: ConversationKind) -> int:
        """Re-pull the newest page and merge it; used after reconnects."""
        page = await self._fetch(conversation_id, kind)
        return await self._apply_tail(conversation_id, page)

    async def refresh(self, conversation_id: str, kind: ConversationKind) -> bool:
        """User-requested refresh; failures are surfaced with a refresh action."""
        try:
            await self.refresh_tail(conversation_id, kind)
        except ChatError as exc:
            self._notifier.notify(
                notice_for(exc, action=NoticeAction.REFRESH, conversation_id=conversation_id)
            )
            return False
        return True

    async def load_older(self, conversation_id: str, kind: ConversationKind) -> int:
        if conversation_id in self._cache and not self._cache.has_more_before(conversation_id):
            return 0
        oldest = self._store.oldest_confirmed(conversation_id)
        try:
            page = await self._fetch(
                conversation_id, kind, before=oldest.id if oldest else None,
            )
        except ChatError as exc:
            self._on_load_failure(conversation_id, exc)
            return 0
        await self._settle_own(page.messages)
        added = self._store.prepend(conversation_id, page.messages)
        self._cache.prepend_page(
            conversation_id, page.messages, has_more_before=page.has_more_before,
        )
        return added

    async def preload(self, targets: list[tuple[str, ConversationKind]]) -> int:
        """Warm the cache for conversations that are missing or stale."""
        loaded = 0
        for conversation_id, kind in targets:
            if conversation_id in self._cache and not self._cache.is_stale(conversation_id):
                continue
            try:
                page = await self._fetch(conversation_id, kind)
            except ChatError as exc:
                logger.warning("Preload of %s failed: %s", conversation_id, exc.kind)
                continue
            self._cache.put(conversation_id, page.messages, has_more_before=page.has_more_before)
            loaded += 1
        return loaded

    def _on_load_failure(self, conversation_id: str, exc: ChatError) -> None:
        if exc.kind in (ErrorKind.NOT_FOUND, ErrorKind.EXPECTED_EMPTY):
            logger.debug("History for %s is empty or missing", conversation_id)
            return
        if conversation_id in self._cache:
            window = self._cache.get(conversation_id)
            if window is not None and not self._store.has_conversation(conversation_id):
                self._store.load_initial(conversation_id, window.messages)
            logger.warning("History load for %s failed, using cached window", conversation_id)
            return
        self._notifier.notify(
            notice_for(exc, action=NoticeAction.REFRESH, conversation_id=conversation_id)
        )
