"""Projects pushed transport events onto the store, registry and presence state."""
from __future__ import annotations

import asyncio
import logging
from typing import Callable

from chat_core.application.exceptions import ChatError
from chat_core.application.ports.clock import Clock, SystemClock
from chat_core.application.ports.identity import IdentityProvider
from chat_core.domain.events import (
    ChatEvent,
    ConnectionDown,
    ConnectionUp,
    ConversationUpdated,
    MemberJoined,
    MemberLeft,
    MessageDeleted,
    MessageDelivered,
    MessageRead,
    MessageReceived,
    MessageUpdated,
    PresenceChanged,
    ReactionUpdated,
    TypingStarted,
    TypingStopped,
)
from chat_core.domain.value_objects.enums import Connectivity, DeliveryStatus
from chat_core.services.conversation_registry import ConversationRegistry
from chat_core.services.history_service import HistoryService
from chat_core.services.message_store import MessageStore
from chat_core.services.outbound_pipeline import OutboundPipeline
from chat_core.services.presence import PresenceTracker, TypingTracker

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[Connectivity], None]


class EventMerger:
    """Single consumer of the transport event stream.

    After ``connection.up`` the tail page of every known conversation is
    re-pulled; live events arriving meanwhile are buffered and applied in
    arrival order once the pulled pages have been merged.
    """

    def __init__(
        self,
        store: MessageStore,
        registry: ConversationRegistry,
        history: HistoryService,
        pipeline: OutboundPipeline,
        typing: TypingTracker,
        presence: PresenceTracker,
        identity: IdentityProvider,
        *,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._history = history
        self._pipeline = pipeline
        self._typing = typing
        self._presence = presence
        self._identity = identity
        self._clock = clock or SystemClock()
        self._buffer: list[ChatEvent] = []
        self._resync: asyncio.Task[None] | None = None
        self._connectivity = Connectivity.OFFLINE
        self._listeners: list[ConnectivityListener] = []

    # -- connectivity ------------------------------------------------------

    @property
    def connectivity(self) -> Connectivity:
        return self._connectivity

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def subscribe_connectivity(self, listener: ConnectivityListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _set_connectivity(self, state: Connectivity) -> None:
        if state == self._connectivity:
            return
        self._connectivity = state
        logger.info("Connectivity: %s", state)
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Connectivity listener failed")

    # -- entry point -------------------------------------------------------

    async def handle(self, event: ChatEvent) -> None:
        if isinstance(event, ConnectionUp):
            self._begin_resync(event)
        elif isinstance(event, ConnectionDown):
            self._on_down(event)
        elif self._resync is not None:
            self._buffer.append(event)
        else:
            await self._apply(event)

    async def wait_resynced(self) -> None:
        while self._resync is not None:
            await asyncio.wait({self._resync})

    async def close(self) -> None:
        if self._resync is not None:
            self._resync.cancel()
            try:
                await self._resync
            except asyncio.CancelledError:
                pass
            self._resync = None

    # -- reconnect handling ------------------------------------------------

    def _begin_resync(self, event: ConnectionUp) -> None:
        if self._resync is not None:
            self._resync.cancel()
        logger.info("Connection up (reconnect=%s), resyncing", event.reconnect)
        self._set_connectivity(Connectivity.RESYNCING)
        self._resync = asyncio.create_task(self._run_resync(), name="chat-resync")

    def _on_down(self, event: ConnectionDown) -> None:
        logger.info("Connection down: %s", event.reason or "unknown")
        if self._resync is not None:
            self._resync.cancel()
            self._resync = None
        self._set_connectivity(Connectivity.OFFLINE)
        self._pipeline.on_connection_down()
        self._typing.clear_all()

    async def _run_resync(self) -> None:
        targets = dict.fromkeys(
            [*self._history.cache.conversation_ids(), *self._store.conversation_ids()]
        )
        pulled = 0
        for conversation_id in targets:
            try:
                pulled += await self._history.refresh_tail(
                    conversation_id, self._registry.kind_of(conversation_id),
                )
            except ChatError as exc:
                logger.warning("Resync of %s failed: %s", conversation_id, exc.kind)
        try:
            await self._registry.rejoin()
        except Exception:
            logger.warning("Rejoining the active conversation failed", exc_info=True)

        while self._buffer:
            await self._apply(self._buffer.pop(0))

        logger.info("Resync done: %d conversations, %d new messages", len(targets), pulled)
        self._resync = None
        self._set_connectivity(Connectivity.ONLINE)
        self._pipeline.on_connection_up()

    # -- projection --------------------------------------------------------

    async def _apply(self, event: ChatEvent) -> None:
        try:
            await self._project(event)
        except Exception:
            logger.exception("Failed to apply %s", event.type)

    async def _project(self, event: ChatEvent) -> None:
        viewer = self._identity.user_id
        if isinstance(event, MessageReceived):
            await self._on_message(event)
        elif isinstance(event, MessageUpdated):
            if self._store.patch(event.message_id, event.fields) is None:
                logger.debug("Update for unknown message %s", event.message_id)
        elif isinstance(event, MessageDeleted):
            if event.deleted_for:
                self._store.patch(
                    event.message_id, {"is_deleted": True, "deleted_for": event.deleted_for},
                )
            else:
                self._store.remove(event.message_id)
        elif isinstance(event, MessageRead):
            self._store.mark_read(event.message_id, event.receipt.user_id, event.receipt.at)
        elif isinstance(event, MessageDelivered):
            if event.receipt is not None:
                self._store.mark_delivered(event.message_id, event.receipt.user_id, event.receipt.at)
            else:
                self._store.patch(event.message_id, {"status": DeliveryStatus.DELIVERED})
        elif isinstance(event, ReactionUpdated):
            self._store.merge_reactions(event.message_id, event.reactions)
        elif isinstance(event, TypingStarted):
            if event.user_id != viewer:
                self._typing.started(event.conversation_id, event.user_id, event.user_name)
        elif isinstance(event, TypingStopped):
            self._typing.stopped(event.conversation_id, event.user_id)
        elif isinstance(event, PresenceChanged):
            at = event.last_seen or self._clock.now()
            if event.online:
                self._presence.mark_online(event.user_id)
            else:
                self._presence.mark_offline(event.user_id, at)
            self._registry.apply_presence(event.user_id, event.online, at)
        elif isinstance(event, ConversationUpdated):
            self._registry.update(event.conversation_id, event.patch)
        elif isinstance(event, MemberJoined):
            self._registry.member_joined(event.conversation_id, event.member)
        elif isinstance(event, MemberLeft):
            self._registry.member_left(event.conversation_id, event.user_id)
        else:
            logger.debug("Ignoring event %r", event)

    async def _on_message(self, event: MessageReceived) -> None:
        message = event.message
        self._typing.stopped(message.conversation_id, message.sender_id)
        if await self._pipeline.reconcile_echo(message):
            logger.debug("Echo %s reconciled", message.id)
            return
        if self._store.append(message):
            self._registry.record_message(message, self._identity.user_id)
