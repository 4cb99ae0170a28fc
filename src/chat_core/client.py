"""Composition root: wires the core services around one transport."""
from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable

import aiohttp
import redis.asyncio as aioredis

from chat_core.application.exceptions import ValidationError
from chat_core.application.ports.clock import Clock, Sleeper, SystemClock
from chat_core.application.ports.identity import IdentityProvider
from chat_core.application.ports.notifier import Notifier
from chat_core.application.ports.storage import QueueStorage
from chat_core.application.ports.transport import Transport
from chat_core.config import Settings, settings as default_settings
from chat_core.domain.entities.message import Attachment, Message
from chat_core.domain.value_objects.enums import Connectivity, MessageKind
from chat_core.infrastructure.auth.jwt_identity import JwtIdentityProvider
from chat_core.infrastructure.notify.logging_notifier import LoggingNotifier
from chat_core.infrastructure.storage.memory import InMemoryQueueStorage
from chat_core.infrastructure.storage.redis_queue import RedisQueueStorage
from chat_core.infrastructure.transport.aiohttp_transport import AiohttpTransport
from chat_core.services.conversation_registry import ConversationRegistry
from chat_core.services.event_merger import ConnectivityListener, EventMerger
from chat_core.services.history_cache import HistoryCache
from chat_core.services.history_service import HistoryService
from chat_core.services.message_actions import MessageActions
from chat_core.services.message_store import MessageStore
from chat_core.services.outbound_pipeline import OutboundPipeline
from chat_core.services.presence import LocalTyping, PresenceTracker, TypingTracker
from chat_core.services.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)

Closer = Callable[[], Awaitable[None]]


class ChatClient:
    def __init__(
        self,
        transport: Transport,
        identity: IdentityProvider,
        notifier: Notifier,
        storage: QueueStorage,
        *,
        policy: RetryPolicy | None = None,
        clock: Clock | None = None,
        sleep: Sleeper = asyncio.sleep,
        page_size: int = 50,
        cache_max_messages: int = 500,
        stale_after: timedelta = timedelta(seconds=60),
        typing_ttl: timedelta = timedelta(seconds=3),
        typing_sweep_interval: float = 1.0,
        local_typing_idle: float = 2.0,
        max_queue: int = 100,
        echo_window: timedelta = timedelta(seconds=30),
    ) -> None:
        policy = policy or RetryPolicy()
        clock = clock or SystemClock()
        self.transport = transport
        self.identity = identity
        self.notifier = notifier

        self.store = MessageStore(identity.user_id)
        self.cache = HistoryCache(cache_max_messages, stale_after=stale_after, clock=clock)
        self.pipeline = OutboundPipeline(
            transport,
            self.store,
            identity,
            notifier,
            policy,
            storage,
            clock=clock,
            sleep=sleep,
            max_queue=max_queue,
            echo_window=echo_window,
            on_confirmed=lambda m: self.registry.record_message(m, identity.user_id),
        )
        self.history = HistoryService(
            transport,
            self.store,
            self.cache,
            policy,
            notifier,
            page_size=page_size,
            sleep=sleep,
            confirm=self.pipeline.settle_confirmed,
        )
        self.typing = TypingTracker(
            ttl=typing_ttl, sweep_interval=typing_sweep_interval, clock=clock, sleep=sleep,
        )
        self.presence = PresenceTracker()
        self.registry = ConversationRegistry(transport, self.history, self.typing, policy, notifier)
        self.actions = MessageActions(
            transport, self.store, self.pipeline, self.registry, identity, policy, notifier,
            clock=clock,
        )
        self.local_typing = LocalTyping(transport, idle=local_typing_idle, sleep=sleep)
        self.merger = EventMerger(
            self.store,
            self.registry,
            self.history,
            self.pipeline,
            self.typing,
            self.presence,
            identity,
            clock=clock,
        )
        transport.subscribe(self.merger.handle)
        self._closers: list[Closer] = []

    def add_closer(self, closer: Closer) -> None:
        self._closers.append(closer)

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        await self.typing.start()
        restored = await self.pipeline.restore_all()
        if restored:
            logger.info("Restored %d queued messages", restored)
        await self.transport.connect()
        await self.registry.load()

    async def stop(self) -> None:
        await self.local_typing.stop()
        await self.merger.close()
        await self.pipeline.close()
        await self.typing.stop()
        await self.transport.close()
        for closer in reversed(self._closers):
            await closer()

    # -- connectivity ------------------------------------------------------

    @property
    def connectivity(self) -> Connectivity:
        return self.merger.connectivity

    def on_connectivity(self, listener: ConnectivityListener) -> Callable[[], None]:
        return self.merger.subscribe_connectivity(listener)

    def resume_session(self) -> None:
        self.pipeline.resume_session()

    # -- conveniences for the active conversation --------------------------

    def messages(self, conversation_id: str | None = None) -> list[Message]:
        cid = conversation_id or self.registry.active_id
        return self.store.messages(cid) if cid else []

    async def select(self, conversation_id: str) -> list[Message] | None:
        await self.local_typing.stop()
        return await self.registry.select(conversation_id)

    async def keystroke(self) -> None:
        if self.registry.active_id is not None:
            await self.local_typing.keystroke(self.registry.active_id)

    async def send(
        self,
        content: str,
        *,
        conversation_id: str | None = None,
        kind: MessageKind = MessageKind.TEXT,
        attachments: tuple[Attachment, ...] = (),
        reply_to_id: str | None = None,
    ) -> Message:
        cid = conversation_id or self.registry.active_id
        if cid is None:
            raise ValidationError("No conversation selected", operation="send message")
        await self.local_typing.stop()
        return await self.pipeline.send(
            cid,
            content,
            kind=kind,
            conversation_kind=self.registry.kind_of(cid),
            attachments=attachments,
            reply_to_id=reply_to_id,
        )


def create_client(
    config: Settings | None = None,
    *,
    session: aiohttp.ClientSession | None = None,
    notifier: Notifier | None = None,
) -> ChatClient:
    """Build a client from settings with the aiohttp transport."""
    config = config or default_settings
    identity = JwtIdentityProvider(
        config.AUTH_TOKEN, secret=config.JWT_SECRET, algorithm=config.JWT_ALGORITHM,
    )
    policy = RetryPolicy(
        base_delay=config.RETRY_BASE_DELAY,
        factor=config.RETRY_FACTOR,
        max_delay=config.RETRY_MAX_DELAY,
        jitter=config.RETRY_JITTER,
        max_attempts=config.RETRY_MAX_ATTEMPTS,
    )
    transport = AiohttpTransport(
        config.API_BASE_URL,
        config.WS_URL,
        identity,
        session=session,
        read_timeout=config.READ_TIMEOUT_SECONDS,
        write_timeout=config.WRITE_TIMEOUT_SECONDS,
        heartbeat=config.WS_HEARTBEAT_SECONDS,
        reconnect_policy=RetryPolicy(
            base_delay=config.RETRY_BASE_DELAY,
            max_delay=config.WS_RECONNECT_MAX_DELAY,
            jitter=config.RETRY_JITTER,
        ),
    )

    redis = None
    storage: QueueStorage
    if config.QUEUE_STORAGE == "redis":
        redis = aioredis.from_url(config.REDIS_URL, decode_responses=True)
        storage = RedisQueueStorage(redis, prefix=config.OUTBOX_KEY_PREFIX)
    else:
        storage = InMemoryQueueStorage()

    client = ChatClient(
        transport,
        identity,
        notifier or LoggingNotifier(),
        storage,
        policy=policy,
        page_size=config.HISTORY_PAGE_SIZE,
        cache_max_messages=config.HISTORY_CACHE_MAX_MESSAGES,
        stale_after=timedelta(seconds=config.HISTORY_STALE_SECONDS),
        typing_ttl=timedelta(seconds=config.TYPING_TTL_SECONDS),
        typing_sweep_interval=config.TYPING_SWEEP_INTERVAL,
        local_typing_idle=config.LOCAL_TYPING_IDLE_SECONDS,
        max_queue=config.OUTBOUND_MAX_QUEUE,
        echo_window=timedelta(seconds=config.ECHO_MATCH_WINDOW_SECONDS),
    )
    if redis is not None:
        client.add_closer(redis.aclose)
    return client
