"""Optimistic sends, the offline queue and reconciliation with the server.

Each conversation has its own FIFO of outbound records and at most one
worker draining it, so one sender's messages are dispatched in compose
order. A record leaves the queue when the server confirms it (REST reply or
WebSocket echo, whichever comes first) or when the user removes it.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from chat_core.application.dto.message import OutboundPayload
from chat_core.application.dto.notice import NoticeAction
from chat_core.application.exceptions import ChatError, NotFoundError, QueueFullError
from chat_core.application.ports.clock import Clock, Sleeper, SystemClock
from chat_core.application.ports.identity import IdentityProvider
from chat_core.application.ports.notifier import Notifier
from chat_core.application.ports.storage import QueueStorage
from chat_core.application.ports.transport import Transport
from chat_core.domain.entities.message import (
    Attachment,
    ForwardInfo,
    Message,
    ReplySnapshot,
)
from chat_core.domain.value_objects.enums import ConversationKind, DeliveryStatus, MessageKind
from chat_core.services.message_store import MessageStore
from chat_core.services.retry_policy import ErrorAction, RetryPolicy, notice_for

logger = logging.getLogger(__name__)

_SETTLED_MEMORY = 512

ConfirmedCallback = Callable[[Message], None]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(slots=True)
class OutboundRecord:
    temp_id: str
    correlation_token: str
    conversation_id: str
    conversation_kind: ConversationKind
    content: str
    kind: MessageKind
    created_at: datetime
    attachments: tuple[Attachment, ...] = ()
    reply_to: ReplySnapshot | None = None
    forwarded_from: ForwardInfo | None = None
    status: DeliveryStatus = DeliveryStatus.QUEUED
    attempts: int = 0
    last_error: str | None = None
    confirmed_id: str | None = None
    removed: bool = False

    def payload(self) -> OutboundPayload:
        return OutboundPayload(
            content=self.content,
            correlation_token=self.correlation_token,
            kind=self.kind,
            attachment_ids=tuple(a.id for a in self.attachments),
            reply_to_id=self.reply_to.message_id if self.reply_to else None,
            forwarded_from=self.forwarded_from,
        )

    def optimistic_message(self, sender_id: str, sender_name: str) -> Message:
        return Message(
            id=self.temp_id,
            conversation_id=self.conversation_id,
            sender_id=sender_id,
            sender_name=sender_name,
            content=self.content,
            created_at=self.created_at,
            kind=self.kind,
            attachments=self.attachments,
            reply_to=self.reply_to,
            forwarded_from=self.forwarded_from,
            status=self.status,
            correlation_token=self.correlation_token,
            optimistic=True,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "temp_id": self.temp_id,
            "correlation_token": self.correlation_token,
            "conversation_id": self.conversation_id,
            "conversation_kind": self.conversation_kind.value,
            "content": self.content,
            "kind": self.kind.value,
            "created_at": _iso(self.created_at),
            "attachments": [
                {"id": a.id, "kind": a.kind, "size": a.size, "uri": a.uri,
                 "thumbnails": list(a.thumbnails)}
                for a in self.attachments
            ],
            "reply_to": None if self.reply_to is None else {
                "message_id": self.reply_to.message_id,
                "content": self.reply_to.content,
                "sender_id": self.reply_to.sender_id,
                "sender_name": self.reply_to.sender_name,
                "kind": self.reply_to.kind.value,
            },
            "forwarded_from": None if self.forwarded_from is None else {
                "message_id": self.forwarded_from.message_id,
                "sender_id": self.forwarded_from.sender_id,
                "sender_name": self.forwarded_from.sender_name,
                "conversation_id": self.forwarded_from.conversation_id,
                "forwarded_by": self.forwarded_from.forwarded_by,
            },
            "status": self.status.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OutboundRecord:
        reply = data.get("reply_to")
        forward = data.get("forwarded_from")
        return cls(
            temp_id=data["temp_id"],
            correlation_token=data["correlation_token"],
            conversation_id=data["conversation_id"],
            conversation_kind=ConversationKind(data.get("conversation_kind", "group")),
            content=data.get("content", ""),
            kind=MessageKind.parse(data.get("kind")),
            created_at=datetime.fromisoformat(data["created_at"]),
            attachments=tuple(
                Attachment(
                    id=a["id"], kind=a.get("kind", ""), size=a.get("size", 0),
                    uri=a.get("uri", ""), thumbnails=tuple(a.get("thumbnails", ())),
                )
                for a in data.get("attachments", ())
            ),
            reply_to=None if not reply else ReplySnapshot(
                message_id=reply["message_id"],
                content=reply.get("content", ""),
                sender_id=reply.get("sender_id", ""),
                sender_name=reply.get("sender_name", ""),
                kind=MessageKind.parse(reply.get("kind")),
            ),
            forwarded_from=None if not forward else ForwardInfo(**forward),
            status=DeliveryStatus.parse(data.get("status")),
            attempts=int(data.get("attempts", 0)),
            last_error=data.get("last_error"),
        )


class OutboundPipeline:
    def __init__(
        self,
        transport: Transport,
        store: MessageStore,
        identity: IdentityProvider,
        notifier: Notifier,
        policy: RetryPolicy,
        storage: QueueStorage,
        *,
        clock: Clock | None = None,
        sleep: Sleeper = asyncio.sleep,
        max_queue: int = 100,
        echo_window: timedelta = timedelta(seconds=30),
        on_confirmed: ConfirmedCallback | None = None,
    ) -> None:
        self._transport = transport
        self._store = store
        self._identity = identity
        self._notifier = notifier
        self._policy = policy
        self._storage = storage
        self._clock = clock or SystemClock()
        self._sleep = sleep
        self._max_queue = max_queue
        self._echo_window = echo_window
        self._on_confirmed = on_confirmed

        self._queues: dict[str, list[OutboundRecord]] = {}
        self._by_temp: dict[str, OutboundRecord] = {}
        self._by_token: dict[str, OutboundRecord] = {}
        self._settled: OrderedDict[str, str] = OrderedDict()
        self._workers: dict[str, asyncio.Task[None]] = {}
        self._in_flight: dict[str, str] = {}
        self._online = transport.is_connected
        self._halted = False
        self._sequence = itertools.count(1)

    # -- introspection -----------------------------------------------------

    @property
    def online(self) -> bool:
        return self._online

    @property
    def session_expired(self) -> bool:
        return self._halted

    def queue(self, conversation_id: str) -> list[OutboundRecord]:
        return list(self._queues.get(conversation_id, ()))

    def pending(self, conversation_id: str | None = None) -> list[OutboundRecord]:
        return [r for r in self._records(conversation_id) if r.status != DeliveryStatus.FAILED]

    def failed(self, conversation_id: str | None = None) -> list[OutboundRecord]:
        return [r for r in self._records(conversation_id) if r.status == DeliveryStatus.FAILED]

    def record(self, temp_id: str) -> OutboundRecord | None:
        return self._by_temp.get(temp_id)

    def _records(self, conversation_id: str | None) -> list[OutboundRecord]:
        if conversation_id is not None:
            return list(self._queues.get(conversation_id, ()))
        return [r for q in self._queues.values() for r in q]

    # -- compose -----------------------------------------------------------

    async def send(
        self,
        conversation_id: str,
        content: str,
        *,
        kind: MessageKind = MessageKind.TEXT,
        conversation_kind: ConversationKind = ConversationKind.GROUP,
        attachments: tuple[Attachment, ...] = (),
        reply_to_id: str | None = None,
        forwarded_from: ForwardInfo | None = None,
    ) -> Message:
        """Compose a message: show it immediately, then dispatch or queue it."""
        queue = self._queues.setdefault(conversation_id, [])
        if len(queue) >= self._max_queue:
            raise QueueFullError(f"Outbound queue for {conversation_id} is full")

        reply_snapshot = None
        if reply_to_id is not None:
            target = self._store.get(reply_to_id)
            if target is None:
                raise NotFoundError("Reply target not found", operation="send message")
            reply_snapshot = ReplySnapshot(
                message_id=target.id,
                content=target.content,
                sender_id=target.sender_id,
                sender_name=target.sender_name,
                kind=target.kind,
            )

        record = OutboundRecord(
            temp_id=self._temp_id(),
            correlation_token=uuid.uuid4().hex,
            conversation_id=conversation_id,
            conversation_kind=conversation_kind,
            content=content,
            kind=kind,
            created_at=self._clock.now(),
            attachments=tuple(attachments),
            reply_to=reply_snapshot,
            forwarded_from=forwarded_from,
            status=self._dispatchable_status(),
        )
        queue.append(record)
        self._by_temp[record.temp_id] = record
        self._by_token[record.correlation_token] = record

        message = record.optimistic_message(self._identity.user_id, self._identity.user_name)
        self._store.append(message)
        logger.debug("Composed %s in %s (%s)", record.temp_id, conversation_id, record.status)

        await self._persist(conversation_id)
        self._kick(conversation_id)
        return message

    def _temp_id(self) -> str:
        # Sequence prefix keeps same-instant composes in compose order.
        return f"tmp-{next(self._sequence):06d}-{uuid.uuid4().hex[:12]}"

    def _dispatchable_status(self) -> DeliveryStatus:
        if self._online and not self._halted:
            return DeliveryStatus.SENDING
        return DeliveryStatus.QUEUED

    # -- user affordances --------------------------------------------------

    async def retry(self, temp_id: str) -> bool:
        record = self._by_temp.get(temp_id)
        if record is None or record.status != DeliveryStatus.FAILED:
            return False
        record.attempts = 0
        record.last_error = None
        self._set_status(record, self._dispatchable_status(), retry=True)
        await self._persist(record.conversation_id)
        self._kick(record.conversation_id)
        return True

    async def remove(self, temp_id: str) -> bool:
        record = self._by_temp.get(temp_id)
        if record is None:
            return False
        record.removed = True
        self._forget(record)
        self._store.remove(temp_id)
        await self._persist(record.conversation_id)
        return True

    async def clear_failed(self, conversation_id: str | None = None) -> int:
        failed = self.failed(conversation_id)
        for record in failed:
            await self.remove(record.temp_id)
        return len(failed)

    def _forget(self, record: OutboundRecord) -> None:
        queue = self._queues.get(record.conversation_id)
        if queue is not None and record in queue:
            queue.remove(record)
            if not queue:
                del self._queues[record.conversation_id]
        self._by_temp.pop(record.temp_id, None)
        self._by_token.pop(record.correlation_token, None)

    # -- persistence -------------------------------------------------------

    async def _persist(self, conversation_id: str) -> None:
        records = [r.to_dict() for r in self._queues.get(conversation_id, ())]
        try:
            await self._storage.save(conversation_id, records)
        except Exception:
            logger.exception("Failed to persist outbound queue for %s", conversation_id)

    async def restore(self, conversation_id: str) -> int:
        """Reload persisted records for one conversation into the queue and store."""
        restored = 0
        for data in await self._storage.load(conversation_id):
            try:
                record = OutboundRecord.from_dict(data)
            except (KeyError, TypeError, ValueError):
                logger.warning("Dropping unreadable outbound record in %s", conversation_id)
                continue
            if record.temp_id in self._by_temp or record.correlation_token in self._settled:
                continue
            if record.status != DeliveryStatus.FAILED:
                record.status = DeliveryStatus.QUEUED
            self._queues.setdefault(conversation_id, []).append(record)
            self._by_temp[record.temp_id] = record
            self._by_token[record.correlation_token] = record
            self._store.append(
                record.optimistic_message(self._identity.user_id, self._identity.user_name)
            )
            restored += 1
        if restored:
            logger.info("Restored %d outbound records for %s", restored, conversation_id)
            self._kick(conversation_id)
        return restored

    async def restore_all(self) -> int:
        total = 0
        for conversation_id in await self._storage.conversations():
            total += await self.restore(conversation_id)
        return total

    # -- connectivity ------------------------------------------------------

    def on_connection_down(self) -> None:
        self._online = False
        self._requeue_idle()

    def _requeue_idle(self) -> None:
        """Show records that are not on the wire as queued again."""
        for record in self._records(None):
            if record.status == DeliveryStatus.SENDING and self._in_flight.get(
                record.conversation_id
            ) != record.temp_id:
                self._set_status(record, DeliveryStatus.QUEUED, retry=True)

    def on_connection_up(self) -> None:
        self._online = True
        if self._halted:
            return
        for conversation_id in list(self._queues):
            self._kick(conversation_id)

    def resume_session(self) -> None:
        """Resume draining after the user has re-authenticated."""
        self._halted = False
        for conversation_id in list(self._queues):
            self._kick(conversation_id)

    # -- reconciliation ----------------------------------------------------

    async def reconcile_echo(self, message: Message) -> bool:
        """Match a pushed message against outstanding sends.

        Returns True when the message was one of ours and the temp record has
        been replaced by it.
        """
        record = None
        if message.correlation_token:
            record = self._by_token.get(message.correlation_token)
        else:
            record = self._match_without_token(message)
        if record is None:
            return False
        confirmed = replace(message, correlation_token=record.correlation_token)
        self._settle(record, confirmed)
        await self._persist(record.conversation_id)
        return True

    async def settle_confirmed(self, messages: Iterable[Message]) -> int:
        """Settle outstanding sends that a fetched page shows as already stored.

        Only the correlation token is trusted here; history pages may hold
        older messages with the same content.
        """
        settled = 0
        touched: set[str] = set()
        for message in messages:
            if message.optimistic or not message.correlation_token:
                continue
            record = self._by_token.get(message.correlation_token)
            if record is None or record.removed:
                continue
            logger.debug("Send %s already stored as %s", record.temp_id, message.id)
            self._settle(record, message)
            touched.add(record.conversation_id)
            settled += 1
        for conversation_id in touched:
            await self._persist(conversation_id)
        return settled

    def _match_without_token(self, message: Message) -> OutboundRecord | None:
        # Degraded path for servers that do not echo the correlation token.
        if message.sender_id != self._identity.user_id:
            return None
        for record in self._queues.get(message.conversation_id, ()):
            if record.confirmed_id is not None or record.content != message.content:
                continue
            if abs(message.created_at - record.created_at) <= self._echo_window:
                logger.debug("Matched echo %s to %s without token", message.id, record.temp_id)
                return record
        return None

    def _settle(self, record: OutboundRecord, server_message: Message) -> Message:
        result = self._store.replace(record.temp_id, server_message)
        record.confirmed_id = server_message.id
        record.status = result.status
        self._forget(record)
        self._settled[record.correlation_token] = server_message.id
        while len(self._settled) > _SETTLED_MEMORY:
            self._settled.popitem(last=False)
        if self._on_confirmed is not None:
            self._on_confirmed(result)
        return result

    # -- dispatch ----------------------------------------------------------

    def _kick(self, conversation_id: str) -> None:
        if not self._online or self._halted:
            return
        worker = self._workers.get(conversation_id)
        if worker is not None and not worker.done():
            return
        if self._next(conversation_id) is None:
            return
        self._workers[conversation_id] = asyncio.create_task(
            self._drain(conversation_id), name=f"outbound-{conversation_id}",
        )

    def _next(self, conversation_id: str) -> OutboundRecord | None:
        for record in self._queues.get(conversation_id, ()):
            if record.status in (DeliveryStatus.QUEUED, DeliveryStatus.SENDING):
                return record
        return None

    async def _drain(self, conversation_id: str) -> None:
        logger.debug("Draining outbound queue for %s", conversation_id)
        try:
            while self._online and not self._halted:
                record = self._next(conversation_id)
                if record is None:
                    break
                try:
                    await self._dispatch(record)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Outbound dispatch of %s crashed", record.temp_id)
                    self._set_status(record, DeliveryStatus.FAILED)
                    await self._persist(conversation_id)
        finally:
            self._in_flight.pop(conversation_id, None)
            if self._workers.get(conversation_id) is asyncio.current_task():
                del self._workers[conversation_id]

    async def _dispatch(self, record: OutboundRecord) -> None:
        cid = record.conversation_id
        record.attempts += 1
        self._set_status(record, DeliveryStatus.SENDING)
        self._in_flight[cid] = record.temp_id
        try:
            server_message = await self._transport.send_message(
                cid, record.conversation_kind, record.payload(),
            )
        except ChatError as exc:
            self._in_flight.pop(cid, None)
            await self._on_failure(record, exc)
            return
        self._in_flight.pop(cid, None)

        if record.removed:
            logger.debug("Send of removed record %s completed, ignoring reply", record.temp_id)
            return
        server_message = replace(server_message, correlation_token=record.correlation_token)
        if record.confirmed_id is not None:
            # The echo already reconciled it; the reply may still carry a fresher status.
            self._store.replace(record.temp_id, server_message)
            return
        self._settle(record, server_message)
        await self._persist(cid)
        logger.debug("Sent %s as %s", record.temp_id, server_message.id)

    async def _on_failure(self, record: OutboundRecord, exc: ChatError) -> None:
        if record.removed or record.confirmed_id is not None:
            return
        record.last_error = exc.detail
        action = self._policy.decide(exc, record.attempts)

        if action == ErrorAction.RETRY:
            if not self._online:
                self._set_status(record, DeliveryStatus.QUEUED, retry=True)
                await self._persist(record.conversation_id)
                return
            delay = self._policy.backoff(record.attempts - 1)
            logger.info(
                "Send of %s failed (%s), attempt %d, retrying in %.2fs",
                record.temp_id, exc.kind, record.attempts, delay,
            )
            await self._persist(record.conversation_id)
            await self._sleep(delay)
            if not self._online and record.status == DeliveryStatus.SENDING:
                self._set_status(record, DeliveryStatus.QUEUED, retry=True)
            return

        if action == ErrorAction.SESSION_ENDED:
            record.attempts = 0
            self._set_status(record, DeliveryStatus.QUEUED, retry=True)
            await self._persist(record.conversation_id)
            if not self._halted:
                self._halted = True
                self._requeue_idle()
                logger.warning("Session expired; outbound queue paused")
                self._notifier.notify(notice_for(exc))
            return

        self._set_status(record, DeliveryStatus.FAILED)
        await self._persist(record.conversation_id)
        logger.warning(
            "Send of %s failed permanently after %d attempts: %r",
            record.temp_id, record.attempts, exc,
        )
        self._notifier.notify(
            notice_for(
                exc,
                action=NoticeAction.RETRY,
                conversation_id=record.conversation_id,
                message_id=record.temp_id,
            )
        )

    def _set_status(self, record: OutboundRecord, status: DeliveryStatus, *, retry: bool = False) -> None:
        record.status = status
        self._store.patch(record.temp_id, {"status": status}, retry=retry)

    # -- lifecycle ---------------------------------------------------------

    async def wait_idle(self) -> None:
        """Wait until no conversation has a running worker."""
        while self._workers:
            await asyncio.gather(*list(self._workers.values()), return_exceptions=True)

    async def close(self) -> None:
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
