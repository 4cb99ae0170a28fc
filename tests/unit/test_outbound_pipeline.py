from __future__ import annotations

import asyncio

import pytest

from chat_core.application.dto.notice import NoticeAction
from chat_core.application.exceptions import (
    AuthExpiredError,
    NotFoundError,
    QueueFullError,
    TransientError,
    ValidationError,
)
from chat_core.domain.events import MessageReceived
from chat_core.domain.value_objects.enums import ConversationKind, DeliveryStatus, MessageKind
from chat_core.infrastructure.storage.memory import InMemoryQueueStorage
from chat_core.services.outbound_pipeline import OutboundRecord
from tests.conftest import (
    FakeTransport,
    RecordingSleeper,
    at,
    fast_policy,
    make_client,
    make_conversation,
    make_message,
    wait_until,
)


def _contents(transport: FakeTransport) -> list[str]:
    return [payload.content for _, payload in transport.sent]


@pytest.mark.asyncio
async def test_send_shows_optimistic_then_confirms():
    transport = FakeTransport()
    client = make_client(transport)
    client.registry.upsert(make_conversation("c1"))

    temp = await client.pipeline.send("c1", "hello")

    assert temp.optimistic is True
    assert temp.id.startswith("tmp-")
    assert client.store.get(temp.id).status == DeliveryStatus.SENDING

    await client.pipeline.wait_idle()

    messages = client.store.messages("c1")
    assert [m.id for m in messages] == ["srv-1"]
    assert messages[0].status == DeliveryStatus.SENT
    assert client.store.get(temp.id) is None
    assert client.pipeline.queue("c1") == []
    assert client.registry.get("c1").last_message.message_id == "srv-1"
    assert client.registry.get("c1").unread_count == 0


@pytest.mark.asyncio
async def test_offline_compose_queues_until_connection_up():
    transport = FakeTransport(is_connected=False)
    client = make_client(transport)

    a = await client.pipeline.send("c1", "A")
    b = await client.pipeline.send("c1", "B")

    assert [m.id for m in client.store.messages("c1")] == [a.id, b.id]
    assert {client.store.get(a.id).status, client.store.get(b.id).status} == {DeliveryStatus.QUEUED}
    assert [r.content for r in client.pipeline.queue("c1")] == ["A", "B"]
    assert transport.sent == []

    transport.is_connected = True
    client.pipeline.on_connection_up()
    await client.pipeline.wait_idle()

    assert _contents(transport) == ["A", "B"]
    assert [m.content for m in client.store.messages("c1")] == ["A", "B"]


@pytest.mark.asyncio
async def test_failed_message_does_not_block_or_reorder_later_ones():
    transport = FakeTransport()
    transport.fail("send_message", ValidationError("rejected", status=422))
    client = make_client(transport)

    a = await client.pipeline.send("c1", "A")
    await client.pipeline.send("c1", "B")
    await client.pipeline.wait_idle()

    assert client.store.get(a.id).status == DeliveryStatus.FAILED
    assert [r.temp_id for r in client.pipeline.failed("c1")] == [a.id]
    notice = client.notifier.notices[0]
    assert notice.action == NoticeAction.RETRY
    assert notice.message_id == a.id

    assert await client.pipeline.retry(a.id) is True
    await client.pipeline.wait_idle()

    assert _contents(transport) == ["A", "B", "A"]
    assert [(m.id, m.content) for m in client.store.messages("c1")] == [
        ("srv-1", "B"),
        ("srv-2", "A"),
    ]
    assert all(m.status == DeliveryStatus.SENT for m in client.store.messages("c1"))


@pytest.mark.asyncio
async def test_retry_only_applies_to_failed_records():
    client = make_client(FakeTransport(is_connected=False))
    temp = await client.pipeline.send("c1", "A")

    assert await client.pipeline.retry(temp.id) is False
    assert await client.pipeline.retry("tmp-unknown") is False


@pytest.mark.asyncio
async def test_transient_failures_back_off_then_succeed():
    transport = FakeTransport()
    transport.fail("send_message", TransientError("down"), TransientError("down"))
    sleeper = RecordingSleeper()
    client = make_client(transport, policy=fast_policy(base_delay=1.0), sleep=sleeper)

    await client.pipeline.send("c1", "A")
    await client.pipeline.wait_idle()

    assert sleeper.delays == [1.0, 2.0]
    assert [m.id for m in client.store.messages("c1")] == ["srv-1"]
    assert client.notifier.notices == []


@pytest.mark.asyncio
async def test_exhausted_retries_mark_failed():
    transport = FakeTransport()
    transport.fail("send_message", *[TransientError("down")] * 5)
    client = make_client(transport)

    temp = await client.pipeline.send("c1", "A")
    await client.pipeline.wait_idle()

    record = client.pipeline.record(temp.id)
    assert record.status == DeliveryStatus.FAILED
    assert record.attempts == 5
    assert record.last_error == "down"
    assert len(client.notifier.notices) == 1


@pytest.mark.asyncio
async def test_auth_expiry_halts_queue_once_and_resumes():
    transport = FakeTransport()
    transport.fail("send_message", AuthExpiredError("expired", status=401))
    client = make_client(transport)

    a = await client.pipeline.send("c1", "A")
    b = await client.pipeline.send("c1", "B")
    await client.pipeline.wait_idle()

    assert client.pipeline.session_expired is True
    assert client.store.get(a.id).status == DeliveryStatus.QUEUED
    assert client.store.get(b.id).status == DeliveryStatus.QUEUED
    assert len(client.notifier.notices) == 1
    assert client.notifier.notices[0].action == NoticeAction.LOGIN

    c = await client.pipeline.send("c1", "C")
    assert client.store.get(c.id).status == DeliveryStatus.QUEUED

    client.resume_session()
    await client.pipeline.wait_idle()

    assert _contents(transport) == ["A", "A", "B", "C"]
    assert [m.content for m in client.store.messages("c1")] == ["A", "B", "C"]
    assert len(client.notifier.notices) == 1


@pytest.mark.asyncio
async def test_queue_bound():
    client = make_client(FakeTransport(is_connected=False), max_queue=2)
    await client.pipeline.send("c1", "A")
    await client.pipeline.send("c1", "B")

    with pytest.raises(QueueFullError):
        await client.pipeline.send("c1", "C")

    await client.pipeline.send("c2", "other conversation")


@pytest.mark.asyncio
async def test_remove_failed_record_clears_store_and_storage():
    transport = FakeTransport()
    transport.fail("send_message", ValidationError("rejected", status=422))
    storage = InMemoryQueueStorage()
    client = make_client(transport, storage=storage)
    temp = await client.pipeline.send("c1", "A")
    await client.pipeline.wait_idle()

    assert await client.pipeline.remove(temp.id) is True

    assert client.store.messages("c1") == []
    assert client.pipeline.queue("c1") == []
    assert await storage.conversations() == []


@pytest.mark.asyncio
async def test_clear_failed_removes_every_failed_record():
    transport = FakeTransport()
    transport.fail("send_message", ValidationError("x"), ValidationError("y"))
    client = make_client(transport)
    await client.pipeline.send("c1", "A")
    await client.pipeline.send("c2", "B")
    await client.pipeline.wait_idle()

    assert await client.pipeline.clear_failed() == 2
    assert client.pipeline.failed() == []


@pytest.mark.asyncio
async def test_reply_after_removal_is_ignored():
    transport = FakeTransport()
    transport.send_gate = asyncio.Event()
    client = make_client(transport)
    temp = await client.pipeline.send("c1", "A")
    await wait_until(lambda: bool(transport.sent))

    await client.pipeline.remove(temp.id)
    transport.send_gate.set()
    await client.pipeline.wait_idle()

    assert client.store.messages("c1") == []


@pytest.mark.asyncio
async def test_persisted_queue_restored_by_new_client():
    storage = InMemoryQueueStorage()
    first = make_client(FakeTransport(is_connected=False), storage=storage)
    await first.pipeline.send("c1", "survives restart")

    persisted = await storage.load("c1")
    assert [r["content"] for r in persisted] == ["survives restart"]

    second = make_client(FakeTransport(is_connected=False), storage=storage)
    assert await second.pipeline.restore_all() == 1

    [message] = second.store.messages("c1")
    assert message.content == "survives restart"
    assert message.status == DeliveryStatus.QUEUED
    assert message.optimistic is True
    assert await second.pipeline.restore_all() == 0


@pytest.mark.asyncio
async def test_echo_without_token_matches_by_content_and_time():
    transport = FakeTransport()
    transport.send_gate = asyncio.Event()
    transport.replies = [make_message("m-echo", seconds=1)]
    client = make_client(transport)
    temp = await client.pipeline.send("c1", "hi there")
    await wait_until(lambda: bool(transport.sent))

    echo = make_message("m-echo", sender_id="u1", content="hi there", seconds=1)
    await transport.publish(MessageReceived(conversation_id="c1", message=echo))

    assert [m.id for m in client.store.messages("c1")] == ["m-echo"]
    assert client.store.get(temp.id) is None

    transport.send_gate.set()
    await client.pipeline.wait_idle()

    assert [m.id for m in client.store.messages("c1")] == ["m-echo"]


@pytest.mark.asyncio
async def test_echo_from_other_sender_is_not_reconciled():
    transport = FakeTransport(is_connected=False)
    client = make_client(transport)
    await client.pipeline.send("c1", "same text")

    other = make_message("m5", sender_id="u2", content="same text")
    assert await client.pipeline.reconcile_echo(other) is False


@pytest.mark.asyncio
async def test_connection_down_requeues_records_not_on_the_wire():
    transport = FakeTransport()
    transport.send_gate = asyncio.Event()
    client = make_client(transport)
    a = await client.pipeline.send("c1", "A")
    b = await client.pipeline.send("c1", "B")
    await wait_until(lambda: bool(transport.sent))

    client.pipeline.on_connection_down()

    assert client.store.get(a.id).status == DeliveryStatus.SENDING
    assert client.store.get(b.id).status == DeliveryStatus.QUEUED

    transport.send_gate.set()
    await client.pipeline.wait_idle()

    assert _contents(transport) == ["A"]
    assert [r.content for r in client.pipeline.pending("c1")] == ["B"]


@pytest.mark.asyncio
async def test_reply_carries_snapshot_of_target():
    client = make_client(FakeTransport(is_connected=False))
    client.store.append(make_message("m1", content="original", sender_id="u2"))

    reply = await client.pipeline.send("c1", "answer", reply_to_id="m1")

    assert reply.reply_to.message_id == "m1"
    assert reply.reply_to.content == "original"
    assert reply.reply_to.sender_name == "U2"
    assert client.pipeline.queue("c1")[0].payload().reply_to_id == "m1"

    with pytest.raises(NotFoundError):
        await client.pipeline.send("c1", "answer", reply_to_id="missing")


def test_record_round_trips_through_dict():
    record = OutboundRecord(
        temp_id="tmp-1",
        correlation_token="k1",
        conversation_id="c1",
        conversation_kind=ConversationKind.PRIVATE,
        content="hi",
        kind=MessageKind.IMAGE,
        created_at=at(0),
        status=DeliveryStatus.FAILED,
        attempts=3,
    )

    restored = OutboundRecord.from_dict(record.to_dict())

    assert restored.conversation_kind == ConversationKind.PRIVATE
    assert restored.kind == MessageKind.IMAGE
    assert restored.created_at == at(0)
    assert restored.status == DeliveryStatus.FAILED
    assert restored.attempts == 3


@pytest.mark.asyncio
async def test_late_echo_confirms_a_failed_send_through_replace():
    transport = FakeTransport()
    transport.fail("send_message", *[TransientError("timeout")] * 5)
    client = make_client(transport)
    temp = await client.pipeline.send("c1", "A")
    await client.pipeline.wait_idle()
    token = client.pipeline.record(temp.id).correlation_token

    client.store.patch(temp.id, {"status": DeliveryStatus.SENT})
    assert client.store.get(temp.id).status == DeliveryStatus.FAILED

    echo = make_message("m5", sender_id="u1", content="A", correlation_token=token)
    await transport.publish(MessageReceived(conversation_id="c1", message=echo))

    [confirmed] = client.store.messages("c1")
    assert (confirmed.id, confirmed.status) == ("m5", DeliveryStatus.SENT)
    assert client.pipeline.failed("c1") == []
