from __future__ import annotations

import pytest

from chat_core.application.dto.notice import NoticeAction
from chat_core.application.exceptions import (
    AuthExpiredError,
    ForbiddenError,
    NotFoundError,
    TransientError,
)
from chat_core.domain.entities.conversation import Member
from chat_core.domain.value_objects.enums import ConversationKind
from chat_core.services.conversation_registry import RegistryChangeKind
from tests.conftest import FakeTransport, at, make_client, make_conversation, make_message

GROUP = ConversationKind.GROUP
PRIVATE = ConversationKind.PRIVATE


def _transport() -> FakeTransport:
    transport = FakeTransport()
    transport.conversations = {
        GROUP: [
            make_conversation("g1", updated_at=at(10)),
            make_conversation("g2", updated_at=at(30), unread_count=4),
        ],
        PRIVATE: [
            make_conversation("p1", kind=PRIVATE, peer_id="u9", updated_at=at(20), pinned=True),
        ],
    }
    return transport


@pytest.mark.asyncio
async def test_load_orders_pinned_then_recent():
    client = make_client(_transport())

    conversations = await client.registry.load()

    assert [c.id for c in conversations] == ["p1", "g2", "g1"]


@pytest.mark.asyncio
async def test_private_list_failure_degrades_to_groups_only():
    transport = _transport()
    client = make_client(transport)
    original = transport.list_conversations

    async def groups_only(kind):
        if kind == PRIVATE:
            raise ForbiddenError("private chats disabled", status=403)
        return await original(kind)

    transport.list_conversations = groups_only

    conversations = await client.registry.load()

    assert {c.id for c in conversations} == {"g1", "g2"}
    assert client.notifier.notices == []


@pytest.mark.asyncio
async def test_group_list_failure_surfaces():
    transport = _transport()
    transport.fail("list_conversations", *[TransientError("down")] * 5)
    client = make_client(transport)

    assert await client.registry.load() == []
    assert client.notifier.notices[0].action == NoticeAction.REFRESH


@pytest.mark.asyncio
async def test_select_clears_unread_joins_room_and_loads_history():
    transport = _transport()
    transport.history["g2"] = [make_message("m1", conversation_id="g2")]
    client = make_client(transport)
    await client.registry.load()
    changes = []
    client.registry.subscribe(changes.append)

    messages = await client.registry.select("g2")

    assert [m.id for m in messages] == ["m1"]
    assert client.registry.active_id == "g2"
    assert client.registry.get("g2").unread_count == 0
    assert transport.emitted == [("join_group", "g2")]
    assert changes[-1].kind == RegistryChangeKind.SELECTED


@pytest.mark.asyncio
async def test_switch_leaves_previous_room_and_clears_its_typing():
    transport = _transport()
    client = make_client(transport)
    await client.registry.load()
    await client.registry.select("g1")
    client.typing.started("g1", "u3")

    await client.registry.select("p1")

    assert client.typing.typing("g1") == []
    assert transport.emitted == [
        ("join_group", "g1"),
        ("leave_group", "g1"),
        ("join_chat", {"chatId": "p1", "chatType": "private"}),
    ]


@pytest.mark.asyncio
async def test_reselecting_active_conversation_is_noop():
    transport = _transport()
    client = make_client(transport)
    await client.registry.load()
    await client.registry.select("g1")

    assert await client.registry.select("g1") is None
    assert len(transport.called("list_messages")) == 1


@pytest.mark.asyncio
async def test_select_unknown_conversation_raises():
    client = make_client(_transport())

    with pytest.raises(NotFoundError):
        await client.registry.select("nope")


@pytest.mark.asyncio
async def test_record_message_updates_summary_and_unread():
    client = make_client(_transport())
    await client.registry.load()
    await client.registry.select("g1")

    client.registry.record_message(make_message("m5", conversation_id="g2", seconds=40), "u1")
    client.registry.record_message(make_message("m6", conversation_id="g1", seconds=41), "u1")
    client.registry.record_message(
        make_message("m7", conversation_id="g2", sender_id="u1", seconds=42), "u1",
    )

    g2 = client.registry.get("g2")
    assert g2.unread_count == 5
    assert g2.last_message.message_id == "m7"
    assert client.registry.get("g1").unread_count == 0
    assert client.registry.get("g1").last_message.message_id == "m6"


def test_search_matches_name_description_and_preview():
    client = make_client()
    client.registry.upsert(make_conversation("a", name="Tea lovers"))
    client.registry.upsert(make_conversation("b", name="Other", description="green TEA"))
    client.registry.upsert(make_conversation("c", name="Misc"))
    client.registry.record_message(make_message("m1", conversation_id="c", content="oolong tea?"), "u1")

    assert {c.id for c in client.registry.search("tea")} == {"a", "b", "c"}
    assert {c.id for c in client.registry.search("lovers")} == {"a"}


def test_presence_updates_private_peer():
    client = make_client()
    client.registry.upsert(make_conversation("p1", kind=PRIVATE, peer_id="u9"))

    client.registry.apply_presence("u9", False, at(99))

    conversation = client.registry.get("p1")
    assert conversation.peer_online is False
    assert conversation.peer_last_seen == at(99)


def test_member_join_and_leave():
    client = make_client()
    client.registry.upsert(
        make_conversation("g1", member_count=1, members=(Member("u1", "U1"),)),
    )

    client.registry.member_joined("g1", Member("u2", "U2"))
    client.registry.member_joined("g1", Member("u2", "U2"))
    client.registry.member_left("g1", "u1")

    conversation = client.registry.get("g1")
    assert conversation.member_count == 1
    assert [m.user_id for m in conversation.members] == ["u2"]


@pytest.mark.asyncio
async def test_load_members_fetches_once():
    transport = _transport()
    transport.members["g1"] = [Member("u1", "U1"), Member("u2", "U2")]
    client = make_client(transport)
    await client.registry.load()

    first = await client.registry.load_members("g1")
    second = await client.registry.load_members("g1")

    assert first == second
    assert len(transport.called("list_members")) == 1
    assert client.registry.get("g1").member_count == 2


@pytest.mark.asyncio
async def test_create_private_reuses_existing_conversation():
    transport = _transport()
    client = make_client(transport)
    await client.registry.load()

    existing = await client.registry.create_private("u9")
    created = await client.registry.create_private("u5")

    assert existing.id == "p1"
    assert created.id == "p-u5"
    assert transport.called("create_private") == [("u5",)]
    assert client.registry.get("p-u5") is not None


@pytest.mark.asyncio
async def test_create_group_registers_conversation():
    transport = _transport()
    client = make_client(transport)

    group = await client.registry.create_group("Team", "daily", ["u2", "u3"])

    assert client.registry.get(group.id).member_count == 3
    assert transport.called("create_group") == [("Team", ("u2", "u3"))]


@pytest.mark.asyncio
async def test_update_settings_rolls_back_on_failure():
    transport = _transport()
    client = make_client(transport)
    await client.registry.load()
    transport.fail("update_conversation_settings", ForbiddenError("no", status=403))

    with pytest.raises(ForbiddenError):
        await client.registry.update_settings("g1", muted=True)

    assert client.registry.get("g1").muted is False
    assert len(client.notifier.notices) == 1


@pytest.mark.asyncio
async def test_update_settings_rejects_unknown_fields():
    client = make_client(_transport())
    await client.registry.load()

    with pytest.raises(ValueError):
        await client.registry.update_settings("g1", colour="red")


@pytest.mark.asyncio
async def test_delete_removes_conversation_and_deselects():
    transport = _transport()
    client = make_client(transport)
    await client.registry.load()
    await client.registry.select("g1")

    await client.registry.delete("g1")

    assert client.registry.get("g1") is None
    assert client.registry.active_id is None
    assert "g1" not in client.cache


@pytest.mark.asyncio
async def test_auth_failure_on_private_list_notifies_login():
    transport = _transport()
    client = make_client(transport)
    original = transport.list_conversations

    async def expired_private(kind):
        if kind == PRIVATE:
            raise AuthExpiredError("expired", status=401)
        return await original(kind)

    transport.list_conversations = expired_private

    await client.registry.load()

    assert client.notifier.notices[0].action == NoticeAction.LOGIN
