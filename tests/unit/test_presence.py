from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from chat_core.services.presence import LocalTyping, PresenceTracker, TypingTracker
from tests.conftest import FakeClock, FakeTransport, at


def _tracker(clock: FakeClock) -> TypingTracker:
    return TypingTracker(ttl=timedelta(seconds=3), clock=clock)


def test_typing_expires_after_ttl(clock):
    typing = _tracker(clock)
    typing.started("c1", "u3", "U3")

    clock.advance(2.9)
    assert typing.is_typing("c1", "u3")

    clock.advance(0.1)
    assert typing.typing("c1") == []


def test_refresh_extends_typing(clock):
    typing = _tracker(clock)
    typing.started("c1", "u3")
    clock.advance(2)
    typing.started("c1", "u3")
    clock.advance(2)

    assert typing.is_typing("c1", "u3")


def test_sweep_notifies_listeners(clock):
    typing = _tracker(clock)
    changed = []
    typing.subscribe(changed.append)
    typing.started("c1", "u3")
    typing.started("c2", "u4")

    clock.advance(5)

    assert typing.sweep() == 2
    assert sorted(changed) == ["c1", "c1", "c2", "c2"]


def test_stop_and_clear(clock):
    typing = _tracker(clock)
    typing.started("c1", "u3")
    typing.started("c1", "u4")
    typing.started("c2", "u5")

    typing.stopped("c1", "u3")
    assert [e.user_id for e in typing.typing("c1")] == ["u4"]

    typing.clear("c1")
    assert typing.typing("c1") == []

    typing.clear_all()
    assert typing.typing("c2") == []


@pytest.mark.asyncio
async def test_tick_sweeps_periodically(clock):
    ticks = []

    async def sleep(delay):
        ticks.append(delay)
        clock.advance(delay)
        await asyncio.sleep(0)

    typing = TypingTracker(ttl=timedelta(seconds=3), sweep_interval=1.0, clock=clock, sleep=sleep)
    typing.started("c1", "u3")
    removed = []
    typing.subscribe(removed.append)

    await typing.start()
    for _ in range(10):
        await asyncio.sleep(0)
    await typing.stop()

    assert removed == ["c1"]
    assert ticks and all(t == 1.0 for t in ticks)


def test_presence_tracks_online_set():
    presence = PresenceTracker()
    presence.mark_online("u2")
    presence.mark_online("u3")
    presence.mark_offline("u3", at(30))

    assert presence.online_users == frozenset({"u2"})
    assert presence.last_seen("u3") == at(30)

    presence.mark_online("u3")
    assert presence.last_seen("u3") is None


@pytest.mark.asyncio
async def test_local_typing_emits_once_per_burst():
    transport = FakeTransport()
    release = asyncio.Event()

    async def sleep(delay):
        await release.wait()

    local = LocalTyping(transport, idle=2.0, sleep=sleep)
    await local.keystroke("c1")
    await local.keystroke("c1")
    await local.keystroke("c1")

    assert transport.emitted == [("typing_start", "c1")]

    release.set()
    for _ in range(5):
        await asyncio.sleep(0)

    assert transport.emitted == [("typing_start", "c1"), ("typing_stop", "c1")]
    assert local.active_conversation is None


@pytest.mark.asyncio
async def test_local_typing_switch_stops_previous():
    transport = FakeTransport()

    async def sleep(delay):
        await asyncio.Event().wait()

    local = LocalTyping(transport, sleep=sleep)
    await local.keystroke("c1")
    await local.keystroke("c2")
    await local.stop()

    assert transport.emitted == [
        ("typing_start", "c1"),
        ("typing_stop", "c1"),
        ("typing_start", "c2"),
        ("typing_stop", "c2"),
    ]


@pytest.mark.asyncio
async def test_local_typing_silent_when_disconnected():
    transport = FakeTransport(is_connected=False)
    local = LocalTyping(transport, sleep=lambda d: asyncio.sleep(0))

    await local.keystroke("c1")
    await local.stop()

    assert transport.emitted == []
