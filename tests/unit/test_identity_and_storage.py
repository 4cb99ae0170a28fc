from __future__ import annotations

import json
import logging
from datetime import timedelta

import jwt
import pytest

from chat_core.application.dto.notice import Notice, NoticeAction, NoticeLevel
from chat_core.application.exceptions import AuthExpiredError
from chat_core.domain.value_objects.enums import DeliveryStatus
from chat_core.infrastructure.auth.jwt_identity import JwtIdentityProvider
from chat_core.infrastructure.notify.logging_notifier import LoggingNotifier
from chat_core.infrastructure.storage.memory import InMemoryQueueStorage
from chat_core.infrastructure.storage.redis_queue import RedisQueueStorage
from chat_core.infrastructure.transport.serializer import (
    deserialize_frame,
    dumps,
    serialize_frame,
)
from tests.conftest import BASE_TIME, FakeClock, at

SECRET = "unit-test-secret-that-is-long-enough"


def _token(claims: dict, secret: str = SECRET) -> str:
    return jwt.encode(claims, secret, algorithm="HS256")


def test_identity_from_verified_token():
    exp = int((BASE_TIME + timedelta(minutes=5)).timestamp())
    clock = FakeClock()
    identity = JwtIdentityProvider(
        _token({"sub": "u1", "name": "Ann", "exp": exp}), secret=SECRET, clock=clock,
    )

    assert identity.user_id == "u1"
    assert identity.user_name == "Ann"
    assert identity.is_expired() is False

    clock.advance(300)
    assert identity.is_expired() is True


def test_identity_without_secret_skips_signature_check():
    identity = JwtIdentityProvider(_token({"sub": "u7", "username": "seven"}, secret="other-secret-also-long-enough"))

    assert identity.user_id == "u7"
    assert identity.user_name == "seven"
    assert identity.is_expired() is False


def test_bad_signature_is_an_auth_error():
    token = _token({"sub": "u1"}, secret="a-completely-different-signing-key")

    with pytest.raises(AuthExpiredError):
        JwtIdentityProvider(token, secret=SECRET)


def test_token_without_subject_is_rejected():
    with pytest.raises(AuthExpiredError):
        JwtIdentityProvider(_token({"name": "nobody"}), secret=SECRET)

    with pytest.raises(AuthExpiredError):
        JwtIdentityProvider("not-a-jwt")


def test_replace_token_keeps_old_identity_on_failure():
    identity = JwtIdentityProvider(_token({"sub": "u1"}), secret=SECRET)

    with pytest.raises(AuthExpiredError):
        identity.replace_token("garbage")
    assert identity.user_id == "u1"

    fresh = _token({"sub": "u1", "name": "Renewed"})
    identity.replace_token(fresh)
    assert identity.auth_token() == fresh
    assert identity.user_name == "Renewed"


@pytest.mark.asyncio
async def test_memory_storage_round_trip_and_clear():
    storage = InMemoryQueueStorage()
    records = [{"temp_id": "tmp-1", "content": "hi"}]

    await storage.save("c1", records)
    records[0]["content"] = "mutated"

    assert await storage.load("c1") == [{"temp_id": "tmp-1", "content": "hi"}]
    assert await storage.conversations() == ["c1"]

    await storage.save("c1", [])
    assert await storage.load("c1") == []
    assert await storage.conversations() == []


class _Pipeline:
    def __init__(self, redis: "_Redis") -> None:
        self._redis = redis
        self._ops: list[tuple] = []

    async def __aenter__(self) -> "_Pipeline":
        return self

    async def __aexit__(self, *exc) -> None:
        return None

    def set(self, key, value):
        self._ops.append(("set", key, value))

    def delete(self, key):
        self._ops.append(("delete", key))

    def sadd(self, key, member):
        self._ops.append(("sadd", key, member))

    def srem(self, key, member):
        self._ops.append(("srem", key, member))

    async def execute(self):
        for op, key, *rest in self._ops:
            if op == "set":
                self._redis.values[key] = rest[0]
            elif op == "delete":
                self._redis.values.pop(key, None)
            elif op == "sadd":
                self._redis.sets.setdefault(key, set()).add(rest[0])
            else:
                self._redis.sets.get(key, set()).discard(rest[0])
        return []


class _Redis:
    """Just the commands the queue storage issues."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.sets: dict[str, set] = {}

    async def get(self, key):
        return self.values.get(key)

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    def pipeline(self, transaction=True):
        return _Pipeline(self)


@pytest.mark.asyncio
async def test_redis_storage_keys_and_index():
    redis = _Redis()
    storage = RedisQueueStorage(redis, prefix="test:outbox")

    await storage.save("c2", [{"temp_id": "tmp-2"}])
    await storage.save("c1", [{"temp_id": "tmp-1"}])

    assert json.loads(redis.values["test:outbox:c1"]) == [{"temp_id": "tmp-1"}]
    assert await storage.conversations() == ["c1", "c2"]
    assert await storage.load("c2") == [{"temp_id": "tmp-2"}]

    await storage.save("c2", [])
    assert await storage.conversations() == ["c1"]
    assert await storage.load("c2") == []


@pytest.mark.asyncio
async def test_redis_storage_discards_unreadable_payload():
    redis = _Redis()
    redis.values["chat_core:outbox:c1"] = "{not json"
    storage = RedisQueueStorage(redis)

    assert await storage.load("c1") == []


def test_frames_round_trip_enums_and_datetimes():
    raw = serialize_frame("send_message", {"status": DeliveryStatus.QUEUED, "at": at(0), "ids": ("a",)})

    event, data = deserialize_frame(raw)

    assert event == "send_message"
    assert data == {"status": "queued", "at": "2024-01-01T12:00:00+00:00", "ids": ["a"]}
    assert json.loads(dumps({"users": frozenset({"u1"})})) == {"users": ["u1"]}


@pytest.mark.parametrize("raw", ['["x"]', '{"data": {}}', '{"event": 5}'])
def test_malformed_frames_rejected(raw):
    with pytest.raises(ValueError):
        deserialize_frame(raw)


def test_frame_without_data_yields_empty_dict():
    assert deserialize_frame('{"event": "ping"}') == ("ping", {})


def test_logging_notifier_logs_and_forwards(caplog):
    notifier = LoggingNotifier()
    received = []
    notifier.subscribe(received.append)

    def broken(notice):
        raise RuntimeError("listener bug")

    notifier.subscribe(broken)
    notice = Notice(level=NoticeLevel.ERROR, message="Send failed", action=NoticeAction.RETRY)

    with caplog.at_level(logging.INFO):
        notifier.notify(notice)

    assert received == [notice]
    assert "Send failed [retry]" in caplog.text
    assert "Notice listener failed" in caplog.text
