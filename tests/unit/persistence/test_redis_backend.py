"""Unit tests for RedisCacheBackend using fakeredis."""

from __future__ import annotations

import json
from unittest.mock import patch

import fakeredis
import pytest

from scoresync.core.exceptions import CacheError
from scoresync.persistence.lock import CacheRunLock
from scoresync.persistence.redis_backend import RedisCacheBackend


@pytest.fixture
def fake_server():
    return fakeredis.FakeServer()


@pytest.fixture
def backend(fake_server):
    with patch("redis.Redis", return_value=fakeredis.FakeRedis(server=fake_server, decode_responses=True)):
        return RedisCacheBackend(host="localhost", port=6379, db=0)


class TestGet:
    def test_returns_none_on_miss(self, backend):
        assert backend.get("nonexistent") is None

    def test_returns_stored_string(self, backend):
        data = {"course_id": "101", "score": 3.5}
        backend.setex("grade-snapshot:101:self", 300, json.dumps(data))
        assert backend.get("grade-snapshot:101:self") == json.dumps(data)


class TestSetex:
    def test_sets_ttl(self, backend, fake_server):
        backend.setex("mykey", 60, "v")
        raw = fakeredis.FakeRedis(server=fake_server)
        assert 0 < raw.ttl("scoresync:mykey") <= 60

    def test_overwrites_existing_value(self, backend):
        backend.setex("k", 60, "old")
        backend.setex("k", 60, "new")
        assert backend.get("k") == "new"


class TestSetIfAbsent:
    def test_first_caller_wins(self, backend):
        assert backend.set_if_absent("lock:score-update:101", 60, "a") is True
        assert backend.set_if_absent("lock:score-update:101", 60, "b") is False
        assert backend.get("lock:score-update:101") == "a"

    def test_available_again_after_delete(self, backend):
        backend.set_if_absent("k", 60, "a")
        backend.delete("k")
        assert backend.set_if_absent("k", 60, "b") is True


class TestDelete:
    def test_removes_existing_key(self, backend):
        backend.setex("del_me", 60, "val")
        backend.delete("del_me")
        assert backend.get("del_me") is None

    def test_noop_on_missing_key(self, backend):
        backend.delete("never_existed")


class TestRunLockOverRedis:
    def test_second_lock_instance_is_refused(self, backend):
        first = CacheRunLock(backend, ttl=60)
        second = CacheRunLock(backend, ttl=60)
        assert first.acquire("101") is True
        assert second.acquire("101") is False
        first.release("101")
        assert second.acquire("101") is True

    def test_release_after_expiry_keeps_new_owner_lock(self, backend, fake_server):
        first = CacheRunLock(backend, ttl=60)
        second = CacheRunLock(backend, ttl=60)
        first.acquire("101")
        # lock expired and was taken over
        fakeredis.FakeRedis(server=fake_server).delete("scoresync:lock:score-update:101")
        assert second.acquire("101") is True

        first.release("101")

        assert CacheRunLock(backend, ttl=60).acquire("101") is False


class TestNamespace:
    def test_keys_are_prefixed(self, backend, fake_server):
        backend.setex("grade-snapshot:101:self", 60, "{}")
        raw = fakeredis.FakeRedis(server=fake_server, decode_responses=True)
        assert raw.get("scoresync:grade-snapshot:101:self") == "{}"
        assert raw.get("grade-snapshot:101:self") is None

    def test_empty_namespace_uses_raw_keys(self, fake_server):
        with patch("redis.Redis", return_value=fakeredis.FakeRedis(server=fake_server, decode_responses=True)):
            bare = RedisCacheBackend(namespace="")
        bare.setex("k", 60, "v")
        assert fakeredis.FakeRedis(server=fake_server, decode_responses=True).get("k") == "v"


class TestDeleteIfEquals:
    def test_deletes_matching_value(self, backend):
        backend.setex("lock:score-update:101", 60, "owner-a")
        assert backend.delete_if_equals("lock:score-update:101", "owner-a") is True
        assert backend.get("lock:score-update:101") is None

    def test_keeps_other_value(self, backend):
        backend.setex("lock:score-update:101", 60, "owner-b")
        assert backend.delete_if_equals("lock:score-update:101", "owner-a") is False
        assert backend.get("lock:score-update:101") == "owner-b"

    def test_missing_key_is_not_deleted(self, backend):
        assert backend.delete_if_equals("never_existed", "owner-a") is False


class TestErrorWrapping:
    def test_get_wraps_redis_error(self):
        b = RedisCacheBackend.__new__(RedisCacheBackend)
        b._client = None
        b._namespace = "scoresync"
        with pytest.raises(CacheError):
            b.get("k")

    def test_set_if_absent_wraps_redis_error(self):
        b = RedisCacheBackend.__new__(RedisCacheBackend)
        b._client = None
        b._namespace = "scoresync"
        with pytest.raises(CacheError):
            b.set_if_absent("k", 60, "v")

    def test_delete_if_equals_wraps_redis_error(self):
        b = RedisCacheBackend.__new__(RedisCacheBackend)
        b._client = None
        b._namespace = "scoresync"
        with pytest.raises(CacheError):
            b.delete_if_equals("k", "v")
