"""Key-value backends: SQL (on SQLite) end to end, Redis against a fake client."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import WatchError

from milestone.errors import StorageError
from milestone.model.kv._redis import KVStore as RedisKVStore


# ── SQL backend ───────────────────────────────────────────────────────────


class TestSqlStore:
    async def test_get_put_delete(self, kv):
        assert await kv.get("k") is None
        await kv.put("k", "v1")
        assert await kv.get("k") == "v1"
        await kv.put("k", "v2")
        assert await kv.get("k") == "v2"
        await kv.delete("k")
        assert await kv.get("k") is None

    async def test_set_if_absent_only_once(self, kv):
        assert await kv.set_if_absent("evt:a", "1", ttl_seconds=60) is True
        assert await kv.set_if_absent("evt:a", "1", ttl_seconds=60) is False
        assert await kv.get("evt:a") == "1"

    async def test_expired_key_reads_absent_and_can_be_reclaimed(self, kv):
        with patch("milestone.model.kv._sql.now_ts", return_value=1000.0):
            assert await kv.set_if_absent("lease", "1", ttl_seconds=10)
            assert await kv.get("lease") == "1"
        with patch("milestone.model.kv._sql.now_ts", return_value=1011.0):
            assert await kv.get("lease") is None
            assert await kv.set_if_absent("lease", "2", ttl_seconds=10)
            assert await kv.get("lease") == "2"

    async def test_concurrent_set_if_absent_has_one_winner(self, kv):
        results = await asyncio.gather(*[
            kv.set_if_absent("evt:race", "1", ttl_seconds=60)
            for _ in range(10)
        ])
        assert results.count(True) == 1

    async def test_compare_and_set(self, kv):
        assert await kv.compare_and_set("total", None, "10") is True
        assert await kv.compare_and_set("total", None, "20") is False
        assert await kv.compare_and_set("total", "5", "20") is False
        assert await kv.compare_and_set("total", "10", "20") is True
        assert await kv.get("total") == "20"

    async def test_ping(self, kv):
        await kv.ping()

    async def test_driver_errors_become_storage_errors(self, kv):
        kv.sessions = MagicMock(side_effect=OSError("disk gone"))
        with pytest.raises(StorageError):
            await kv.get("k")


# ── Redis backend ─────────────────────────────────────────────────────────


class FakePipeline:
    def __init__(self, current, exec_error=None):
        self.current = current
        self.exec_error = exec_error
        self.queued = []
        self.unwatched = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def watch(self, key):
        self.watched = key

    async def get(self, key):
        return self.current

    async def unwatch(self):
        self.unwatched = True

    def multi(self):
        pass

    def set(self, key, value):
        self.queued.append((key, value))

    async def execute(self):
        if self.exec_error:
            raise self.exec_error
        return [True]


def _redis(**kw):
    r = MagicMock()
    r.get = AsyncMock(**kw.get("get", {}))
    r.set = AsyncMock(**kw.get("set", {}))
    r.delete = AsyncMock()
    r.ping = AsyncMock()
    return r


class TestRedisStore:
    async def test_set_if_absent_uses_setnx_with_ttl(self):
        r = _redis(set={"return_value": True})
        store = RedisKVStore(r)
        assert await store.set_if_absent("evt:1", "1", ttl_seconds=99) is True
        r.set.assert_awaited_once_with("evt:1", "1", nx=True, ex=99)

    async def test_set_if_absent_existing_key(self):
        store = RedisKVStore(_redis(set={"return_value": None}))
        assert await store.set_if_absent("evt:1", "1", ttl_seconds=99) is False

    async def test_errors_become_storage_errors(self):
        store = RedisKVStore(
            _redis(get={"side_effect": RedisConnectionError("down")})
        )
        with pytest.raises(StorageError):
            await store.get("total_cents")

    async def test_cas_writes_when_unchanged(self):
        r = _redis()
        pipe = FakePipeline(current="100")
        r.pipeline.return_value = pipe
        store = RedisKVStore(r)
        assert await store.compare_and_set("total_cents", "100", "150")
        assert pipe.watched == "total_cents"
        assert pipe.queued == [("total_cents", "150")]

    async def test_cas_refuses_when_value_differs(self):
        r = _redis()
        pipe = FakePipeline(current="120")
        r.pipeline.return_value = pipe
        store = RedisKVStore(r)
        assert not await store.compare_and_set("total_cents", "100", "150")
        assert pipe.unwatched
        assert pipe.queued == []

    async def test_cas_conflict_during_exec(self):
        r = _redis()
        r.pipeline.return_value = FakePipeline(
            current=None, exec_error=WatchError("changed")
        )
        store = RedisKVStore(r)
        assert not await store.compare_and_set("total_cents", None, "150")
