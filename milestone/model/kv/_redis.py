# model/kv/_redis.py
from __future__ import annotations
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from ...errors import StorageError


class KVStore:
    """Redis keys are stored as plain strings (decode_responses=True)."""

    backend = "redis"

    def __init__(self, r: redis.Redis) -> None:
        self.r = r

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.r.get(key)
        except RedisError as e:
            raise StorageError(f"redis get {key}: {e}") from e

    async def put(self, key: str, value: str,
                  ttl_seconds: Optional[int] = None) -> None:
        try:
            await self.r.set(key, value, ex=ttl_seconds)
        except RedisError as e:
            raise StorageError(f"redis set {key}: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self.r.delete(key)
        except RedisError as e:
            raise StorageError(f"redis delete {key}: {e}") from e

    async def set_if_absent(self, key: str, value: str,
                            ttl_seconds: Optional[int] = None) -> bool:
        # SET NX is the atomic gate; expired keys count as absent
        try:
            ok = await self.r.set(key, value, nx=True, ex=ttl_seconds)
        except RedisError as e:
            raise StorageError(f"redis setnx {key}: {e}") from e
        return bool(ok)

    async def compare_and_set(self, key: str, expected: Optional[str],
                              new: str) -> bool:
        """
        Optimistic WATCH/MULTI/EXEC: write `new` only if the key still holds
        `expected` (None = key absent). False on any concurrent change.
        """
        try:
            async with self.r.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                current = await pipe.get(key)
                if current != expected:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, new)
                await pipe.execute()
                return True
        except WatchError:
            return False
        except RedisError as e:
            raise StorageError(f"redis cas {key}: {e}") from e

    async def ping(self) -> None:
        try:
            await self.r.ping()
        except RedisError as e:
            raise StorageError(f"redis ping: {e}") from e

    async def close(self) -> None:
        await self.r.aclose()
