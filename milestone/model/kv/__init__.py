# model/kv/__init__.py
from __future__ import annotations
from typing import Optional, Protocol

from ...config import Settings


class KVStore(Protocol):
    backend: str

    async def get(self, key: str) -> Optional[str]: ...

    async def put(self, key: str, value: str,
                  ttl_seconds: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def set_if_absent(self, key: str, value: str,
                            ttl_seconds: Optional[int] = None) -> bool: ...

    async def compare_and_set(self, key: str, expected: Optional[str],
                              new: str) -> bool: ...

    async def ping(self) -> None: ...

    async def close(self) -> None: ...


# Factory keeps server.py simple and constructor-agnostic:
async def new_store(settings: Settings) -> KVStore:
    if settings.kv_backend == "sql":
        if not settings.database_url:
            raise RuntimeError("KVStore(sql) requires DATABASE_URL")
        from ...infra.sql import make_async_engine
        from ._sql import KVStore as _SqlKVStore, create_schema

        engine, sessions, gated = make_async_engine(
            settings.database_url,
            pool_size=settings.db_pool_size,
            gate_limit=settings.db_gate_limit,
        )
        await create_schema(engine)
        return _SqlKVStore(engine, sessions, gated)

    if settings.kv_backend == "redis":
        import redis.asyncio as redis
        from ._redis import KVStore as _RedisKVStore

        r = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            max_connections=settings.redis_max_conn,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
        return _RedisKVStore(r)

    raise RuntimeError(f"unknown KV_BACKEND {settings.kv_backend!r}")


__all__ = ["KVStore", "new_store"]
