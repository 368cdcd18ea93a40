# model/kv/_sql.py
"""
SQL key-value backend (PostgreSQL via asyncpg, SQLite via aiosqlite) with
the same semantics as the Redis backend:
- one row per key, optional expiry (epoch seconds)
- expired rows read as absent and may be claimed again by set_if_absent
- conditional writes via INSERT ... ON CONFLICT and guarded UPDATEs
"""
from __future__ import annotations
from typing import Callable, AsyncContextManager, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from ...errors import StorageError
from ...helpers import now_ts

Gated = Callable[[], AsyncContextManager[None]]


SQL_CREATE_KV = r"""
-- expires_at: epoch seconds when the key stops existing (NULL = never)
CREATE TABLE IF NOT EXISTS kv (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    expires_at  DOUBLE PRECISION
);
"""

SQL_GET = r"""
SELECT value FROM kv
WHERE key = :key AND (expires_at IS NULL OR expires_at > :now)
"""

SQL_PUT = r"""
INSERT INTO kv (key, value, expires_at) VALUES (:key, :value, :expires_at)
ON CONFLICT (key) DO UPDATE
    SET value = excluded.value, expires_at = excluded.expires_at
"""

SQL_INSERT_IF_ABSENT = r"""
INSERT INTO kv (key, value, expires_at) VALUES (:key, :value, :expires_at)
ON CONFLICT (key) DO UPDATE
    SET value = excluded.value, expires_at = excluded.expires_at
    WHERE kv.expires_at IS NOT NULL AND kv.expires_at <= :now
"""

SQL_UPDATE_IF_EQUAL = r"""
UPDATE kv SET value = :new, expires_at = NULL
WHERE key = :key AND value = :expected
  AND (expires_at IS NULL OR expires_at > :now)
"""

SQL_DELETE = r"""
DELETE FROM kv WHERE key = :key
"""


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.execute(text(SQL_CREATE_KV))


class KVStore:
    backend = "sql"

    def __init__(self, engine: AsyncEngine, sessions: async_sessionmaker,
                 gated: Gated) -> None:
        self.engine = engine
        self.sessions = sessions
        self.gated = gated

    async def _execute(self, sql: str, params: dict):
        try:
            async with self.gated():
                async with self.sessions() as session:
                    async with session.begin():
                        result = await session.execute(text(sql), params)
                        if result.returns_rows:
                            return result.first()
                        return result.rowcount
        except (SQLAlchemyError, OSError) as e:
            raise StorageError(f"sql kv: {e}") from e

    @staticmethod
    def _expiry(ttl_seconds: Optional[int]) -> Optional[float]:
        return None if ttl_seconds is None else now_ts() + ttl_seconds

    async def get(self, key: str) -> Optional[str]:
        row = await self._execute(SQL_GET, {"key": key, "now": now_ts()})
        return None if row is None else row[0]

    async def put(self, key: str, value: str,
                  ttl_seconds: Optional[int] = None) -> None:
        await self._execute(SQL_PUT, {
            "key": key, "value": value,
            "expires_at": self._expiry(ttl_seconds),
        })

    async def delete(self, key: str) -> None:
        await self._execute(SQL_DELETE, {"key": key})

    async def set_if_absent(self, key: str, value: str,
                            ttl_seconds: Optional[int] = None) -> bool:
        n = await self._execute(SQL_INSERT_IF_ABSENT, {
            "key": key, "value": value,
            "expires_at": self._expiry(ttl_seconds),
            "now": now_ts(),
        })
        return n == 1

    async def compare_and_set(self, key: str, expected: Optional[str],
                              new: str) -> bool:
        if expected is None:
            return await self.set_if_absent(key, new)
        n = await self._execute(SQL_UPDATE_IF_EQUAL, {
            "key": key, "expected": expected, "new": new, "now": now_ts(),
        })
        return n == 1

    async def ping(self) -> None:
        await self._execute("SELECT 1", {})

    async def close(self) -> None:
        await self.engine.dispose()
