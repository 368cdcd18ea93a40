# milestone/infra/sql.py
from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncSession, async_sessionmaker, create_async_engine
)

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
)


def normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    # never queue more sessions than the pool can hand out
    async with sem:
        yield


def make_async_engine(database_url: str, pool_size: int = 10,
                      gate_limit: Optional[int] = None):
    """Returns (engine, session factory, gated) for one database URL."""
    db_url = normalize_async_url(database_url)
    kw = dict(pool_pre_ping=True)
    if db_url.startswith("postgresql+asyncpg://"):
        kw.update(pool_size=pool_size, max_overflow=pool_size,
                  pool_timeout=30)

    engine = create_async_engine(db_url, **kw)

    if db_url.startswith("sqlite+aiosqlite://"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            for pragma in SQLITE_PRAGMAS:
                cur.execute(pragma)
            cur.close()

    sessions = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    gate = asyncio.Semaphore(max(1, gate_limit or pool_size))

    def gated():
        return _gated(gate)

    return engine, sessions, gated
