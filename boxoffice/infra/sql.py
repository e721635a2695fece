from __future__ import annotations
import asyncio
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

ASYNC_DRIVERS = {
    "sqlite://": "sqlite+aiosqlite://",
    "postgresql://": "postgresql+asyncpg://",
    # Heroku-style
    "postgres://": "postgresql+asyncpg://",
}

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
)


def normalize_async_url(url: str) -> str:
    for prefix, driver in ASYNC_DRIVERS.items():
        if url.startswith(prefix):
            return driver + url[len(prefix):]
    return url


def _pool_options(url: str) -> Dict[str, int]:
    if not url.startswith("postgresql+asyncpg://"):
        return {}
    return {
        "pool_size": int(os.getenv("DB_POOL_SIZE", "10")),
        "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "10")),
        "pool_timeout": int(os.getenv("DB_POOL_TIMEOUT", "30")),
    }


class Database:
    """An async engine plus a gate in front of its pool.

    The gate admits at most as many callers as the pool has connections, so
    a burst of webhooks waits on the semaphore instead of timing out inside
    the pool.
    """

    def __init__(self, engine: AsyncEngine, gate_limit: int) -> None:
        self.engine = engine
        self.gate = asyncio.Semaphore(max(1, gate_limit))

    @classmethod
    def from_url(cls, database_url: str) -> "Database":
        url = normalize_async_url(database_url)
        pool = _pool_options(url)
        engine = create_async_engine(url, pool_pre_ping=True, **pool)

        if url.startswith("sqlite+aiosqlite://"):
            @event.listens_for(engine.sync_engine, "connect")
            def _sqlite_pragmas(dbapi_connection, _):
                cur = dbapi_connection.cursor()
                for pragma in SQLITE_PRAGMAS:
                    cur.execute(pragma)
                cur.close()

        default_limit = pool.get("pool_size", 10)
        gate_limit = int(os.getenv("DB_GATE_LIMIT", str(default_limit)))
        return cls(engine, gate_limit)

    @asynccontextmanager
    async def begin(self) -> AsyncIterator[AsyncConnection]:
        """Gated connection inside a transaction (commit on exit)."""
        async with self.gate:
            async with self.engine.begin() as conn:
                yield conn

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[AsyncConnection]:
        """Gated connection without an explicit transaction; for reads."""
        async with self.gate:
            async with self.engine.connect() as conn:
                yield conn

    async def dispose(self) -> None:
        await self.engine.dispose()
