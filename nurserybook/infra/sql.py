import os
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncContextManager, Callable, Dict, Tuple

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
)

Gated = Callable[[], AsyncContextManager[None]]

# plain scheme -> async driver scheme
_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)

_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    # writers wait for the lock instead of failing with "database is locked"
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA foreign_keys=ON;",
)


@dataclass
class GatedAsyncSession:
    """A session plus the engine's gate; model functions take this."""
    session: AsyncSession
    gated: Gated


def _async_url(url: str) -> str:
    for plain, driver in _ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def _is_postgres(url: str) -> bool:
    return url.startswith("postgresql+asyncpg://")


def _pool_kwargs(url: str) -> Dict[str, int]:
    if not _is_postgres(url):
        return {}
    return {
        "pool_size": int(os.getenv("DB_POOL_SIZE", "10")),
        "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "10")),
        "pool_timeout": int(os.getenv("DB_POOL_TIMEOUT", "30")),
    }


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        for pragma in _SQLITE_PRAGMAS:
            cur.execute(pragma)
        cur.close()


# DB-GATE: bounds concurrent units of work to what the pool can serve
def _make_gate(limit: int) -> Gated:
    sem = asyncio.Semaphore(max(1, limit))

    @asynccontextmanager
    async def gated():
        async with sem:
            yield

    return gated


def make_async_engine(
    database_url: str,
) -> Tuple[AsyncEngine, async_sessionmaker, Gated]:
    """Engine, session factory and the `async with gated():` gate.

    The gate defaults to the postgres pool size (10 on sqlite) and can be
    overridden with DB_GATE_LIMIT.
    """
    url = _async_url(database_url)
    pool = _pool_kwargs(url)
    engine = create_async_engine(url, pool_pre_ping=True, **pool)
    if url.startswith("sqlite+aiosqlite://"):
        _install_sqlite_pragmas(engine)

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    gate_limit = int(os.getenv("DB_GATE_LIMIT", pool.get("pool_size", 10)))
    return engine, SessionAsync, _make_gate(gate_limit)


async def create_schema(engine: AsyncEngine, metadata) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
