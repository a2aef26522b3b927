import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, Callable, Optional

from sqlalchemy import MetaData, event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from .. import config

Gated = Callable[[], AsyncContextManager[None]]

_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)


def async_url(url: str) -> str:
    for plain, driver in _ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


class Database:
    """Engine, session factory and the gate every store goes through.

    The gate caps how many coroutines hold a connection at once, so a burst
    of webhooks or plugin polls waits here instead of on the pool timeout.
    """

    def __init__(self, url: str, gate_limit: Optional[int] = None) -> None:
        self.url = async_url(url)
        kw = dict(future=True, pool_pre_ping=True)
        if self.is_postgres:
            kw.update(
                pool_size=config.DB_POOL_SIZE,
                max_overflow=config.DB_MAX_OVERFLOW,
                pool_timeout=config.DB_POOL_TIMEOUT,
            )
        self.engine: AsyncEngine = create_async_engine(self.url, **kw)
        if self.is_sqlite:
            event.listen(self.engine.sync_engine, "connect", _sqlite_pragmas)

        self.sessions = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        if gate_limit is None:
            gate_limit = config.DB_GATE_LIMIT or (
                config.DB_POOL_SIZE if self.is_postgres else 10
            )
        self._gate = asyncio.Semaphore(max(1, gate_limit))

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite+aiosqlite://")

    @property
    def is_postgres(self) -> bool:
        return self.url.startswith("postgresql+asyncpg://")

    @asynccontextmanager
    async def gated(self):
        await self._gate.acquire()
        try:
            yield
        finally:
            self._gate.release()

    async def create_all(self, metadata: MetaData) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()


def insert_or_skip(dialect_name: str, table, *conflict_columns: str):
    """INSERT ... ON CONFLICT (cols) DO NOTHING for the running backend.

    Only a conflict on ``conflict_columns`` is skipped; any other unique
    violation still raises.
    """
    mod = postgresql if dialect_name == "postgresql" else sqlite
    return mod.insert(table).on_conflict_do_nothing(
        index_elements=list(conflict_columns)
    )


def _sqlite_pragmas(dbapi_connection, _):
    # concurrent readers during webhook bursts; FKs are off by default
    cur = dbapi_connection.cursor()
    cur.execute("PRAGMA journal_mode=WAL;")
    cur.execute("PRAGMA busy_timeout=5000;")
    cur.execute("PRAGMA synchronous=NORMAL;")
    cur.execute("PRAGMA foreign_keys=ON;")
    cur.close()
