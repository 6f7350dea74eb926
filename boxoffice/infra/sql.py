import os
import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Callable, AsyncContextManager
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
)
from contextlib import asynccontextmanager

Gated = Callable[[], AsyncContextManager[None]]


@dataclass
class GatedAsyncSession:
    session: AsyncSession
    gated: Gated


@dataclass
class Database:
    engine: AsyncEngine
    sessions: async_sessionmaker
    gated: Gated

    @asynccontextmanager
    async def open(self) -> AsyncIterator[GatedAsyncSession]:
        async with self.sessions() as session:
            yield GatedAsyncSession(session=session, gated=self.gated)


def _normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


# DB-GATE
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def _install_sqlite_hooks(engine: AsyncEngine) -> None:
    # SQLite has no SELECT ... FOR UPDATE. Every transaction takes the
    # write lock up front instead, so writers queue on busy_timeout.
    @event.listens_for(engine.sync_engine, "connect")
    def _sqlite_pragmas(dbapi_connection, _):
        dbapi_connection.isolation_level = None
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute("PRAGMA busy_timeout=5000;")
        cur.execute("PRAGMA synchronous=NORMAL;")
        cur.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_async_engine(database_url: str):
    db_url = _normalize_async_url(database_url)
    kw = dict(pool_pre_ping=True)

    pool_size = None
    if db_url.startswith("postgresql+asyncpg://"):
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        kw.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        )

    engine = create_async_engine(db_url, **kw)

    if db_url.startswith("sqlite+aiosqlite://"):
        _install_sqlite_hooks(engine)

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # one gate per engine, defaults to the pool size
    if pool_size is None:
        gate_limit = int(os.getenv("DB_GATE_LIMIT", "10"))
    else:
        gate_limit = int(os.getenv("DB_GATE_LIMIT", pool_size))

    db_gate = asyncio.Semaphore(max(1, gate_limit))

    def gated():
        return _gated(db_gate)

    return engine, SessionAsync, db_gate, gated


def make_database(database_url: str) -> Database:
    engine, SessionAsync, _, gated = make_async_engine(database_url)
    return Database(engine=engine, sessions=SessionAsync, gated=gated)
