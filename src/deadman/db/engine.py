"""Async SQLAlchemy engine and session management."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from deadman.config.models import DatabaseConfig

# Milliseconds a writer waits for the SQLite lock held by another scheduler
SQLITE_BUSY_TIMEOUT_MS = 5000


def sqlite_url(path: Path) -> str:
    return f"sqlite+aiosqlite:///{path}"


class Database:
    """Owns the engine for one switch database.

    Create with a URL or a SQLite file path, call `connect()`, then open
    units of work with `session()`.
    """

    def __init__(
        self, database_url: str | None = None, database_path: Path | None = None
    ):
        if database_url:
            self.url = database_url
        elif database_path:
            database_path = database_path.expanduser()
            database_path.parent.mkdir(parents=True, exist_ok=True)
            self.url = sqlite_url(database_path)
        else:
            raise ValueError("Either database_url or database_path must be provided")

        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> "Database":
        return cls(database_url=config.url, database_path=config.path)

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._engine

    async def connect(self) -> None:
        engine = create_async_engine(self.url, pool_pre_ping=True)
        if engine.dialect.name == "sqlite":
            event.listen(engine.sync_engine, "connect", _sqlite_on_connect)
        self._engine = engine
        self._sessions = async_sessionmaker(engine, expire_on_commit=False)

    async def disconnect(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._sessions = None

    async def create_all(self) -> None:
        """Create missing tables. Deployed databases are managed by alembic."""
        from deadman.db.models import Base

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """One transaction: committed if the block succeeds, rolled back if not."""
        if self._sessions is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        async with self._sessions() as session, session.begin():
            yield session


def _sqlite_on_connect(dbapi_connection, connection_record) -> None:
    # Concurrent scheduler instances on one file wait for the write lock
    # instead of failing with "database is locked".
    cursor = dbapi_connection.cursor()
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    cursor.close()
