"""
Async engine and transaction scope for the bridge database.

SQLite is the default (one file, created on first start); PostgreSQL is
used when DATABASE_URL or DB_TYPE says so. Every store write goes through
DatabaseManager.get_session(), which is one transaction.
"""

import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from urllib.parse import quote_plus

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from .models import Base

logger = logging.getLogger(__name__)

# Sync URL prefixes people put in DATABASE_URL, and the async driver for each
_ASYNC_DRIVERS = {
    "sqlite:///": "sqlite+aiosqlite:///",
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
}

_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA busy_timeout=60000",
    "PRAGMA synchronous=NORMAL",
    # Chat deletion cascades rely on it
    "PRAGMA foreign_keys=ON",
)


def to_async_url(url: str) -> str:
    for prefix, async_prefix in _ASYNC_DRIVERS.items():
        if url.startswith(prefix):
            return async_prefix + url[len(prefix):]
    return url


def resolve_database_url(database_url: str | None = None) -> str:
    """
    Pick the database URL.

    Priority: the argument, DATABASE_URL, DB_TYPE=postgresql with the
    POSTGRES_* variables, then SQLite at DB_PATH (default /data/msgbridge.db).
    """
    url = database_url or os.getenv("DATABASE_URL")
    if url:
        return to_async_url(url)

    if os.getenv("DB_TYPE", "sqlite").lower() in ("postgresql", "postgres"):
        user = quote_plus(os.getenv("POSTGRES_USER", "msgbridge"))
        password = quote_plus(os.getenv("POSTGRES_PASSWORD", ""))
        host = os.getenv("POSTGRES_HOST", "localhost")
        port = os.getenv("POSTGRES_PORT", "5432")
        name = os.getenv("POSTGRES_DB", "msgbridge")
        return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{name}"

    path = os.getenv("DB_PATH", "/data/msgbridge.db")
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    return f"sqlite+aiosqlite:///{path}"


def _apply_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    for pragma in _SQLITE_PRAGMAS:
        cursor.execute(pragma)
    cursor.close()


class DatabaseManager:
    def __init__(self, database_url: str | None = None):
        self.database_url = resolve_database_url(database_url)
        self.is_sqlite = self.database_url.startswith("sqlite")
        self.dialect_name = "sqlite" if self.is_sqlite else "postgresql"
        self.engine: AsyncEngine | None = None
        self.async_session_factory: async_sessionmaker[AsyncSession] | None = None

    def describe(self) -> str:
        """The URL with credentials masked, for logs."""
        if self.is_sqlite:
            return self.database_url
        scheme, _, rest = self.database_url.partition("://")
        return f"{scheme}://***@{rest.rsplit('@', 1)[-1]}"

    async def init(self) -> None:
        """Create the engine; on SQLite also create missing tables."""
        logger.info(f"Opening bridge database {self.describe()}")
        echo = os.getenv("DB_ECHO", "false").lower() == "true"

        if self.is_sqlite:
            # aiosqlite connections must not be shared between tasks
            self.engine = create_async_engine(self.database_url, echo=echo, poolclass=NullPool)
            event.listen(self.engine.sync_engine, "connect", _apply_sqlite_pragmas)
        else:
            self.engine = create_async_engine(
                self.database_url,
                echo=echo,
                pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
                max_overflow=10,
                pool_pre_ping=True,
            )
        self.async_session_factory = async_sessionmaker(self.engine, expire_on_commit=False)

        # On PostgreSQL the schema belongs to Alembic
        if self.is_sqlite:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        One transaction: committed when the block exits normally, rolled back
        on any exception including task cancellation.
        """
        if self.async_session_factory is None:
            raise RuntimeError("Database not initialized. Call init() first.")

        async with self.async_session_factory() as session:
            try:
                yield session
                await session.commit()
            except BaseException:
                await session.rollback()
                raise

    async def health_check(self) -> bool:
        try:
            async with self.async_session_factory() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
            logger.info("Bridge database closed")


async def init_database(database_url: str | None = None) -> DatabaseManager:
    """Create a database manager and make sure the schema exists."""
    db_manager = DatabaseManager(database_url)
    await db_manager.init()
    return db_manager
