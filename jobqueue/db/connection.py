"""
Database connection management.
Handles async SQLAlchemy engine and session creation.

A ``Database`` instance owns one engine and its session factory. It is
created once at process startup and passed to whatever needs the store.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import event, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from jobqueue.config import Settings, get_settings
from jobqueue.db.models import Base

logger = logging.getLogger(__name__)


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def dialect_insert(session: AsyncSession, model: type[Base]):
    """
    INSERT construct with ``on_conflict_do_update`` for the session's dialect.

    Raises:
        NotImplementedError: For dialects without ON CONFLICT support.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upserts are not supported on {dialect}")


def create_engine_for_url(
    database_url: str,
    settings: Settings | None = None,
) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    SQLite connections are switched to ``BEGIN IMMEDIATE`` transactions so
    that concurrent writers queue on the database lock instead of failing
    with a lock upgrade deadlock.

    Args:
        database_url: The SQLAlchemy database URL.
        settings: Settings providing pool sizing.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    settings = settings or get_settings()

    if _is_sqlite(database_url):
        engine = create_async_engine(
            database_url,
            poolclass=NullPool,
            connect_args={"timeout": 30},
            echo=False,
        )

        @event.listens_for(engine.sync_engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    return create_async_engine(
        database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        echo=settings.log_level == "DEBUG",
        pool_pre_ping=True,
    )


class Database:
    """
    Owner of the engine and session factory.

    Example:
        database = Database("postgresql+asyncpg://...")
        await database.connect()
        async with database.session() as session:
            ...
        await database.dispose()
    """

    def __init__(self, database_url: str | None = None, settings: Settings | None = None):
        self._settings = settings or get_settings()
        self.url = database_url or self._settings.database_url
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call connect() first.")
        return self._engine

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    async def connect(self) -> None:
        """
        Create the engine and session factory.
        Safe to call more than once.
        """
        if self._engine is not None:
            return

        self._engine = create_engine_for_url(self.url, self._settings)
        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info("Database connection initialized", extra={"dialect": self.dialect})

    async def create_all(self) -> None:
        """Create all tables that do not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all(self) -> None:
        """Drop all queue tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def ping(self) -> bool:
        """Check that the database answers a trivial query."""
        async with self.session() as session:
            await session.execute(text("SELECT 1"))
        return True

    async def dispose(self) -> None:
        """
        Close the database connection.
        Should be called on shutdown.
        """
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connection closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """
        Context manager for getting async database sessions.
        Commits on success and rolls back on error.

        Yields:
            AsyncSession: An async database session.
        """
        if self._session_factory is None:
            raise RuntimeError("Database not initialized. Call connect() first.")

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
