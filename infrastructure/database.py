"""
Relational Store: Ledger and Analytics Tables
=============================================
Async SQLAlchemy engine shared by the balance ledger and the analytics
recorder:
- Connection pooling (asyncpg in production, aiosqlite locally and in tests)
- Transaction context managers
- Schema bootstrap and health checks
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from loguru import logger
from sqlalchemy import Table, event, text
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from config.settings import DatabaseSettings
from core.exceptions import DatabaseConnectionError
from infrastructure.schema import metadata


class DatabaseManager:
    """
    Centralized engine and session management.

    Created once at startup by the container. `initialize()` must run before
    any session is requested.
    """

    def __init__(self, settings: Optional[DatabaseSettings] = None):
        self._settings = settings or DatabaseSettings()
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None
        self._is_initialized: bool = False

    async def initialize(self, create_schema: bool = False) -> None:
        """
        Create engine and session factory, then verify connectivity.

        Args:
            create_schema: Create missing tables (local runs and tests)
        """
        if self._is_initialized:
            logger.warning("Database already initialized")
            return

        try:
            self._engine = self._create_engine()
            self._register_events()
            self._session_factory = async_sessionmaker(
                self._engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )

            await self.health_check()
            if create_schema:
                await self.create_all()

            self._is_initialized = True
            logger.info("Database initialized successfully")

        except Exception as e:
            logger.error(f"Database initialization failed: {e}")
            raise DatabaseConnectionError(
                "Failed to initialize database connection",
                host=self._settings.host,
                cause=e,
            ) from e

    def _create_engine(self) -> AsyncEngine:
        if self._settings.is_sqlite:
            # In-memory SQLite lives inside one connection; share it across sessions
            kwargs = {"connect_args": {"check_same_thread": False}}
            if ":memory:" in self._settings.url:
                kwargs["poolclass"] = StaticPool
            return create_async_engine(self._settings.url, echo=self._settings.echo_sql, **kwargs)

        return create_async_engine(
            self._settings.url,
            echo=self._settings.echo_sql,
            pool_size=self._settings.pool_size,
            max_overflow=self._settings.max_overflow,
            pool_timeout=self._settings.pool_timeout,
            pool_recycle=self._settings.pool_recycle,
            pool_pre_ping=True,
        )

    def _register_events(self) -> None:
        if not self._engine:
            return

        @event.listens_for(self._engine.sync_engine, "connect")
        def receive_connect(dbapi_conn, connection_record):
            logger.debug("New database connection established")

    async def create_all(self) -> None:
        """Create every table and index that does not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
        logger.info("Database schema ensured")

    async def drop_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.drop_all)

    async def close(self) -> None:
        """Dispose engine. Called during application shutdown."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            self._is_initialized = False
            logger.info("Database connections closed")

    async def health_check(self) -> bool:
        """
        Verify database connectivity.

        Returns:
            True if healthy, raises otherwise
        """
        if not self._engine:
            raise DatabaseConnectionError("Database engine not initialized")

        try:
            async with self._engine.connect() as conn:
                result = await conn.execute(text("SELECT 1"))
                return result.scalar() == 1
        except (OperationalError, DBAPIError) as e:
            logger.error(f"Database health check failed: {e}")
            raise DatabaseConnectionError("Database health check failed", cause=e) from e

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Provide an async session that commits on success and rolls back on error.

        Usage:
            async with db_manager.session() as session:
                await session.execute(stmt)
        """
        if not self._session_factory:
            raise DatabaseConnectionError("Database not initialized")

        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"Session error, rolled back: {e}")
            raise
        finally:
            await session.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncConnection, None]:
        """
        Core-level connection inside a single transaction.

        Everything executed on the yielded connection commits together or not
        at all.
        """
        async with self.engine.begin() as conn:
            yield conn

    @property
    def engine(self) -> AsyncEngine:
        if not self._engine:
            raise DatabaseConnectionError("Database engine not initialized")
        return self._engine

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    def upsert(self, table: Table):
        """
        Dialect-specific INSERT supporting `on_conflict_do_update`.

        Both supported backends expose the same ON CONFLICT API, which is what
        the additive counters rely on.
        """
        if self.dialect_name == "postgresql":
            return postgresql_insert(table)
        if self.dialect_name == "sqlite":
            return sqlite_insert(table)
        raise DatabaseConnectionError(f"Unsupported database dialect: {self.dialect_name}")


__all__ = ["DatabaseManager"]
