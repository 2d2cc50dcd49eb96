"""
Async PostgreSQL connection manager using SQLAlchemy 2.0+ async engine.
"""
from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from shared.config import Settings, get_settings
from shared.utils.logging import get_logger
from shared.utils.metrics import DB_SLOW_ACQUIRE

logger = get_logger(__name__)

SLOW_ACQUIRE_THRESHOLD_S = 1.0


class DatabaseManager:
    """Manages the async SQLAlchemy engine, session factory and raw connections."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    async def connect(self) -> None:
        """Create the async engine and session factory."""
        self._engine = create_async_engine(
            self._settings.database_url_str,
            pool_size=self._settings.db_pool_min,
            max_overflow=self._settings.db_pool_max - self._settings.db_pool_min,
            pool_pre_ping=True,
            pool_recycle=300,
            echo=self._settings.debug,
            connect_args={
                "timeout": self._settings.db_command_timeout,
                "command_timeout": self._settings.db_command_timeout,
            },
        )
        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        logger.info("database_connected", url=self._settings.database_url_safe_log)

    async def disconnect(self) -> None:
        """Dispose of the engine and all pooled connections."""
        if self._engine:
            await self._engine.dispose()
            logger.info("database_disconnected")

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("DatabaseManager not connected.")
        return self._engine

    async def checkout(self) -> AsyncConnection:
        """
        Check a connection out of the pool. The caller owns it and must close it.

        Used for session-bound work (advisory locks) where acquire and release
        have to happen on the same connection.
        """
        started = time.perf_counter()
        conn = await self.engine.connect()
        waited = time.perf_counter() - started
        if waited > SLOW_ACQUIRE_THRESHOLD_S:
            DB_SLOW_ACQUIRE.inc()
            logger.warning("db_slow_connection_acquire", waited_s=round(waited, 3))
        return conn

    @asynccontextmanager
    async def read_session(self) -> AsyncIterator[AsyncSession]:
        """Provide a read-only session (no commit)."""
        if self._session_factory is None:
            raise RuntimeError("DatabaseManager not connected.")
        async with self._session_factory() as session:
            yield session
