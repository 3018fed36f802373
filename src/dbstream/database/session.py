"""
Async database session management.

This module provides:
- Engine creation from DatabaseConfig (asyncpg for PostgreSQL, aiosqlite in tests)
- Session and transaction context managers
- Table creation for dbstream's own models
- A lightweight health check used by the monitoring service
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Any, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..config.settings import DatabaseConfig
from .models import Base

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Owns the async engine and hands out sessions."""

    def __init__(
        self,
        config: Optional[DatabaseConfig] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        if engine is None:
            if config is None:
                raise ValueError("DatabaseManager needs a config or an engine")
            engine = self._create_engine(config)

        self.config = config
        self.engine = engine
        self.session_factory = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @staticmethod
    def _create_engine(config: DatabaseConfig) -> AsyncEngine:
        if config.is_sqlite:
            return create_async_engine(config.connection_string, echo=config.echo)

        return create_async_engine(
            config.connection_string,
            echo=config.echo,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_timeout=config.pool_timeout,
            pool_recycle=config.pool_recycle,
            pool_pre_ping=True,
        )

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Plain session; the caller controls commits."""
        async with self.session_factory() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Session inside one transaction, committed on success, rolled back on error."""
        async with self.session_factory() as session:
            async with session.begin():
                yield session

    async def create_tables(self) -> None:
        """Create dbstream's own tables if they do not exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    async def health_check(self) -> Dict[str, Any]:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return {"status": "healthy", "dialect": self.dialect_name}
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return {"status": "unhealthy", "error": str(e)}

    async def close(self) -> None:
        await self.engine.dispose()
        logger.info("Database connections closed")
