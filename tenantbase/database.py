"""
Registry Database Connection Manager.

Handles connections to the registry database that stores:
- Project records (with encrypted tenant secrets)
- Port ledger
- Audit logs

This is separate from the tenant databases.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from tenantbase.config import Settings, get_settings
from tenantbase.models import RegistryBase

logger = logging.getLogger(__name__)


class RegistryDatabase:
    """Manager for the registry database connection."""

    def __init__(self, settings: Optional[Settings] = None, url: Optional[str] = None):
        self._settings = settings or get_settings()
        self._url = url or self._settings.async_database_url
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None
        self._initialized = False

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            kwargs = {"echo": False}
            if not self._url.startswith("sqlite"):
                kwargs.update(
                    pool_size=self._settings.registry_pool_size,
                    max_overflow=self._settings.registry_pool_max_overflow,
                    pool_timeout=30,
                )
            self._engine = create_async_engine(self._url, **kwargs)
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            )
        return self._session_factory

    async def init_db(self) -> None:
        """Verify connectivity and create registry tables if missing."""
        if self._initialized:
            return

        async with self.engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            await conn.run_sync(RegistryBase.metadata.create_all)

        self._initialized = True
        logger.info("Registry database ready")

    async def close(self) -> None:
        """Close the database connection."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            self._initialized = False
            logger.info("Registry database connections closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get a database session that commits on success."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
