"""
Tenant Connection Manager.

Manages asyncpg connection pools for tenant databases, one per
(database, role) pair.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import asyncpg

from tenantbase.config import Settings, get_settings
from tenantbase.exceptions import UnreachableTenantError
from tenantbase.locks import KeyedLock
from tenantbase.schemas.project import TenantCredential

logger = logging.getLogger(__name__)

PoolKey = Tuple[str, str]
CreatePool = Callable[..., Awaitable[Any]]


class ConnectionPoolRegistry:
    """
    Manages connection pools for tenant databases.

    Features:
    - Lazy pool creation (pools created on first access)
    - Single-flight creation: concurrent first access builds one pool
    - Liveness probe before a new pool is handed out
    - Automatic cleanup of idle pools
    """

    def __init__(self, settings: Optional[Settings] = None, create_pool: CreatePool = asyncpg.create_pool):
        self._settings = settings or get_settings()
        self._create_pool = create_pool
        self._pools: Dict[PoolKey, asyncpg.Pool] = {}
        self._pool_timestamps: Dict[PoolKey, datetime] = {}
        self._locks = KeyedLock()
        self._cleanup_task: Optional[asyncio.Task] = None

        self.max_idle_time = self._settings.pool_idle_timeout
        self.cleanup_interval = self._settings.pool_cleanup_interval

    def start_cleanup_task(self):
        """Start the background cleanup task."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def _cleanup_loop(self):
        """Periodically clean up idle connection pools."""
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                await self.cleanup_idle_pools()
            except Exception:
                logger.exception("Idle pool cleanup failed")

    async def cleanup_idle_pools(self) -> int:
        """Close pools that have been idle too long. Returns how many were closed."""
        idle = [
            key
            for key, timestamp in self._pool_timestamps.items()
            if self._idle_seconds(timestamp) > self.max_idle_time
        ]

        closed = 0
        for key in idle:
            async with self._locks.hold(key):
                # get_pool may have handed the pool out again while we waited
                timestamp = self._pool_timestamps.get(key)
                if timestamp is None or self._idle_seconds(timestamp) <= self.max_idle_time:
                    continue
                await self.close_pool(*key)
            closed += 1
            logger.info("Closed idle tenant pool: %s", key[0])
        return closed

    @staticmethod
    def _idle_seconds(timestamp: datetime) -> float:
        return (datetime.now(timezone.utc) - timestamp).total_seconds()

    async def get_pool(self, credential: TenantCredential) -> asyncpg.Pool:
        """
        Get or create the connection pool for a tenant.

        Raises UnreachableTenantError if a new pool fails its liveness probe.
        """
        key = credential.pool_key

        pool = self._pools.get(key)
        if pool is not None:
            self._pool_timestamps[key] = datetime.now(timezone.utc)
            return pool

        async with self._locks.hold(key):
            # Another task may have built it while we waited
            pool = self._pools.get(key)
            if pool is not None:
                return pool

            pool = await self._build_pool(credential)
            self._pools[key] = pool
            self._pool_timestamps[key] = datetime.now(timezone.utc)
            return pool

    async def _build_pool(self, credential: TenantCredential) -> asyncpg.Pool:
        settings = self._settings
        logger.info(
            "Connecting to tenant DB: %s as %s@%s:%s",
            credential.database,
            credential.username,
            credential.host,
            credential.port,
        )

        try:
            pool = await self._create_pool(
                host=credential.host,
                port=credential.port,
                user=credential.username,
                password=credential.password.get_secret_value(),
                database=credential.database,
                min_size=settings.tenant_pool_min_size,
                max_size=settings.tenant_pool_max_size,
                timeout=settings.tenant_connect_timeout,
                command_timeout=settings.tenant_command_timeout,
            )
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise UnreachableTenantError(credential.database, detail=type(e).__name__) from e

        try:
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            await pool.close()
            raise UnreachableTenantError(credential.database, detail=type(e).__name__) from e

        logger.info("Tenant pool created: %s", credential.database)
        return pool

    def has_pool(self, database: str, username: str) -> bool:
        return (database, username) in self._pools

    async def close_pool(self, database: str, username: str):
        """Close a specific tenant's connection pool."""
        key = (database, username)
        pool = self._pools.pop(key, None)
        self._pool_timestamps.pop(key, None)
        if pool is not None:
            await pool.close()

    def get_stats(self) -> Dict[str, Any]:
        """Get connection pool statistics."""
        return {
            "active_pools": len(self._pools),
            "databases": sorted(database for database, _ in self._pools),
            "total_connections": sum(pool.get_size() for pool in self._pools.values()),
        }

    async def close_all(self):
        """Close all connection pools and stop the cleanup task."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        errors = []
        for database, username in list(self._pools):
            try:
                await self.close_pool(database, username)
            except Exception as e:
                logger.exception("Failed to close pool for %s", database)
                errors.append(e)

        logger.info("All tenant pools closed")
        if errors:
            raise errors[0]
