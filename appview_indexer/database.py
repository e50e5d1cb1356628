"""
PostgreSQL connection pool.

All indexing work goes through asyncpg connections acquired from this pool.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import asyncpg

logger = logging.getLogger(__name__)


class DatabasePool:
    """PostgreSQL connection pool manager"""

    def __init__(
        self,
        database_url: str,
        pool_size: int = 20,
        max_retries: int = 30,
        retry_delay: float = 2,
    ):
        self.database_url = database_url
        self.pool_size = pool_size
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self, verify_schema: bool = True):
        """Initialize database connection pool with retry logic for schema initialization"""
        logger.info(f"Creating database pool with {self.pool_size} connections...")

        for attempt in range(self.max_retries):
            try:
                self.pool = await asyncpg.create_pool(
                    self.database_url,
                    min_size=min(2, self.pool_size),
                    max_size=self.pool_size,
                    command_timeout=60,
                    max_queries=50000,
                    max_inactive_connection_lifetime=300,
                )

                if verify_schema:
                    # The notifications table is created last by the schema, so its
                    # presence means migrations have run
                    async with self.pool.acquire() as conn:
                        await conn.fetchval("SELECT COUNT(*) FROM notifications LIMIT 1")

                logger.info("Database pool created successfully")
                return

            except asyncpg.exceptions.UndefinedTableError:
                logger.warning(
                    f"Database schema not ready (attempt {attempt + 1}/{self.max_retries}). "
                    "Waiting for schema creation..."
                )
                await self._discard_pool()
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(self.retry_delay)
                else:
                    logger.error("Database schema not created after maximum retries. Run `appview-indexer init-db` first.")
                    raise
            except (OSError, asyncpg.PostgresError) as e:
                logger.error(f"Error creating database pool (attempt {attempt + 1}/{self.max_retries}): {e}")
                await self._discard_pool()
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(self.retry_delay)
                else:
                    raise

    async def _discard_pool(self):
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def close(self):
        """Close database connection pool"""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Database pool closed")

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a database connection from the pool"""
        if not self.pool:
            raise RuntimeError("Database pool not initialized")

        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a connection and open a transaction on it"""
        async with self.acquire() as conn:
            async with conn.transaction():
                yield conn
