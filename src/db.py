import asyncpg
import json
from contextlib import asynccontextmanager
from typing import Optional, List, Any, Dict, AsyncIterator
import logging
from .config import get_settings

logger = logging.getLogger(__name__)


async def _init_connection(conn: asyncpg.Connection) -> None:
    for type_name in ("jsonb", "json"):
        await conn.set_type_codec(
            type_name,
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog"
        )


class Database:
    def __init__(self):
        self.pool: Optional[asyncpg.Pool] = None
        self.settings = get_settings()

    async def get_pool(self) -> asyncpg.Pool:
        """Initialize and return the connection pool"""
        if not self.pool:
            logger.info("Initializing database connection pool")
            try:
                self.pool = await asyncpg.create_pool(
                    self.settings.get_database_url(),
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                    command_timeout=self.settings.db_command_timeout,
                    init=_init_connection
                )
                logger.info("Database connection pool created successfully")
            except Exception as e:
                logger.error(f"Failed to create database pool: {e}")
                raise
        return self.pool

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[asyncpg.Connection]:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            yield conn

    async def execute(self, query: str, *args) -> str:
        """Execute a query and return the status tag"""
        try:
            async with self.connection() as conn:
                return await conn.execute(query, *args)
        except asyncpg.UniqueViolationError:
            raise
        except Exception as e:
            logger.error(f"Database execute error: {e}")
            raise

    async def fetch(self, query: str, *args) -> List[Dict[str, Any]]:
        """Fetch multiple rows as dictionaries"""
        try:
            async with self.connection() as conn:
                rows = await conn.fetch(query, *args)
                return [dict(row) for row in rows]
        except Exception as e:
            logger.error(f"Database fetch error: {e}")
            raise

    async def fetchone(self, query: str, *args) -> Optional[Dict[str, Any]]:
        """Fetch a single row as a dictionary"""
        try:
            async with self.connection() as conn:
                row = await conn.fetchrow(query, *args)
                return dict(row) if row else None
        except asyncpg.UniqueViolationError:
            # Expected on the create races; the store translates it.
            raise
        except Exception as e:
            logger.error(f"Database fetchone error: {e}")
            raise

    async def fetchval(self, query: str, *args) -> Any:
        """Fetch a single value"""
        try:
            async with self.connection() as conn:
                return await conn.fetchval(query, *args)
        except Exception as e:
            logger.error(f"Database fetchval error: {e}")
            raise

    async def close(self):
        """Close the connection pool"""
        if self.pool:
            logger.info("Closing database connection pool")
            try:
                await self.pool.close()
            finally:
                self.pool = None
