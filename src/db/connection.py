"""Database connection management"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
import psycopg
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool
from src.config import DATABASE_URL, DB_POOL_MIN_SIZE, DB_POOL_MAX_SIZE
from src.exceptions import ConnectionError as EngineConnectionError

logger = logging.getLogger(__name__)

APPLICATION_NAME = "expense-achievements"


async def _configure(conn: psycopg.AsyncConnection) -> None:
    """Per-connection setup, run once when the pool opens a connection"""
    conn.row_factory = dict_row
    await conn.execute("SELECT set_config('application_name', %s, false)", (APPLICATION_NAME,))
    await conn.commit()


class Database:
    """
    Connection pool shared by the achievement queries

    Usable as an async context manager so scripts can scope the pool:

        async with db:
            await recompute_canonical_keys()
    """

    def __init__(
        self,
        connection_string: str = DATABASE_URL,
        min_size: int = DB_POOL_MIN_SIZE,
        max_size: int = DB_POOL_MAX_SIZE
    ):
        self.connection_string = connection_string
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[AsyncConnectionPool] = None

    @property
    def is_open(self) -> bool:
        return self._pool is not None

    async def init_pool(self) -> None:
        """Initialize connection pool"""
        if self._pool:
            return
        logger.info(f"Initializing database connection pool ({self.min_size}-{self.max_size})")
        pool = AsyncConnectionPool(
            self.connection_string,
            min_size=self.min_size,
            max_size=self.max_size,
            configure=_configure,
            open=False
        )
        await pool.open()
        self._pool = pool

    async def close_pool(self) -> None:
        """Close connection pool"""
        if self._pool:
            logger.info("Closing database connection pool")
            await self._pool.close()
            self._pool = None

    async def __aenter__(self) -> "Database":
        await self.init_pool()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close_pool()

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Get database connection from pool"""
        if not self._pool:
            raise EngineConnectionError("Database pool not initialized", operation="connection")

        async with self._pool.connection() as conn:
            yield conn


# Global database instance
db = Database()
