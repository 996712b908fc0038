import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import asyncpg

from .config import settings
from .errors import ServerError
from .observability import current_request_context

logger = logging.getLogger("snapmeal-db")


def _statement_timeout_ms() -> int:
    return max(0, int(settings.DB_STATEMENT_TIMEOUT_MS))


def _slow_query_threshold_ms() -> int:
    return max(0, int(settings.DB_SLOW_QUERY_MS))


def _log_slow_query(query_name: str, started_at: float) -> None:
    threshold_ms = _slow_query_threshold_ms()
    if threshold_ms <= 0:
        return

    duration = int((time.monotonic() - started_at) * 1000)
    if duration < threshold_ms:
        return

    context = current_request_context()
    payload = {
        "request_id": context.get("request_id", ""),
        "path": context.get("path", ""),
        "query_name": query_name,
        "duration_ms": duration,
        "threshold_ms": threshold_ms,
    }
    logger.warning("DB_SLOW_QUERY context=%s", payload)


async def fetch_named(conn: asyncpg.Connection, query_name: str, query: str, *args):
    started_at = time.monotonic()
    try:
        return await conn.fetch(query, *args)
    finally:
        _log_slow_query(query_name=query_name, started_at=started_at)


async def fetchrow_named(conn: asyncpg.Connection, query_name: str, query: str, *args):
    started_at = time.monotonic()
    try:
        return await conn.fetchrow(query, *args)
    finally:
        _log_slow_query(query_name=query_name, started_at=started_at)


class Database:
    def __init__(self):
        self.pool: Optional[asyncpg.Pool] = None

    async def create_pool(self):
        if not settings.SUPABASE_DATABASE_URL:
            logger.warning("SUPABASE_DATABASE_URL is not set, database pool will not be created.")
            return

        try:
            self.pool = await asyncpg.create_pool(
                dsn=settings.SUPABASE_DATABASE_URL,
                min_size=2,
                max_size=10,
                max_queries=50000,
                max_inactive_connection_lifetime=300.0,
                command_timeout=60.0,
                # Supabase's transaction pooler does not support prepared statements.
                statement_cache_size=0,
                server_settings={"statement_timeout": f"{_statement_timeout_ms()}ms"},
            )
            logger.info("Database pool created.")

            await self.init_db()
        except Exception as e:
            logger.error(f"Failed to create database pool: {e}")
            self.pool = None

    async def init_db(self):
        if not self.pool:
            return

        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS eaten_products (
                    id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
                    "userId" TEXT NOT NULL,
                    date DATE NOT NULL,
                    "imageUrl" TEXT,
                    status TEXT NOT NULL DEFAULT 'completed',
                    name TEXT NOT NULL,
                    unit TEXT NOT NULL DEFAULT 'г',
                    kcalories INT,
                    protein INT,
                    value INT,
                    "createdAt" TIMESTAMPTZ NOT NULL DEFAULT NOW()
                );

                ALTER TABLE eaten_products
                    ADD COLUMN IF NOT EXISTS status TEXT NOT NULL DEFAULT 'completed';

                ALTER TABLE eaten_products
                    ADD COLUMN IF NOT EXISTS "imageUrl" TEXT;

                DO $$
                BEGIN
                    IF NOT EXISTS (
                        SELECT 1
                        FROM pg_constraint
                        WHERE conname = 'eaten_products_status_valid'
                    ) THEN
                        ALTER TABLE eaten_products
                            ADD CONSTRAINT eaten_products_status_valid
                            CHECK (status IN ('pending', 'completed', 'error'));
                    END IF;
                END $$;

                CREATE INDEX IF NOT EXISTS idx_eaten_products_user_date
                    ON eaten_products ("userId", date);

                CREATE INDEX IF NOT EXISTS idx_eaten_products_pending
                    ON eaten_products ("createdAt")
                    WHERE status = 'pending';
            """)
            logger.info("Database tables initialized.")

    async def close_pool(self):
        if self.pool:
            await self.pool.close()
            logger.info("Database pool closed.")

    async def ensure_pool(self) -> asyncpg.Pool:
        if not self.pool:
            # The database may have been down during startup.
            if settings.SUPABASE_DATABASE_URL:
                await self.create_pool()

            if not self.pool:
                raise ServerError(
                    "Database is unavailable",
                    details={"stage": "db_pool"},
                )
        return self.pool

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[asyncpg.Connection]:
        """Pooled connection for work that outlives a request."""
        pool = await self.ensure_pool()
        async with pool.acquire() as conn:
            yield conn

    async def db_check(self) -> str:
        if not settings.SUPABASE_DATABASE_URL:
            return "disabled"

        if not self.pool:
            await self.create_pool()
            if not self.pool:
                return "fail"

        try:
            async with self.pool.acquire(timeout=5.0) as conn:
                await conn.execute("SELECT 1")
            return "ok"
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return "fail"

db = Database()

async def get_db():
    async with db.connection() as conn:
        yield conn
