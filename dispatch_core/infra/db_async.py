"""
Async database connection pool using asyncpg.

JSON/JSONB columns (line items, metadata, shares, teammate lists) are
decoded to Python objects through a per-connection type codec.
"""
from __future__ import annotations
import json
from pathlib import Path
from typing import AsyncIterator
from contextlib import asynccontextmanager

import asyncpg
from dispatch_core.config import settings
from dispatch_core.infra.logging_config import get_logger

logger = get_logger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

# Global connection pool
_pool: asyncpg.Pool | None = None


async def _init_connection(conn: asyncpg.Connection) -> None:
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name,
            encoder=lambda v: json.dumps(v, default=str),
            decoder=json.loads,
            schema="pg_catalog",
        )


async def init_pool(dsn: str | None = None) -> asyncpg.Pool:
    """Initialize connection pool on startup"""
    global _pool

    if _pool is not None:
        return _pool

    logger.info("Initializing asyncpg connection pool")

    _pool = await asyncpg.create_pool(
        dsn=dsn or settings.database_url,
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        command_timeout=settings.pg_command_timeout,
        init=_init_connection,
        server_settings={
            'application_name': 'dispatch_core',
        }
    )

    logger.info(f"Connection pool created: min={settings.pg_pool_min}, max={settings.pg_pool_max}")
    return _pool


async def close_pool() -> None:
    """Close connection pool on shutdown"""
    global _pool

    if _pool is None:
        return

    logger.info("Closing connection pool")
    await _pool.close()
    _pool = None
    logger.info("Connection pool closed")


@asynccontextmanager
async def db_conn() -> AsyncIterator[asyncpg.Connection]:
    """
    Get database connection from pool (async, autocommit).

    Usage:
        async with db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM jobs WHERE id = $1", job_id)
    """
    if _pool is None:
        raise RuntimeError("Connection pool not initialized. Call init_pool() first.")

    async with _pool.acquire() as conn:
        yield conn


async def apply_schema() -> None:
    """Create the dispatch tables if they do not exist (idempotent DDL)."""
    ddl = SCHEMA_PATH.read_text(encoding="utf-8")
    async with db_conn() as conn:
        await conn.execute(ddl)
    logger.info("Schema applied from %s", SCHEMA_PATH.name)
