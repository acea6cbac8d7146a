"""Postgres pool lifecycle and schema migrations for the scheduler."""

import asyncio
from pathlib import Path
from typing import Optional

import asyncpg
import structlog

from task_scheduler.config import Settings, get_settings

logger = structlog.get_logger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"

# Shared by every gateway service; opened by the driver or the CLI
_pool: Optional[asyncpg.Pool] = None


async def get_pool() -> asyncpg.Pool:
    """The open pool.

    Raises:
        RuntimeError: If open_database() has not been called
    """
    if _pool is None:
        raise RuntimeError("Database pool not initialized. Call open_database() first.")
    return _pool


async def open_database(
    settings: Optional[Settings] = None,
    *,
    migrate: bool = True,
    migrations_dir: Optional[Path] = None,
) -> asyncpg.Pool:
    """Create the pool and bring the schema up to date.

    A failed migration closes the pool again, so callers never see a
    half-initialised store.
    """
    global _pool

    settings = settings or get_settings()
    if _pool is None:
        try:
            _pool = await asyncpg.create_pool(
                settings.postgres_url,
                min_size=settings.postgres_pool_min_size,
                max_size=settings.postgres_pool_max_size,
                command_timeout=settings.postgres_command_timeout_seconds,
            )
        except Exception as e:
            logger.error("database_pool_creation_failed", error=str(e))
            raise
        logger.info(
            "database_pool_created",
            min_size=settings.postgres_pool_min_size,
            max_size=settings.postgres_pool_max_size,
        )

    if migrate:
        try:
            await run_migrations(_pool, migrations_dir)
        except Exception:
            await close_database()
            raise
    return _pool


async def close_database() -> None:
    global _pool

    if _pool is None:
        return
    pool, _pool = _pool, None
    await pool.close()
    logger.info("database_pool_closed")


async def run_migrations(pool: asyncpg.Pool, migrations_dir: Optional[Path] = None) -> list[str]:
    """Apply pending *.sql files in name order.

    Each file runs in its own transaction and is recorded in
    schema_migrations, so a file is applied at most once.

    Returns:
        Names of the files applied by this call
    """
    directory = migrations_dir or MIGRATIONS_DIR
    files = sorted(directory.glob("*.sql")) if directory.is_dir() else []
    if not files:
        logger.warning("no_migrations_found", path=str(directory))
        return []

    applied = []
    async with pool.acquire() as conn:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                name TEXT PRIMARY KEY,
                applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
        done = {row["name"] for row in await conn.fetch("SELECT name FROM schema_migrations")}

        for path in files:
            if path.name in done:
                continue
            try:
                async with conn.transaction():
                    await conn.execute(path.read_text())
                    await conn.execute("INSERT INTO schema_migrations (name) VALUES ($1)", path.name)
            except Exception as e:
                logger.error("migration_failed", file=path.name, error=str(e))
                raise
            applied.append(path.name)
            logger.info("migration_applied", file=path.name)

    return applied


async def health_check(timeout: Optional[float] = None) -> bool:
    """Liveness predicate checked before each job phase: SELECT 1 within a timeout."""
    if _pool is None:
        return False

    timeout = timeout if timeout is not None else get_settings().database_health_timeout_seconds
    try:
        async with _pool.acquire() as conn:
            result = await asyncio.wait_for(conn.fetchval("SELECT 1"), timeout=timeout)
        return result == 1
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e) or type(e).__name__)
        return False
