"""asyncpg pool for the notification store and the SQL migration runner."""

from pathlib import Path

import asyncpg
import orjson
import structlog
from config.settings import settings

log = structlog.get_logger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

# Serialises migration runs across worker processes sharing one database
MIGRATION_LOCK_ID = 7_240_113

_pool: asyncpg.Pool | None = None


def _encode_json(value) -> str:
    return orjson.dumps(value, default=str).decode()


async def _init_connection(conn: asyncpg.Connection) -> None:
    """JSON and JSONB columns read as dicts/lists and accept them on write."""
    for type_name in ("jsonb", "json"):
        await conn.set_type_codec(
            type_name, encoder=_encode_json, decoder=orjson.loads, schema="pg_catalog"
        )


async def get_pool() -> asyncpg.Pool:
    """Create the shared pool on first use."""
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            init=_init_connection,
        )
        log.info("database_pool_created", min_size=settings.db_pool_min_size, max_size=settings.db_pool_max_size)
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is None:
        return
    await _pool.close()
    _pool = None
    log.info("database_pool_closed")


def migration_files() -> list[Path]:
    """Migration scripts in apply order (``NNN_name.sql``)."""
    return sorted(MIGRATIONS_DIR.glob("*.sql"))


async def run_migrations(pool: asyncpg.Pool | None = None) -> list[str]:
    """Apply every migration not yet recorded in ``_migrations``.

    Each file runs in its own transaction together with its bookkeeping row.
    Returns the names applied by this call.
    """
    pool = pool or await get_pool()
    applied_now: list[str] = []

    async with pool.acquire() as conn:
        await conn.execute("SELECT pg_advisory_lock($1)", MIGRATION_LOCK_ID)
        try:
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS _migrations (
                    filename VARCHAR(255) PRIMARY KEY,
                    applied_at TIMESTAMPTZ DEFAULT NOW()
                )
                """
            )
            done = {row["filename"] for row in await conn.fetch("SELECT filename FROM _migrations")}

            for path in migration_files():
                if path.name in done:
                    continue
                log.info("applying_migration", filename=path.name)
                async with conn.transaction():
                    await conn.execute(path.read_text())
                    await conn.execute("INSERT INTO _migrations (filename) VALUES ($1)", path.name)
                applied_now.append(path.name)
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATION_LOCK_ID)

    return applied_now
