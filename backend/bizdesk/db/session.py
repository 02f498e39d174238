"""Database session management.

The API shares one engine per process. Celery tasks run each batch in a
fresh event loop through ``asyncio.run``, and pooled asyncpg connections
are bound to the loop that opened them, so ``worker_session`` disposes the
pool once the batch is done.
"""

from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends
from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from bizdesk.config import get_settings

settings = get_settings()

engine = create_async_engine(
    str(settings.database_url),
    pool_size=settings.database_pool_size,
    max_overflow=settings.database_max_overflow,
    pool_timeout=settings.database_pool_timeout,
    pool_pre_ping=True,
    echo=settings.debug,
)

# Stores commit per rule and hand detached rows back to the engine,
# so committed objects must keep their loaded state.
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

# Tables the generation and reminder flows cannot run without
REQUIRED_TABLES = ("recurrence_rules", "generated_instances", "invoices", "invoice_reminders")


async def init_db() -> None:
    """Verify connectivity and that the engine's tables are migrated."""
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
        missing = await conn.run_sync(_missing_tables)
    if missing:
        raise RuntimeError(f"database is not migrated, missing tables: {', '.join(missing)}")


def _missing_tables(sync_conn) -> list[str]:
    existing = set(inspect(sync_conn).get_table_names())
    return [name for name in REQUIRED_TABLES if name not in existing]


async def close_db() -> None:
    """Close database connection pool."""
    await engine.dispose()


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session for dependency injection."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@asynccontextmanager
async def worker_session() -> AsyncIterator[AsyncSession]:
    """Session for one Celery batch; the stores commit per item themselves."""
    try:
        async with async_session_factory() as session:
            yield session
    finally:
        await engine.dispose()


DBSession = Annotated[AsyncSession, Depends(get_db_session)]
