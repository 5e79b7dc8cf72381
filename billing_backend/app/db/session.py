"""
Database session configuration.

One async engine per process. PostgreSQL (asyncpg) in production, SQLite
(aiosqlite) for local runs and tests. Ledger debits are guarded UPDATEs, so
they stay correct on both; `FOR UPDATE` hints are simply ignored by SQLite.
"""

from typing import Any, Dict

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from billing_backend.app.core.config import settings


def engine_options(database_url: str) -> Dict[str, Any]:
    """Pool settings only apply to server databases."""
    if database_url.startswith("sqlite"):
        return {"echo": settings.db_echo, "connect_args": {"timeout": 30}}
    return {
        "echo": settings.db_echo,
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_pre_ping": True,
    }


engine = create_async_engine(settings.database_url, **engine_options(settings.database_url))

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

Base = declarative_base()


async def init_models() -> None:
    """Create missing tables. Migrations are out of scope; this is idempotent."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db():
    """
    FastAPI dependency for database sessions.

    One session per request. Services commit or roll back their own unit
    of work; anything left open is rolled back when the session closes.
    """
    async with AsyncSessionLocal() as session:
        yield session
