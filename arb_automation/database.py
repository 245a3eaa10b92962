"""Database engine and async session factory."""
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .models import Base

logger = logging.getLogger(__name__)


def _normalize_async_database_url(database_url: str) -> str:
    if database_url.startswith("sqlite:///"):
        logger.warning("Database URL uses sync dialect 'sqlite://'; using async driver 'sqlite+aiosqlite://'.")
        return database_url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    if database_url.startswith("postgresql://"):
        logger.warning("Database URL uses sync dialect 'postgresql://'; using async driver 'postgresql+asyncpg://'.")
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


def create_db_engine(database_url: str, **kwargs: Any) -> AsyncEngine:
    """Create an asynchronous SQLAlchemy engine.

    Args:
        database_url: Database connection URL (e.g., sqlite+aiosqlite:///arb.db).
        **kwargs: Additional engine options.

    Returns:
        SQLAlchemy AsyncEngine instance.
    """
    return create_async_engine(_normalize_async_database_url(database_url), **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")
