"""Database connection and session management."""

import logging
from pathlib import Path
from typing import AsyncGenerator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from app.config import settings

logger = logging.getLogger(__name__)

DATABASE_URL = settings.database_url

# Create engine; SQLite files are shared between tasks, Postgres uses the default pool
engine = create_async_engine(
    DATABASE_URL,
    echo=False,  # Set to True for SQL query logging (useful for debugging)
    pool_pre_ping=not DATABASE_URL.startswith("sqlite"),
)

# Session factory - creates new sessions on each call
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

# Base class for all database models
Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency function to get database session.

    Yields:
        Database session

    Note: The question store commits explicitly after each write.
    This function only ensures proper session cleanup and rollback on exceptions.
    """
    async with AsyncSessionLocal() as db:
        try:
            yield db
        except Exception:
            # Rollback on any exception to prevent partial commits
            await db.rollback()
            raise


def _sqlite_data_dir() -> Optional[Path]:
    url = make_url(DATABASE_URL)
    if not url.drivername.startswith("sqlite") or not url.database:
        return None
    if url.database == ":memory:":
        return None
    return Path(url.database).resolve().parent


async def init_db() -> None:
    """
    Initialize database by creating all tables.
    Should be called on application startup.

    Creates the data directory for file-backed SQLite databases and creates
    all tables defined in the models.
    """
    # Register models on Base.metadata
    from app.db import models  # noqa: F401

    data_dir = _sqlite_data_dir()
    if data_dir is not None:
        data_dir.mkdir(parents=True, exist_ok=True)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured")


__all__ = ["get_db", "init_db", "Base", "AsyncSessionLocal", "engine", "DATABASE_URL"]
