"""
DocBridge - Database Connection & Session Management
====================================================

Supports:
- PostgreSQL (asyncpg driver)
- SQLite (aiosqlite driver, for development/testing)
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Optional

# Load environment variables before anything else
from dotenv import load_dotenv

_env_file = Path(__file__).parent.parent.parent / ".env"
if _env_file.exists():
    load_dotenv(_env_file)
else:
    load_dotenv()

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from docbridge.core.config import settings
from docbridge.db.models import Base

logger = structlog.get_logger(__name__)


# =============================================================================
# Configuration
# =============================================================================

class DatabaseConfig:
    """Database settings resolved once at import time."""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or settings.DATABASE_URL
        self.pool_size = settings.DB_POOL_SIZE
        self.max_overflow = settings.DB_MAX_OVERFLOW
        self.echo = settings.DEBUG

    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite database."""
        return "sqlite" in self.database_url.lower()

    @property
    def async_url(self) -> str:
        """Convert sync URL to async URL."""
        url = self.database_url

        if url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://")
        elif url.startswith("sqlite://"):
            return url.replace("sqlite://", "sqlite+aiosqlite://")

        return url


# Global config
db_config = DatabaseConfig()


# =============================================================================
# Engine & Session Factory
# =============================================================================

async_engine: Optional[AsyncEngine] = None
AsyncSessionLocal: Optional[async_sessionmaker[AsyncSession]] = None


def get_async_engine() -> AsyncEngine:
    """Get or create async database engine."""
    global async_engine

    if async_engine is None:
        engine_kwargs = {
            "echo": db_config.echo,
        }

        # SQLite doesn't support pool_size/max_overflow
        if not db_config.is_sqlite:
            engine_kwargs["pool_size"] = db_config.pool_size
            engine_kwargs["max_overflow"] = db_config.max_overflow
            engine_kwargs["pool_pre_ping"] = True

        async_engine = create_async_engine(
            db_config.async_url,
            **engine_kwargs,
        )
        logger.info(
            "Async database engine created",
            url_type="sqlite" if db_config.is_sqlite else "other",
        )

    return async_engine


def get_async_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get async session factory."""
    global AsyncSessionLocal

    if AsyncSessionLocal is None:
        AsyncSessionLocal = async_sessionmaker(
            bind=get_async_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    return AsyncSessionLocal


# =============================================================================
# Session Helpers
# =============================================================================


@asynccontextmanager
async def async_session_context() -> AsyncGenerator[AsyncSession, None]:
    """
    Async context manager for database session.

    Usage:
        async with async_session_context() as session:
            ...
    """
    session_factory = get_async_session_factory()

    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# =============================================================================
# Database Initialization
# =============================================================================

async def init_db(create_tables: bool = True) -> None:
    """
    Verify the database connection and create tables if requested.
    """
    engine = get_async_engine()

    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))

    logger.info("Database connection verified")

    if create_tables:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created/verified")


async def close_db() -> None:
    """
    Dispose of the engine and forget the session factory.
    """
    global async_engine, AsyncSessionLocal

    if async_engine is not None:
        await async_engine.dispose()
        async_engine = None
        AsyncSessionLocal = None
        logger.info("Async database engine disposed")
