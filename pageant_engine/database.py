"""
pageant_engine/database.py
Database configuration for the certification engine
"""
import logging
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from pageant_engine.config.settings import settings
# Import Base from orm.base to avoid circular imports
from pageant_engine.orm.base import Base
import pageant_engine.orm  # force load all models

logger = logging.getLogger(__name__)


def build_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> AsyncEngine:
    """
    Create an async engine with pool settings suited to the backend.

    SQLite serializes writers at the file level, so it gets a busy timeout
    instead of a large pool. In-memory SQLite uses a static pool and takes
    no pool arguments.
    """
    url = database_url or settings.DATABASE_URL
    echo = settings.SQL_ECHO if echo is None else echo

    if "sqlite" in url.lower():
        if ":memory:" in url:
            return create_async_engine(url, echo=echo, future=True)
        return create_async_engine(
            url,
            echo=echo,
            future=True,
            pool_pre_ping=True,
            pool_size=10,
            max_overflow=20,
            pool_timeout=30,
            connect_args={
                "timeout": float(settings.SQLITE_BUSY_TIMEOUT_SECONDS),
            }
        )

    # PostgreSQL/MySQL: Use standard pool with larger size
    return create_async_engine(
        url,
        echo=echo,
        future=True,
        pool_pre_ping=True,
        pool_size=20,
        max_overflow=30,
        pool_timeout=30,
        pool_recycle=3600,
    )


def build_sessionmaker(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine()
AsyncSessionLocal = build_sessionmaker(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for one unit of work."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(bind: Optional[AsyncEngine] = None) -> None:
    """Create all engine tables. Idempotent: safe to run multiple times."""
    target = bind or engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Certification engine tables ensured")


async def close_db(bind: Optional[AsyncEngine] = None) -> None:
    """Dispose of the engine connection pool."""
    target = bind or engine
    await target.dispose()
    logger.info("Database connections closed")
