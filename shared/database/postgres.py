"""
Relational Database Connection

Async SQLAlchemy setup. PostgreSQL (psycopg) in deployment, SQLite
(aiosqlite) for local runs and tests. Engines are created explicitly and
handed to whoever needs them; nothing here is a module-level singleton.
"""

from typing import Any

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from shared.config import Settings, get_settings

logger = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""



def create_engine(url: str | None = None, settings: Settings | None = None, **kwargs: Any) -> AsyncEngine:
    """
    Create an async engine.

    Args:
        url: SQLAlchemy async URL; defaults to the configured database
        settings: Settings to read defaults from
        **kwargs: Extra engine options

    Returns:
        AsyncEngine: New engine (caller owns disposal)
    """
    settings = settings or get_settings()
    url = url or settings.async_database_url

    options: dict[str, Any] = {"echo": settings.debug}
    if not url.startswith("sqlite"):
        options.update(pool_size=20, max_overflow=40, pool_pre_ping=True)
    options.update(kwargs)

    engine = create_async_engine(url, **options)
    logger.info("Database engine created", dialect=engine.dialect.name)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory used by the enrollment store."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=True,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Initialize database - create all tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database initialized")


async def close_db(engine: AsyncEngine) -> None:
    """Close database connections."""
    await engine.dispose()
    logger.info("Database connections closed")
