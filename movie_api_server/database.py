"""
Async database engine and session factory.

Every store call opens its own short-lived AsyncSession; nothing about a
request survives in process memory once its session closes.
"""
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from movie_api_server.config import Settings
from movie_api_server.db_models import Base


def create_engine_from_settings(settings: Settings, url: Optional[str] = None) -> AsyncEngine:
    """Build the async engine for ``DATABASE_URL`` (or an explicit url)."""
    url = url or settings.database_url
    kwargs = {
        "echo": settings.database_echo,
        "pool_pre_ping": True,
    }
    if not url.startswith("sqlite"):
        # SQLite uses a static/null pool, sizing does not apply
        kwargs["pool_size"] = settings.database_pool_size
        kwargs["max_overflow"] = settings.database_max_overflow
    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_models(engine: AsyncEngine) -> None:
    """Create all tables. Used for local development and tests; production runs alembic."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
