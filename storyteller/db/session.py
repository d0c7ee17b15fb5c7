from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from storyteller.config import get_settings
from storyteller.db.base import Base


def create_engine(url: str | None = None) -> AsyncEngine:
    settings = get_settings()
    database_url = url or settings.database_url
    if database_url.startswith('sqlite'):
        return create_async_engine(database_url)
    return create_async_engine(database_url, pool_pre_ping=True)


def create_sessionmaker(engine: AsyncEngine | None = None) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine or create_engine(), expire_on_commit=False)


async def create_all(engine: AsyncEngine) -> None:
    from storyteller.db import models  # noqa: F401

    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
