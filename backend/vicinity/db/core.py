from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from ..settings import settings

engine = create_async_engine(
    settings.async_database_url,
    future=True,
    echo=False,
    pool_pre_ping=True,
)

SessionLocal = async_sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
)

Base = declarative_base()


def make_sessionmaker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


async def init_db(bind: AsyncEngine | None = None) -> None:
    from . import models  # noqa: F401 - ensure models registered

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
