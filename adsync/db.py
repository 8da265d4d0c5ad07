from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from adsync.settings import settings


class Base(DeclarativeBase):
    pass


def _async_url(url: str) -> str:
    """Convert a sync DB URL to its async driver URL.

    postgresql+psycopg://...  -> unchanged (psycopg3 supports async natively)
    sqlite+pysqlite://...     -> sqlite+aiosqlite://...
    """
    if url.startswith("sqlite+pysqlite"):
        return url.replace("sqlite+pysqlite", "sqlite+aiosqlite", 1)
    return url


def get_async_engine(url: str | None = None):
    return create_async_engine(_async_url(url or settings.DATABASE_URL), pool_pre_ping=True)


@lru_cache(maxsize=1)
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=get_async_engine(), class_=AsyncSession, expire_on_commit=False
    )


async def get_async_db():
    async with get_session_factory()() as session:
        yield session
