"""Async SQLAlchemy engine and session factory.

Usage:
    from skydrive.database import async_session

    async with async_session() as db:
        result = await db.execute(select(FileRecord))
"""
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from skydrive.config import settings


def build_engine(url: str = settings.DATABASE_URL, **kwargs) -> AsyncEngine:
    if url.startswith("postgresql"):
        kwargs.setdefault("pool_size", 10)
        kwargs.setdefault("max_overflow", 20)
    return create_async_engine(url, echo=False, pool_pre_ping=True, **kwargs)


engine = build_engine()

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(bind: AsyncEngine = engine) -> None:
    """Create the files table if it does not exist."""
    from skydrive.models import Base

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
