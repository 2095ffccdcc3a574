from functools import lru_cache

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from api.src.config import get_settings

Base = declarative_base()

@lru_cache()
def get_engine():
    settings = get_settings()
    # Convert postgresql:// to postgresql+asyncpg://
    db_url = settings.database_url.replace("postgresql://", "postgresql+asyncpg://")
    return create_async_engine(db_url)

@lru_cache()
def get_session_factory() -> async_sessionmaker:
    return async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)

async def get_db():
    async with get_session_factory()() as session:
        try:
            yield session
        finally:
            await session.close()

async def init_db():
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
