from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine
from contextlib import asynccontextmanager
from .config import Settings


def make_engine(settings: Settings) -> AsyncEngine:
    # Ensure the DATABASE_URL uses an async driver (asyncpg) for SQLAlchemy asyncio
    if settings.DATABASE_URL.startswith("postgresql://") and "+asyncpg" not in settings.DATABASE_URL:
        raise RuntimeError(
            "DATABASE_URL must use an async driver for async SQLAlchemy (e.g. postgresql+asyncpg://...). "
            "Update your DATABASE_URL or set the DATABASE_URL environment variable accordingly."
        )
    return create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DB_ECHO,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
    )


@asynccontextmanager
async def get_conn(engine: AsyncEngine):
    async with engine.connect() as conn:
        yield conn


async def init_db(engine: AsyncEngine):
    from .models import metadata as models_metadata
    async with engine.begin() as conn:
        await conn.run_sync(models_metadata.create_all)
