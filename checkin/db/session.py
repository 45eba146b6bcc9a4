"""Database session configuration."""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from checkin.core.config import settings


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # SQLite waits on its own file lock; pool sizing does not apply
        return {"connect_args": {"timeout": settings.STORAGE_TIMEOUT_SECONDS}}
    return {
        "pool_pre_ping": True,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": settings.STORAGE_TIMEOUT_SECONDS,
    }


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    **_engine_options(settings.DATABASE_URL),
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency to get database session.

    IMPORTANT: This does NOT auto-commit. Services that modify data
    commit explicitly once the whole attempt (token transition, attendance
    write, audit entry) has been staged.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
