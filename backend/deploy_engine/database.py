from __future__ import annotations

from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from deploy_engine.config import settings


def _connect_args(url: str) -> dict[str, object]:
    # Builds write from background tasks while requests read; wait on the file lock.
    if url.startswith("sqlite"):
        return {"timeout": 30}
    return {}


engine = create_async_engine(
    settings.database_url,
    echo=False,
    connect_args=_connect_args(settings.database_url),
)

# Background build tasks open their own sessions from this factory.
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

Base = declarative_base()


async def get_db() -> AsyncIterator[AsyncSession]:
    """Request-scoped database session."""
    async with AsyncSessionLocal() as session:
        yield session


async def init_db() -> None:
    """Create the project and deployment tables if they do not exist."""
    from deploy_engine.models import project_db  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
