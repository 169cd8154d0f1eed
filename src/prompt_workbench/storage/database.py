"""Async engine, session factory and the FastAPI session dependency."""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from prompt_workbench.config import settings
from prompt_workbench.tenancy.scoping import TenantAwareSession


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory whose sessions enforce tenant stamping on flush."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        sync_session_class=TenantAwareSession,
        expire_on_commit=False,
    )


engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
    pool_size=5,
    max_overflow=10,
    pool_pre_ping=True,
)
async_session = create_session_factory(engine)


async def get_session() -> AsyncGenerator[AsyncSession]:
    """Yield a session for one request; closed when the request ends."""
    async with async_session() as session:
        yield session
