"""Shared fixtures for integration tests requiring live infrastructure.

Schema is expected to be at ``alembic upgrade head``.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator
from typing import Any

import pytest
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from prompt_workbench.config import get_settings
from prompt_workbench.storage.database import create_session_factory
from prompt_workbench.storage.orm import Project, Tenant

# ── Engine ────────────────────────────────────────────────────────


@pytest.fixture()
async def pg_engine() -> AsyncGenerator[AsyncEngine]:
    engine = create_async_engine(
        get_settings().database_url,
        pool_size=5,
        max_overflow=0,
    )
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(pg_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Tenant-aware factory bound to the live database."""
    return create_session_factory(pg_engine)


# ── Committed seeds (real commit + DELETE cleanup) ─────────────────


@pytest.fixture()
async def committed_tenants(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[dict[str, int]]:
    """Two tenants with one project each, removed after the test.

    Returns ids under ``acme``, ``globex``, ``acme_project`` and
    ``globex_project``. Deleting a tenant cascades to everything it owns.
    """
    suffix = uuid.uuid4().hex[:8]
    ids: dict[str, int] = {}
    async with session_factory() as session:
        for key in ("acme", "globex"):
            tenant = Tenant(name=f"{key}-{suffix}", plan="free")
            session.add(tenant)
            await session.flush()
            project = Project(tenant_id=tenant.id, name=f"{key} project")
            session.add(project)
            await session.flush()
            ids[key] = tenant.id
            ids[f"{key}_project"] = project.id
        await session.commit()

    yield ids

    async with session_factory() as session:
        await session.execute(
            delete(Tenant).where(Tenant.id.in_([ids["acme"], ids["globex"]]))
        )
        await session.commit()


# ── Redis fixture ─────────────────────────────────────────────────


@pytest.fixture()
async def arq_redis() -> AsyncGenerator[Any]:
    """Create and close a real ArqRedis connection pool."""
    from arq.connections import RedisSettings, create_pool

    pool = await create_pool(RedisSettings.from_dsn(get_settings().redis_url))
    yield pool
    await pool.aclose()
