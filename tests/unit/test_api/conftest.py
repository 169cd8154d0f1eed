"""HTTP client wired to the SQLite test database with real API keys."""

from collections.abc import AsyncGenerator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from prompt_workbench.api.app import app
from prompt_workbench.auth.keys import generate_api_key
from prompt_workbench.config import EntitlementEdition, Settings
from prompt_workbench.entitlements.setup import create_entitlements
from prompt_workbench.metering.pipeline import build_metering_pipeline
from prompt_workbench.runs.launcher import RunLauncher
from prompt_workbench.storage.database import get_session
from prompt_workbench.storage.orm import APIKey, Tenant

PLANS_PATH = Path(__file__).resolve().parents[3] / "config" / "plans.yaml"


@dataclass
class ApiKeys:
    acme: str
    globex: str


@pytest.fixture()
async def api_keys(
    session_factory: async_sessionmaker[AsyncSession],
    tenants: tuple[Tenant, Tenant],
) -> ApiKeys:
    keys: list[str] = []
    async with session_factory() as session:
        for tenant in tenants:
            full_key, key_hash, key_prefix = generate_api_key("test")
            session.add(
                APIKey(tenant_id=tenant.id, key_hash=key_hash, key_prefix=key_prefix)
            )
            keys.append(full_key)
        await session.commit()
    return ApiKeys(acme=keys[0], globex=keys[1])


@pytest.fixture()
async def api_client(
    session_factory: async_sessionmaker[AsyncSession],
    acme_workspace: Any,
) -> AsyncGenerator[AsyncClient]:
    """Client against the real app with the metered edition enabled."""

    async def _session() -> AsyncGenerator[AsyncSession]:
        async with session_factory() as session:
            yield session

    settings = Settings(
        entitlement_edition=EntitlementEdition.METERED,
        plans_path=PLANS_PATH,
        capabilities_cache_ttl_seconds=0,
    )
    entitlements = create_entitlements(settings, session_factory)
    metering = build_metering_pipeline(session_factory, entitlements.capabilities)
    app.state.entitlements = entitlements
    app.state.metering = metering
    app.state.run_launcher = RunLauncher(entitlements.enforcer, metering.bus)
    app.dependency_overrides[get_session] = _session

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
