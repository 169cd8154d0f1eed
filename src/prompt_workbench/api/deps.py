"""FastAPI dependency injection."""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import cast

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import APIKeyHeader
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from prompt_workbench.auth.keys import hash_api_key, is_well_formed
from prompt_workbench.entitlements.setup import Entitlements
from prompt_workbench.metering.pipeline import MeteringPipeline
from prompt_workbench.runs.launcher import RunLauncher
from prompt_workbench.storage.database import get_session
from prompt_workbench.storage.orm import APIKey, Tenant
from prompt_workbench.tenancy.context import CurrentTenant, tenant_scope

__all__ = [
    "get_current_tenant",
    "get_entitlements",
    "get_metering",
    "get_run_launcher",
    "get_session",
]

api_key_header = APIKeyHeader(name="X-API-Key")


_get_session = Depends(get_session)


async def get_current_tenant(
    api_key: str = Security(api_key_header),
    session: AsyncSession = _get_session,
) -> AsyncIterator[CurrentTenant]:
    """Authenticate request via API key and set the current tenant.

    The tenant context stays in effect for the rest of the request and
    is reset when the request finishes.

    Raises:
        HTTPException 401: missing, invalid, inactive, or expired key.
    """
    if not is_well_formed(api_key):
        raise HTTPException(status_code=401, detail="Invalid API key")

    key_hash = hash_api_key(api_key)

    stmt = (
        select(APIKey)
        .join(Tenant, APIKey.tenant_id == Tenant.id)
        .where(
            APIKey.key_hash == key_hash,
            APIKey.is_active.is_(True),
            Tenant.is_active.is_(True),
        )
        .options(selectinload(APIKey.tenant))
    )
    result = await session.execute(stmt)
    api_key_record = result.scalar_one_or_none()

    if api_key_record is None:
        raise HTTPException(status_code=401, detail="Invalid API key")

    if (
        api_key_record.expires_at is not None
        and api_key_record.expires_at < datetime.now(UTC)
    ):
        raise HTTPException(status_code=401, detail="API key expired")

    with tenant_scope(CurrentTenant.of(api_key_record.tenant)) as tenant:
        yield cast(CurrentTenant, tenant)


async def get_entitlements(request: Request) -> Entitlements:
    """Retrieve the entitlement stack from app state.

    Initialized during lifespan startup.
    """
    return cast(Entitlements, request.app.state.entitlements)


async def get_run_launcher(request: Request) -> RunLauncher:
    """Retrieve RunLauncher from app state.

    Initialized during lifespan startup.
    """
    return cast(RunLauncher, request.app.state.run_launcher)


async def get_metering(request: Request) -> MeteringPipeline:
    """Retrieve the metering pipeline from app state.

    Initialized during lifespan startup.
    """
    return cast(MeteringPipeline, request.app.state.metering)
