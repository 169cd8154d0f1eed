"""API routes for usage and quota inspection."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from prompt_workbench.api.deps import get_current_tenant, get_entitlements
from prompt_workbench.api.schemas import QuotaResponse, UsageSummaryResponse
from prompt_workbench.entitlements.plans import QuotaPeriod, period_start
from prompt_workbench.entitlements.setup import Entitlements
from prompt_workbench.storage.database import get_session
from prompt_workbench.storage.usage_repository import UsageEventRepository
from prompt_workbench.tenancy.context import CurrentTenant

router = APIRouter(tags=["usage"])

SessionDep = Annotated[AsyncSession, Depends(get_session)]
TenantDep = Annotated[CurrentTenant, Depends(get_current_tenant)]
EntitlementsDep = Annotated[Entitlements, Depends(get_entitlements)]


@router.get("/usage")
async def usage_summary(tenant: TenantDep, session: SessionDep) -> UsageSummaryResponse:
    """Per-meter usage totals for the current calendar month."""
    since = period_start(QuotaPeriod.MONTH, datetime.now(UTC))
    totals = await UsageEventRepository(session).totals_by_meter(since=since)
    return UsageSummaryResponse(period_start=since, totals=totals)


@router.get("/usage/{quota}")
async def quota_status(
    quota: str,
    tenant: TenantDep,
    entitlements: EntitlementsDep,
) -> QuotaResponse:
    """Whether one more unit of *quota* would be allowed right now."""
    decision = await entitlements.service.check_quota(tenant.tenant_id, quota)
    return QuotaResponse(
        quota=quota,
        allowed=decision.allowed,
        limit=decision.limit,
        used=decision.used,
        remaining=decision.remaining(),
        reason=decision.reason,
        explanation=decision.explain(),
    )
