"""Entitlement services: feature access and quota checks.

Both editions share one contract (:class:`EntitlementService`); which
one is used is a configuration choice (``Settings.entitlement_edition``).
Checks are read-only and side-effect free.
"""

from __future__ import annotations

from typing import Any, Protocol

from prompt_workbench.entitlements.capabilities import UsageCapabilityResolver
from prompt_workbench.entitlements.decisions import (
    REASON_FEATURE_NOT_IN_PLAN,
    REASON_INVALID_REQUESTED_UNITS,
    EntitlementDecision,
    QuotaDecision,
)


class EntitlementService(Protocol):
    async def check_feature_access(
        self,
        tenant_id: int,
        feature: str,
        context: dict[str, Any] | None = None,
    ) -> EntitlementDecision: ...

    async def check_quota(
        self,
        tenant_id: int,
        quota: str,
        requested_units: int = 1,
        context: dict[str, Any] | None = None,
    ) -> QuotaDecision: ...


class CommunityEntitlementService:
    """Self-hosted edition: everything is allowed."""

    async def check_feature_access(
        self,
        tenant_id: int,
        feature: str,
        context: dict[str, Any] | None = None,
    ) -> EntitlementDecision:
        return EntitlementDecision.allow({"feature": feature})

    async def check_quota(
        self,
        tenant_id: int,
        quota: str,
        requested_units: int = 1,
        context: dict[str, Any] | None = None,
    ) -> QuotaDecision:
        meta = {"quota": quota}
        if requested_units < 1:
            return QuotaDecision.deny(
                REASON_INVALID_REQUESTED_UNITS, requested=requested_units, meta=meta
            )
        return QuotaDecision.allow_unlimited(requested=requested_units, meta=meta)


class MeteredEntitlementService:
    """Hosted edition: plan features and limits against metered usage."""

    def __init__(self, capabilities: UsageCapabilityResolver) -> None:
        self._capabilities = capabilities

    async def check_feature_access(
        self,
        tenant_id: int,
        feature: str,
        context: dict[str, Any] | None = None,
    ) -> EntitlementDecision:
        capabilities = await self._capabilities.for_tenant(tenant_id)
        meta = {"feature": feature, "plan": capabilities.plan}
        if capabilities.has_feature(feature):
            return EntitlementDecision.allow(meta)
        return EntitlementDecision.deny(REASON_FEATURE_NOT_IN_PLAN, meta)

    async def check_quota(
        self,
        tenant_id: int,
        quota: str,
        requested_units: int = 1,
        context: dict[str, Any] | None = None,
    ) -> QuotaDecision:
        if requested_units < 1:
            return QuotaDecision.deny(
                REASON_INVALID_REQUESTED_UNITS,
                requested=requested_units,
                meta={"quota": quota},
            )

        capabilities = await self._capabilities.for_tenant(tenant_id)
        meta = {
            "quota": quota,
            "plan": capabilities.plan,
            "period": capabilities.period_for(quota).value,
        }
        used = capabilities.used(quota)
        limit = capabilities.limit_for(quota)
        if limit is None:
            return QuotaDecision.allow_unlimited(
                used=used, requested=requested_units, meta=meta
            )
        return QuotaDecision.allow_within_limit(
            limit, used, requested_units, meta=meta
        )
