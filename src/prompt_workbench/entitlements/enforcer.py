"""Entitlement enforcer: turns negative decisions into exceptions.

Use-case code calls ``ensure_*`` before performing a gated action; a
refusal raises :class:`~prompt_workbench.errors.EntitlementDeniedError`
carrying a user-facing message and the underlying decision.
"""

from __future__ import annotations

from typing import Any

import structlog

from prompt_workbench.entitlements.decisions import EntitlementDecision, QuotaDecision
from prompt_workbench.entitlements.service import EntitlementService
from prompt_workbench.errors import EntitlementDeniedError

FEATURE_CREATE_PROJECT = "canCreateProject"
FEATURE_INVITE_MEMBER = "canInviteMember"
FEATURE_RUN_CHAIN = "canRunChain"

QUOTA_PROJECT_COUNT = "project_count"
QUOTA_ACTIVE_MEMBERS = "active_members"
QUOTA_RUN_COUNT = "run_count"


class EntitlementEnforcer:
    def __init__(self, service: EntitlementService) -> None:
        self._service = service

    async def ensure_can_create_project(
        self, tenant_id: int, context: dict[str, Any] | None = None
    ) -> QuotaDecision:
        return await self._ensure(
            tenant_id,
            FEATURE_CREATE_PROJECT,
            QUOTA_PROJECT_COUNT,
            1,
            context,
            feature_message=(
                "Your workspace cannot create more projects on the current plan."
            ),
            quota_message="Project limit reached for your workspace.",
        )

    async def ensure_can_invite_member(
        self,
        tenant_id: int,
        requested_units: int = 1,
        context: dict[str, Any] | None = None,
    ) -> QuotaDecision:
        return await self._ensure(
            tenant_id,
            FEATURE_INVITE_MEMBER,
            QUOTA_ACTIVE_MEMBERS,
            requested_units,
            context,
            feature_message=(
                "Your workspace cannot add more members on the current plan."
            ),
            quota_message="Member limit reached for your workspace.",
        )

    async def ensure_can_run_chain(
        self,
        tenant_id: int,
        requested_units: int = 1,
        context: dict[str, Any] | None = None,
    ) -> QuotaDecision:
        return await self._ensure(
            tenant_id,
            FEATURE_RUN_CHAIN,
            QUOTA_RUN_COUNT,
            requested_units,
            context,
            feature_message="Your workspace cannot run chains on the current plan.",
            quota_message="Run limit reached for your workspace.",
        )

    async def _ensure(
        self,
        tenant_id: int,
        feature: str,
        quota: str,
        requested_units: int,
        context: dict[str, Any] | None,
        *,
        feature_message: str,
        quota_message: str,
    ) -> QuotaDecision:
        """Check *feature* then *quota*; raise on the first refusal.

        Raises:
            ValueError: *tenant_id* is negative.
            EntitlementDeniedError: either check denies.
        """
        if tenant_id < 0:
            raise ValueError(f"Invalid tenant id: {tenant_id}")
        requested_units = max(1, requested_units)

        feature_decision = await self._service.check_feature_access(
            tenant_id, feature, context
        )
        if not feature_decision.allowed:
            self._log_denied(tenant_id, feature_decision, feature=feature)
            raise EntitlementDeniedError(feature_message, feature_decision)

        quota_decision = await self._service.check_quota(
            tenant_id, quota, requested_units, context
        )
        if not quota_decision.allowed:
            self._log_denied(tenant_id, quota_decision, quota=quota)
            raise EntitlementDeniedError(quota_message, quota_decision)
        return quota_decision

    @staticmethod
    def _log_denied(
        tenant_id: int,
        decision: EntitlementDecision | QuotaDecision,
        **fields: Any,
    ) -> None:
        structlog.get_logger().info(
            "entitlement_denied",
            tenant_id=tenant_id,
            reason=decision.reason,
            explanation=decision.explain(),
            **fields,
        )
