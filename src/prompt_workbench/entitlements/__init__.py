"""Entitlements: plan catalogue, capability resolvers, decisions, enforcer."""

from prompt_workbench.entitlements.capabilities import (
    CommunityUsageCapabilityResolver,
    PlanUsageCapabilityResolver,
    UsageCapabilities,
    UsageCapabilityResolver,
)
from prompt_workbench.entitlements.decisions import EntitlementDecision, QuotaDecision
from prompt_workbench.entitlements.enforcer import EntitlementEnforcer
from prompt_workbench.entitlements.plans import PlanCatalog, load_plan_catalog
from prompt_workbench.entitlements.service import (
    CommunityEntitlementService,
    EntitlementService,
    MeteredEntitlementService,
)

__all__ = [
    "CommunityEntitlementService",
    "CommunityUsageCapabilityResolver",
    "EntitlementDecision",
    "EntitlementEnforcer",
    "EntitlementService",
    "MeteredEntitlementService",
    "PlanCatalog",
    "PlanUsageCapabilityResolver",
    "QuotaDecision",
    "UsageCapabilities",
    "UsageCapabilityResolver",
    "load_plan_catalog",
]
