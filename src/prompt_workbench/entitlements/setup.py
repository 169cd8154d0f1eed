"""One-stop factory for assembling the entitlement stack.

Usage::

    from prompt_workbench.config import get_settings
    from prompt_workbench.entitlements.setup import create_entitlements

    entitlements = create_entitlements(get_settings(), session_factory)
    await entitlements.enforcer.ensure_can_run_chain(tenant_id)
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from prompt_workbench.config import Settings
from prompt_workbench.entitlements.capabilities import (
    CommunityUsageCapabilityResolver,
    PlanUsageCapabilityResolver,
    UsageCapabilityResolver,
)
from prompt_workbench.entitlements.enforcer import EntitlementEnforcer
from prompt_workbench.entitlements.plans import load_plan_catalog
from prompt_workbench.entitlements.service import (
    CommunityEntitlementService,
    EntitlementService,
    MeteredEntitlementService,
)


@dataclass
class Entitlements:
    capabilities: UsageCapabilityResolver
    service: EntitlementService
    enforcer: EntitlementEnforcer


def create_entitlements(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
) -> Entitlements:
    """Build resolver, service and enforcer for the configured edition.

    Raises:
        FileNotFoundError: metered edition and plans file is missing.
        ValueError: metered edition and plans file is invalid.
    """
    capabilities: UsageCapabilityResolver
    service: EntitlementService
    if settings.is_metered:
        catalog = load_plan_catalog(settings.plans_path)
        capabilities = PlanUsageCapabilityResolver(
            session_factory,
            catalog,
            ttl_seconds=settings.capabilities_cache_ttl_seconds,
        )
        service = MeteredEntitlementService(capabilities)
    else:
        capabilities = CommunityUsageCapabilityResolver()
        service = CommunityEntitlementService()

    structlog.get_logger().info(
        "entitlements_configured",
        edition=settings.entitlement_edition.value,
        capabilities_cache_ttl=settings.capabilities_cache_ttl_seconds,
    )
    return Entitlements(
        capabilities=capabilities,
        service=service,
        enforcer=EntitlementEnforcer(service),
    )
