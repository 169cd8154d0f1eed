"""Usage capability snapshots and the resolvers that build them.

A :class:`UsageCapabilities` snapshot answers, for one tenant at one
moment: which meters are recorded, which features are on, what each
quota's limit is and how much of it is used. Resolvers own any caching;
callers just ask.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from prompt_workbench.entitlements.plans import PlanCatalog, QuotaPeriod, period_start
from prompt_workbench.storage.orm import Tenant
from prompt_workbench.storage.usage_repository import UsageEventRepository

#: Meters recorded by the community edition.
COMMUNITY_METERS: Mapping[str, bool] = {
    "run_count": True,
    "input_tokens": True,
    "output_tokens": True,
    "active_members": True,
    "project_count": True,
    "storage_bytes": False,
}


@dataclass(frozen=True, slots=True)
class UsageCapabilities:
    """Point-in-time view of a tenant's plan and usage.

    Features missing from ``features`` are off unless ``all_features``
    is set. Quotas missing from ``limits`` are unlimited.
    """

    tenant_id: int
    plan: str
    meters: Mapping[str, bool] = field(default_factory=dict)
    features: Mapping[str, bool] = field(default_factory=dict)
    limits: Mapping[str, int | None] = field(default_factory=dict)
    periods: Mapping[str, QuotaPeriod] = field(default_factory=dict)
    usage: Mapping[str, int] = field(default_factory=dict)
    all_features: bool = False

    def supports(self, meter: str) -> bool:
        return self.meters.get(meter, False)

    def has_feature(self, feature: str) -> bool:
        return self.features.get(feature, self.all_features)

    def limit_for(self, quota: str) -> int | None:
        return self.limits.get(quota)

    def used(self, quota: str) -> int:
        return self.usage.get(quota, 0)

    def period_for(self, quota: str) -> QuotaPeriod:
        return self.periods.get(quota, QuotaPeriod.MONTH)


class UsageCapabilityResolver(Protocol):
    async def for_tenant(self, tenant_id: int) -> UsageCapabilities: ...

    def invalidate(self, tenant_id: int | None = None) -> None: ...

    def assume_plan(
        self, tenant_id: int, plan: str | None
    ) -> AbstractContextManager[None]: ...


class CommunityUsageCapabilityResolver:
    """Self-hosted edition: every feature on, no limits, fixed meter set."""

    def __init__(self, meters: Mapping[str, bool] | None = None) -> None:
        self._meters = dict(COMMUNITY_METERS if meters is None else meters)

    async def for_tenant(self, tenant_id: int) -> UsageCapabilities:
        return UsageCapabilities(
            tenant_id=tenant_id,
            plan="community",
            meters=self._meters,
            all_features=True,
        )

    def invalidate(self, tenant_id: int | None = None) -> None:
        """Nothing is cached."""

    @contextmanager
    def assume_plan(self, tenant_id: int, plan: str | None) -> Iterator[None]:
        """Plans do not exist in this edition."""
        yield


class PlanUsageCapabilityResolver:
    """Resolve capabilities from the tenant's plan and recorded usage.

    Snapshots are cached per tenant for ``ttl_seconds`` (0 disables the
    cache). The usage recorder calls :meth:`invalidate` after every new
    event, so in a single process a quota check never lags behind
    recorded usage; across processes staleness is bounded by the TTL.

    Args:
        session_factory: Factory for the read-only sessions used here.
        catalog: Validated plan catalogue.
        ttl_seconds: Cache lifetime per tenant snapshot.
        clock: Monotonic clock, overridable in tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: PlanCatalog,
        ttl_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self._catalog = catalog
        self._ttl = ttl_seconds
        self._clock = clock
        self._cache: dict[int, tuple[float, UsageCapabilities]] = {}
        # Bumped by invalidate(); a snapshot resolved across a bump is stale.
        self._generations: dict[int, int] = {}
        self._global_generation = 0
        self._assumed_plans: dict[int, str | None] = {}

    async def for_tenant(self, tenant_id: int) -> UsageCapabilities:
        cached = self._cache.get(tenant_id)
        if cached is not None and self._clock() < cached[0]:
            return cached[1]

        generation = self._generation(tenant_id)
        capabilities = await self._resolve(tenant_id)
        if self._ttl > 0 and self._generation(tenant_id) == generation:
            self._cache[tenant_id] = (self._clock() + self._ttl, capabilities)
        return capabilities

    def invalidate(self, tenant_id: int | None = None) -> None:
        """Drop the cached snapshot for *tenant_id*, or all when ``None``.

        Lookups already in flight for the tenant will not cache their
        result.
        """
        if tenant_id is None:
            self._global_generation += 1
            self._cache.clear()
        else:
            self._generations[tenant_id] = self._generations.get(tenant_id, 0) + 1
            self._cache.pop(tenant_id, None)

    @contextmanager
    def assume_plan(self, tenant_id: int, plan: str | None) -> Iterator[None]:
        """Resolve *tenant_id* on *plan* while its row is not yet visible.

        Used while a tenant is created in an uncommitted transaction: the
        resolver reads through its own sessions and would otherwise fall
        back to the default plan. The cached snapshot is dropped on both
        entry and exit.
        """
        self._assumed_plans[tenant_id] = plan
        self.invalidate(tenant_id)
        try:
            yield
        finally:
            self._assumed_plans.pop(tenant_id, None)
            self.invalidate(tenant_id)

    def _generation(self, tenant_id: int) -> tuple[int, int]:
        return self._global_generation, self._generations.get(tenant_id, 0)

    async def _resolve(self, tenant_id: int) -> UsageCapabilities:
        now = datetime.now(UTC)
        async with self._session_factory() as session:
            tenant = await session.get(Tenant, tenant_id)
            if tenant is not None:
                plan_name = tenant.plan
            else:
                plan_name = self._assumed_plans.get(tenant_id)
            plan = self._catalog.plan_for(plan_name)
            repo = UsageEventRepository.for_tenant(session, tenant_id)
            usage: dict[str, int] = {}
            for quota_name, quota in plan.quotas.items():
                usage[quota_name] = await repo.total(
                    quota_name, since=period_start(quota.period, now)
                )

        structlog.get_logger().debug(
            "usage_capabilities_resolved",
            tenant_id=tenant_id,
            plan=plan.name,
            usage=usage,
        )
        return UsageCapabilities(
            tenant_id=tenant_id,
            plan=plan.name,
            meters=dict(plan.meters),
            features=dict(plan.features),
            limits={name: quota.limit for name, quota in plan.quotas.items()},
            periods={name: quota.period for name, quota in plan.quotas.items()},
            usage=usage,
        )
