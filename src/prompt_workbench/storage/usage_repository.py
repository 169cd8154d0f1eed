"""Repository for usage events: idempotent append and period aggregation."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, select

from prompt_workbench.storage.orm import UsageEvent
from prompt_workbench.tenancy.scoping import TenantScopedRepository

if TYPE_CHECKING:
    from prompt_workbench.metering.events import UsageMetered


class UsageEventRepository(TenantScopedRepository[UsageEvent]):
    """Tenant-scoped access to the usage event ledger.

    Metering code runs on behalf of an explicit tenant id, so it is
    normally obtained via ``UsageEventRepository.for_tenant(...)``.
    """

    model = UsageEvent

    async def record(self, event: UsageMetered) -> bool:
        """Append *event* unless its ``event_id`` is already recorded.

        A concurrent writer of the same ``event_id`` surfaces as an
        ``IntegrityError`` from the unique constraint on flush.

        Returns:
            True if a row was inserted, False for a duplicate.
        """
        existing = await self._session.execute(
            self.scoped_select(UsageEvent.event_id == event.event_id)
        )
        if existing.scalar_one_or_none() is not None:
            return False

        row = UsageEvent(
            tenant_id=event.tenant_id,
            event_id=event.event_id,
            meter=event.meter,
            quantity=event.quantity,
            context=dict(event.context),
            occurred_at=event.occurred_at,
        )
        await self.add(row)
        return True

    async def total(
        self,
        meter: str,
        *,
        since: datetime,
        until: datetime | None = None,
    ) -> int:
        """Sum of quantities for *meter* in ``[since, until)``."""
        stmt = (
            select(func.coalesce(func.sum(UsageEvent.quantity), 0))
            .where(
                self._tenant_predicate(),
                UsageEvent.meter == meter,
                UsageEvent.occurred_at >= since,
            )
        )
        if until is not None:
            stmt = stmt.where(UsageEvent.occurred_at < until)
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def totals_by_meter(self, *, since: datetime) -> dict[str, int]:
        """Per-meter sums from *since* onward, for usage reports."""
        stmt = (
            select(UsageEvent.meter, func.sum(UsageEvent.quantity))
            .where(self._tenant_predicate(), UsageEvent.occurred_at >= since)
            .group_by(UsageEvent.meter)
            .order_by(UsageEvent.meter)
        )
        result = await self._session.execute(stmt)
        return {meter: int(total) for meter, total in result.all()}
