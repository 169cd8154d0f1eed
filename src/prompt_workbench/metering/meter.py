"""Usage meter (publisher side) and usage recorder (subscriber side).

``EventUsageMeter.meter()`` turns a quota-relevant action into a
:class:`UsageMetered` event and publishes it. ``UsageRecorder`` persists
each event in its own DB session, deduplicating on ``event_id``.

Metering is best effort: nothing here raises into the caller. Events
that could not be checked or persisted are logged and kept in a shared
:class:`MeteringFailureLog` so they can be replayed with
:meth:`UsageRecorder.reconcile`.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from prompt_workbench.entitlements.capabilities import UsageCapabilityResolver
from prompt_workbench.metering.bus import EventBus
from prompt_workbench.metering.events import UsageMetered
from prompt_workbench.storage.usage_repository import UsageEventRepository


class UsageMeter(Protocol):
    """Anything that can be told "tenant X consumed N units of meter M"."""

    async def meter(
        self,
        tenant_id: int,
        meter: str,
        quantity: int = 1,
        context: dict[str, Any] | None = None,
        *,
        event_id: str | None = None,
        occurred_at: datetime | None = None,
    ) -> UsageMetered | None: ...


class EventUsageMeter:
    """Publish usage as events, skipping meters the tenant does not track.

    Skipped silently: negative tenant ids, zero quantity, and meters the
    tenant's capabilities do not support. When the capabilities cannot
    be resolved the event is kept in *failures* instead, so the recorder
    can reconcile it later.
    """

    def __init__(
        self,
        capabilities: UsageCapabilityResolver,
        bus: EventBus,
        failures: MeteringFailureLog | None = None,
    ) -> None:
        self._capabilities = capabilities
        self._bus = bus
        self.failures = failures if failures is not None else MeteringFailureLog()

    async def meter(
        self,
        tenant_id: int,
        meter: str,
        quantity: int = 1,
        context: dict[str, Any] | None = None,
        *,
        event_id: str | None = None,
        occurred_at: datetime | None = None,
    ) -> UsageMetered | None:
        """Record *quantity* units of *meter* for *tenant_id*.

        Returns:
            The published event, or ``None`` when nothing was published.
        """
        log = structlog.get_logger().bind(tenant_id=tenant_id, meter=meter)
        if tenant_id < 0 or quantity == 0:
            return None
        if quantity < 0:
            log.warning("usage_quantity_invalid", quantity=quantity)
            return None

        event = UsageMetered.create(
            tenant_id=tenant_id,
            meter=meter,
            quantity=quantity,
            context=context,
            event_id=event_id,
            occurred_at=occurred_at,
        )
        try:
            capabilities = await self._capabilities.for_tenant(tenant_id)
        except Exception as exc:
            self.failures.add(event, exc)
            log.error(
                "usage_capabilities_unavailable",
                event_id=event.event_id,
                exc_info=True,
            )
            return None
        if not capabilities.supports(meter):
            log.debug("usage_meter_unsupported")
            return None

        await self._bus.publish(event)
        return event


@dataclass(frozen=True)
class MeteringFailure:
    event: UsageMetered
    error: str
    failed_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class MeteringFailureLog:
    """Bounded in-memory record of usage events that failed to persist.

    When full, the oldest failure is dropped (and was already logged).
    """

    def __init__(self, maxlen: int = 1000) -> None:
        self._failures: deque[MeteringFailure] = deque(maxlen=maxlen)

    def add(self, event: UsageMetered, error: BaseException) -> None:
        self._failures.append(MeteringFailure(event=event, error=repr(error)))

    def drain(self) -> list[MeteringFailure]:
        """Remove and return all recorded failures, oldest first."""
        failures = list(self._failures)
        self._failures.clear()
        return failures

    def __len__(self) -> int:
        return len(self._failures)


class UsageRecorder:
    """Event-bus subscriber that writes :class:`UsageMetered` to the ledger.

    Each event is persisted in a separate session, so a failure here can
    never roll back the action that produced the event.

    Args:
        session_factory: Factory for isolated DB sessions.
        failures: Where failed events are kept for reconciliation.
        on_recorded: Called with the tenant id after every new row
            (used to invalidate cached capabilities).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        failures: MeteringFailureLog | None = None,
        on_recorded: Callable[[int], None] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.failures = failures if failures is not None else MeteringFailureLog()
        self._on_recorded = on_recorded

    async def __call__(self, event: UsageMetered) -> None:
        await self.handle(event)

    async def handle(self, event: UsageMetered) -> bool:
        """Persist *event*; returns whether the ledger now contains it."""
        log = structlog.get_logger().bind(
            tenant_id=event.tenant_id,
            meter=event.meter,
            event_id=event.event_id,
        )
        try:
            inserted = await self._persist(event)
        except Exception as exc:
            self.failures.add(event, exc)
            log.error("metering_failed", quantity=event.quantity, exc_info=True)
            return False

        if not inserted:
            log.info("usage_event_duplicate")
            return True

        log.info("usage_metered", quantity=event.quantity)
        if self._on_recorded is not None:
            self._on_recorded(event.tenant_id)
        return True

    async def _persist(self, event: UsageMetered) -> bool:
        async with self._session_factory() as session:
            repo = UsageEventRepository.for_tenant(session, event.tenant_id)
            try:
                inserted = await repo.record(event)
                await session.commit()
            except IntegrityError:
                # Same event_id committed concurrently by another writer.
                await session.rollback()
                return False
            return inserted

    async def reconcile(self) -> int:
        """Retry every failed event once.

        Events that fail again go back into the failure log.

        Returns:
            Number of events now present in the ledger.
        """
        pending = self.failures.drain()
        recovered = 0
        for failure in pending:
            if await self.handle(failure.event):
                recovered += 1
        structlog.get_logger().info(
            "metering_reconciled",
            retried=len(pending),
            recovered=recovered,
            still_failing=len(self.failures),
        )
        return recovered
