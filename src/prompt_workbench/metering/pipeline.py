"""Wiring for the metering pipeline: bus, meter, recorder, listeners."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from prompt_workbench.entitlements.capabilities import UsageCapabilityResolver
from prompt_workbench.metering.bus import EventBus
from prompt_workbench.metering.events import RunCreated, UsageMetered
from prompt_workbench.metering.listeners import RunUsageListener
from prompt_workbench.metering.meter import (
    EventUsageMeter,
    MeteringFailureLog,
    UsageRecorder,
)


@dataclass
class MeteringPipeline:
    bus: EventBus
    meter: EventUsageMeter
    recorder: UsageRecorder


def build_metering_pipeline(
    session_factory: async_sessionmaker[AsyncSession],
    capabilities: UsageCapabilityResolver,
    bus: EventBus | None = None,
) -> MeteringPipeline:
    """Create and subscribe all metering components on *bus*.

    Meter and recorder share one failure log, so ``recorder.reconcile()``
    replays everything that was lost on either side. The recorder
    invalidates cached capabilities for a tenant after each new usage
    row, so quota checks see fresh totals.
    """
    bus = bus or EventBus()
    failures = MeteringFailureLog()
    meter = EventUsageMeter(capabilities, bus, failures=failures)
    recorder = UsageRecorder(
        session_factory, failures=failures, on_recorded=capabilities.invalidate
    )
    bus.subscribe(UsageMetered, recorder)
    bus.subscribe(RunCreated, RunUsageListener(meter).on_run_created)
    return MeteringPipeline(bus=bus, meter=meter, recorder=recorder)


async def reconcile_periodically(recorder: UsageRecorder, interval: float) -> None:
    """Replay failed usage events every *interval* seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        if len(recorder.failures):
            await recorder.reconcile()


async def stop_reconciler(
    task: asyncio.Task[None] | None, recorder: UsageRecorder
) -> None:
    """Cancel the periodic reconciler and make one last replay attempt.

    Events still failing afterwards are logged as lost.
    """
    if task is not None:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    if len(recorder.failures):
        await recorder.reconcile()
    if len(recorder.failures):
        structlog.get_logger().error(
            "metering_failures_lost",
            event_ids=[f.event.event_id for f in recorder.failures.drain()],
        )
