"""Domain event listeners that translate actions into metered usage."""

from __future__ import annotations

import uuid

from prompt_workbench.metering.events import RunCreated
from prompt_workbench.metering.meter import UsageMeter

RUN_COUNT_METER = "run_count"

# Namespace for deterministic event ids derived from domain entity ids.
USAGE_EVENT_NAMESPACE = uuid.UUID("6f3a0f0e-5a6b-4c1e-9d61-0b7f2f9c4e11")


def derived_event_id(key: str) -> str:
    """Stable event id for usage that is tied to one domain entity."""
    return str(uuid.uuid5(USAGE_EVENT_NAMESPACE, key))


def run_created_event_id(run_id: int) -> str:
    """Idempotency key for the ``run_count`` event of one run."""
    return derived_event_id(f"run_created:{run_id}")


class RunUsageListener:
    """Meters one ``run_count`` unit per created run.

    The event id is derived from the run id, so publishing the same
    ``RunCreated`` twice records usage once.
    """

    def __init__(self, meter: UsageMeter) -> None:
        self._meter = meter

    async def on_run_created(self, event: RunCreated) -> None:
        await self._meter.meter(
            event.tenant_id,
            RUN_COUNT_METER,
            1,
            {
                "run_id": event.run_id,
                "project_id": event.project_id,
                "chain_id": event.chain_id,
                "dataset_id": event.dataset_id,
                "test_case_id": event.test_case_id,
                "source": "run_created",
            },
            event_id=run_created_event_id(event.run_id),
        )
