"""Event values published on the in-process event bus.

Both are immutable. ``UsageMetered`` is the fact the metering pipeline
records; ``RunCreated`` is the domain event a run launch publishes and
the usage listener reacts to.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import uuid_utils as uuid7_lib
from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from prompt_workbench.storage.orm import Run


def new_event_id() -> str:
    """Fresh UUIDv7 (time-ordered) event id as a string."""
    return str(uuid.UUID(bytes=uuid7_lib.uuid7().bytes))


class UsageMetered(BaseModel):
    """A quota-relevant action happened for a tenant.

    Attributes:
        tenant_id: Tenant the usage is charged to.
        meter: What is being counted (``run_count``, ``active_members``...).
        quantity: Units consumed, always positive.
        context: Free-form audit payload.
        event_id: Idempotency key; equal ids denote the same logical event.
        occurred_at: When the action happened (UTC).
    """

    model_config = ConfigDict(frozen=True)

    tenant_id: int
    meter: str = Field(min_length=1, max_length=100)
    quantity: int = Field(gt=0)
    context: dict[str, Any] = Field(default_factory=dict)
    event_id: str = Field(default_factory=new_event_id, max_length=36)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def create(
        cls,
        *,
        tenant_id: int,
        meter: str,
        quantity: int,
        context: dict[str, Any] | None = None,
        event_id: str | None = None,
        occurred_at: datetime | None = None,
    ) -> UsageMetered:
        """Build an event, assigning id and timestamp when not supplied."""
        return cls(
            tenant_id=tenant_id,
            meter=meter,
            quantity=quantity,
            context=context or {},
            event_id=event_id or new_event_id(),
            occurred_at=occurred_at or datetime.now(UTC),
        )


class RunCreated(BaseModel):
    """A run row was committed."""

    model_config = ConfigDict(frozen=True)

    run_id: int
    tenant_id: int
    project_id: int
    chain_id: int | None = None
    dataset_id: int | None = None
    test_case_id: int | None = None

    @classmethod
    def from_run(cls, run: Run) -> RunCreated:
        return cls(
            run_id=run.id,
            tenant_id=run.tenant_id,
            project_id=run.project_id,
            chain_id=run.chain_id,
            dataset_id=run.dataset_id,
            test_case_id=run.test_case_id,
        )
