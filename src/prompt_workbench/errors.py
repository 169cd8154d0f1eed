"""Domain-specific exceptions for prompt-workbench."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from prompt_workbench.entitlements.decisions import (
        EntitlementDecision,
        QuotaDecision,
    )


class MissingTenantContextError(RuntimeError):
    """A tenant-owned row was written while no tenant context was set."""

    def __init__(self, entity: str) -> None:
        self.entity = entity
        super().__init__(
            f"Cannot create tenant scoped {entity} without current tenant."
        )


class TenantIsolationError(RuntimeError):
    """A scoped repository was asked to touch another tenant's row."""

    def __init__(self, entity: str, expected: int, actual: int) -> None:
        self.entity = entity
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{entity} belongs to tenant {actual}, scope is tenant {expected}"
        )


class UnitOfWorkNotFoundError(LookupError):
    """Background execution target no longer exists."""

    def __init__(self, kind: str, unit_id: int) -> None:
        self.kind = kind
        self.unit_id = unit_id
        super().__init__(f"{kind} {unit_id} not found")


class OwningTenantUnresolvedError(LookupError):
    """Background execution target references a tenant that is gone."""

    def __init__(self, kind: str, unit_id: int, tenant_id: int | None) -> None:
        self.kind = kind
        self.unit_id = unit_id
        self.tenant_id = tenant_id
        super().__init__(f"Tenant not found for {kind} {unit_id}")


class EntitlementDeniedError(Exception):
    """Raised by the enforcer facade when a decision comes back negative.

    The decision itself is an ordinary value; this exception exists only
    so request handlers can turn a refusal into a user-facing response.
    """

    def __init__(
        self,
        message: str,
        decision: EntitlementDecision | QuotaDecision,
    ) -> None:
        self.message = message
        self.decision = decision
        super().__init__(message)


class InvalidStatusTransitionError(ValueError):
    """A run status change that the lifecycle does not allow."""
