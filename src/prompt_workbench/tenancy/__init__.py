"""Tenant context and tenant-scoped data access.

Quick start::

    from prompt_workbench.tenancy import CurrentTenant, tenant_scope

    with tenant_scope(CurrentTenant(tenant_id=tenant.id)):
        project = await ProjectRepository(session).create(name="Demo")
"""

from prompt_workbench.tenancy.context import (
    CurrentTenant,
    clear,
    current_tenant,
    current_tenant_id,
    set_current_tenant,
    tenant_scope,
)

__all__ = [
    "CurrentTenant",
    "clear",
    "current_tenant",
    "current_tenant_id",
    "set_current_tenant",
    "tenant_scope",
]
