"""Workspace lifecycle: user registration and project creation.

Both are gated by the entitlement enforcer and metered. Metering runs
after the transaction commits, so usage is only recorded for rows that
exist and a metering problem can never undo the registration.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from prompt_workbench.entitlements.enforcer import (
    QUOTA_ACTIVE_MEMBERS,
    QUOTA_PROJECT_COUNT,
    EntitlementEnforcer,
)
from prompt_workbench.entitlements.setup import Entitlements
from prompt_workbench.errors import MissingTenantContextError
from prompt_workbench.metering.listeners import derived_event_id
from prompt_workbench.metering.meter import UsageMeter
from prompt_workbench.storage.orm import Project, Tenant, TenantMembership, User
from prompt_workbench.storage.repositories import ProjectRepository
from prompt_workbench.tenancy.context import (
    CurrentTenant,
    current_tenant_id,
    tenant_scope,
)

PERSONAL_WORKSPACE = "Personal"


@dataclass(frozen=True)
class Registration:
    user: User
    tenant: Tenant
    project: Project


async def register_user(
    session: AsyncSession,
    *,
    name: str,
    email: str,
    entitlements: Entitlements,
    meter: UsageMeter,
    plan: str | None = None,
) -> Registration:
    """Create a user with a personal workspace and default project.

    In one transaction: create the user and a "Personal" tenant, check
    the member entitlement, attach the user as owner, check the project
    entitlement and create a "Personal" project. Nothing is persisted
    if any step fails.

    The new tenant is not committed while its entitlements are checked,
    so the checks run with the capability resolver assuming the tenant's
    plan.

    Raises:
        EntitlementDeniedError: the new tenant's plan forbids a step.
        sqlalchemy.exc.IntegrityError: the email is already registered.
    """
    log = structlog.get_logger().bind(email=email)
    enforcer = entitlements.enforcer
    try:
        user = User(name=name, email=email)
        tenant = Tenant(name=PERSONAL_WORKSPACE)
        if plan is not None:
            tenant.plan = plan
        session.add_all([user, tenant])
        await session.flush()

        context = {"user_id": user.id, "actor_user_id": user.id}
        with entitlements.capabilities.assume_plan(tenant.id, tenant.plan):
            await enforcer.ensure_can_invite_member(tenant.id, context=context)
            session.add(
                TenantMembership(tenant_id=tenant.id, user_id=user.id, role="owner")
            )

            await enforcer.ensure_can_create_project(tenant.id, context=context)
            with tenant_scope(CurrentTenant.of(tenant)):
                project = await ProjectRepository(session).create(
                    name=PERSONAL_WORKSPACE
                )

            await session.commit()
    except Exception:
        await session.rollback()
        log.warning("registration_failed", exc_info=True)
        raise

    log.info("user_registered", user_id=user.id, tenant_id=tenant.id)
    await meter.meter(
        tenant.id,
        QUOTA_ACTIVE_MEMBERS,
        1,
        {**context, "source": "registration"},
        event_id=derived_event_id(f"membership:{tenant.id}:{user.id}"),
    )
    await _meter_project(meter, project, source="registration")
    return Registration(user=user, tenant=tenant, project=project)


async def create_project(
    session: AsyncSession,
    *,
    name: str,
    enforcer: EntitlementEnforcer,
    meter: UsageMeter,
    description: str | None = None,
) -> Project:
    """Create a project for the current tenant, within its plan.

    Raises:
        MissingTenantContextError: no current tenant.
        EntitlementDeniedError: the plan allows no more projects.
    """
    tenant_id = current_tenant_id()
    if tenant_id is None:
        raise MissingTenantContextError("Project")

    await enforcer.ensure_can_create_project(tenant_id)
    project = await ProjectRepository(session).create(
        name=name, description=description
    )
    await session.commit()
    await _meter_project(meter, project, source="project_created")
    return project


async def _meter_project(meter: UsageMeter, project: Project, *, source: str) -> None:
    await meter.meter(
        project.tenant_id,
        QUOTA_PROJECT_COUNT,
        1,
        {"project_id": project.id, "source": source},
        event_id=derived_event_id(f"project_created:{project.id}"),
    )
