"""API routes for workspace projects."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from prompt_workbench.api.deps import (
    get_current_tenant,
    get_entitlements,
    get_metering,
)
from prompt_workbench.api.schemas import ProjectCreateRequest, ProjectResponse
from prompt_workbench.entitlements.setup import Entitlements
from prompt_workbench.metering.pipeline import MeteringPipeline
from prompt_workbench.onboarding import create_project
from prompt_workbench.storage.database import get_session
from prompt_workbench.storage.repositories import ProjectRepository
from prompt_workbench.tenancy.context import CurrentTenant

router = APIRouter(tags=["projects"])

SessionDep = Annotated[AsyncSession, Depends(get_session)]
TenantDep = Annotated[CurrentTenant, Depends(get_current_tenant)]
EntitlementsDep = Annotated[Entitlements, Depends(get_entitlements)]
MeteringDep = Annotated[MeteringPipeline, Depends(get_metering)]


@router.get("/projects")
async def list_projects(
    tenant: TenantDep, session: SessionDep
) -> list[ProjectResponse]:
    projects = await ProjectRepository(session).list_all()
    return [ProjectResponse.model_validate(p) for p in projects]


@router.post("/projects", status_code=201)
async def create_project_route(
    body: ProjectCreateRequest,
    tenant: TenantDep,
    session: SessionDep,
    entitlements: EntitlementsDep,
    metering: MeteringDep,
) -> ProjectResponse:
    """Create a project, within the caller's plan (403 when over limit)."""
    project = await create_project(
        session,
        name=body.name,
        description=body.description,
        enforcer=entitlements.enforcer,
        meter=metering.meter,
    )
    return ProjectResponse.model_validate(project)
