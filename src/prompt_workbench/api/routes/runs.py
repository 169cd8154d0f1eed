"""API routes for launching and inspecting runs."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from prompt_workbench.api.deps import get_current_tenant, get_run_launcher
from prompt_workbench.api.schemas import (
    DatasetRunRequest,
    RunCreateRequest,
    RunDetailResponse,
    RunResponse,
)
from prompt_workbench.runs.launcher import RunLauncher
from prompt_workbench.storage.database import get_session
from prompt_workbench.storage.repositories import RunRepository
from prompt_workbench.tenancy.context import CurrentTenant

router = APIRouter(tags=["runs"])

SessionDep = Annotated[AsyncSession, Depends(get_session)]
TenantDep = Annotated[CurrentTenant, Depends(get_current_tenant)]
LauncherDep = Annotated[RunLauncher, Depends(get_run_launcher)]


@router.post("/runs", status_code=201)
async def launch_run(
    body: RunCreateRequest,
    tenant: TenantDep,
    session: SessionDep,
    launcher: LauncherDep,
) -> RunResponse:
    """Create a run for the caller's tenant and queue it."""
    run = await launcher.launch(
        session,
        project_id=body.project_id,
        chain_id=body.chain_id,
        input=body.input,
        dataset_id=body.dataset_id,
        test_case_id=body.test_case_id,
    )
    return RunResponse.model_validate(run)


@router.post("/datasets/{dataset_id}/runs", status_code=201)
async def launch_dataset_runs(
    dataset_id: int,
    body: DatasetRunRequest,
    tenant: TenantDep,
    session: SessionDep,
    launcher: LauncherDep,
) -> list[RunResponse]:
    """Queue one run per test case; the quota must cover all of them."""
    runs = await launcher.launch_dataset(
        session,
        project_id=body.project_id,
        dataset_id=dataset_id,
        chain_id=body.chain_id,
    )
    return [RunResponse.model_validate(run) for run in runs]


@router.post("/runs/{run_id}/rerun", status_code=201)
async def rerun(
    run_id: int,
    tenant: TenantDep,
    session: SessionDep,
    launcher: LauncherDep,
) -> list[RunResponse]:
    runs = await launcher.rerun(session, run_id)
    return [RunResponse.model_validate(run) for run in runs]


@router.get("/runs/{run_id}")
async def get_run(
    run_id: int,
    tenant: TenantDep,
    session: SessionDep,
) -> RunDetailResponse:
    """Run with its steps. Other tenants' runs are reported as missing."""
    run = await RunRepository(session).get_with_steps(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return RunDetailResponse.model_validate(run)
