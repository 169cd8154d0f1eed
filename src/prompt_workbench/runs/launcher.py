"""Launch runs: entitlement check, persist, announce, enqueue."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import structlog
from arq.connections import ArqRedis
from sqlalchemy.ext.asyncio import AsyncSession

from prompt_workbench.entitlements.enforcer import EntitlementEnforcer
from prompt_workbench.errors import MissingTenantContextError, UnitOfWorkNotFoundError
from prompt_workbench.metering.bus import EventBus
from prompt_workbench.metering.events import RunCreated
from prompt_workbench.runs.chain import snapshot_chain
from prompt_workbench.storage.orm import Chain, Dataset, Run, TestCase
from prompt_workbench.storage.repositories import (
    ChainRepository,
    DatasetRepository,
    ProjectRepository,
    RunRepository,
    TestCaseRepository,
)
from prompt_workbench.tenancy.context import current_tenant_id

EXECUTE_RUN_TASK = "arq_execute_run"


@dataclass(frozen=True)
class _RunInput:
    input: dict[str, Any] = field(default_factory=dict)
    dataset_id: int | None = None
    test_case_id: int | None = None


class RunLauncher:
    """Create runs for the current tenant and queue them for execution.

    Every referenced row (project, chain, dataset, test case) must be
    visible to the current tenant and belong to the run's project;
    anything else is reported as not found.

    Args:
        enforcer: Entitlement facade; ``run_count`` is checked before
            anything is written.
        bus: Event bus receiving ``RunCreated`` once the run is committed.
        redis: ARQ pool. Without one, runs are created but not queued.
    """

    def __init__(
        self,
        enforcer: EntitlementEnforcer,
        bus: EventBus,
        redis: ArqRedis | None = None,
    ) -> None:
        self._enforcer = enforcer
        self._bus = bus
        self._redis = redis

    async def launch(
        self,
        session: AsyncSession,
        *,
        project_id: int,
        chain_id: int | None = None,
        input: dict[str, Any] | None = None,
        dataset_id: int | None = None,
        test_case_id: int | None = None,
    ) -> Run:
        """Create a pending run and enqueue ``arq_execute_run``.

        The run is committed before ``RunCreated`` is published, so usage
        is only metered for runs that exist. A test case without a
        dataset id implies its own dataset.

        Raises:
            MissingTenantContextError: no current tenant.
            EntitlementDeniedError: the tenant may not run more chains.
            UnitOfWorkNotFoundError: a referenced row is not visible or
                belongs to another project or dataset.
        """
        tenant_id = _require_tenant()
        await _load_project(session, project_id)
        snapshot = await _chain_snapshot(session, project_id, chain_id)

        if test_case_id is not None:
            test_case = await _load_test_case(session, test_case_id)
            if dataset_id is None:
                dataset_id = test_case.dataset_id
            elif test_case.dataset_id != dataset_id:
                raise UnitOfWorkNotFoundError("test case", test_case_id)
        if dataset_id is not None:
            await _load_dataset(session, project_id, dataset_id)

        runs = await self._create(
            session,
            tenant_id,
            project_id=project_id,
            chain_id=chain_id,
            snapshot=snapshot,
            inputs=[
                _RunInput(
                    input=input or {},
                    dataset_id=dataset_id,
                    test_case_id=test_case_id,
                )
            ],
        )
        return runs[0]

    async def launch_dataset(
        self,
        session: AsyncSession,
        *,
        project_id: int,
        dataset_id: int,
        chain_id: int | None = None,
    ) -> list[Run]:
        """Create one run per test case of *dataset_id*.

        The ``run_count`` quota is checked once for the whole batch. An
        empty dataset creates no runs.

        Raises:
            MissingTenantContextError: no current tenant.
            EntitlementDeniedError: the batch does not fit the quota.
            UnitOfWorkNotFoundError: project, chain or dataset not visible.
        """
        tenant_id = _require_tenant()
        await _load_project(session, project_id)
        snapshot = await _chain_snapshot(session, project_id, chain_id)
        return await self._launch_dataset(
            session,
            tenant_id,
            project_id=project_id,
            dataset_id=dataset_id,
            chain_id=chain_id,
            snapshot=snapshot,
        )

    async def rerun(self, session: AsyncSession, run_id: int) -> list[Run]:
        """Launch the same work as run *run_id* again.

        The new run keeps the original chain snapshot, so later edits to
        the chain do not change what is rerun. A run that belonged to a
        dataset reruns the whole dataset.

        Returns:
            The new runs.

        Raises:
            UnitOfWorkNotFoundError: the run, its chain or its dataset is
                not visible.
        """
        tenant_id = _require_tenant()
        original = await RunRepository(session).get_by_id(run_id)
        if original is None:
            raise UnitOfWorkNotFoundError("run", run_id)

        project_id = original.project_id
        snapshot = list(original.chain_snapshot or [])
        if original.chain_id is not None and not snapshot:
            snapshot = await _chain_snapshot(session, project_id, original.chain_id)
        elif original.chain_id is not None:
            await _load_chain(session, project_id, original.chain_id)

        if original.dataset_id is not None:
            return await self._launch_dataset(
                session,
                tenant_id,
                project_id=project_id,
                dataset_id=original.dataset_id,
                chain_id=original.chain_id,
                snapshot=snapshot,
                rerun_of=run_id,
            )

        return await self._create(
            session,
            tenant_id,
            project_id=project_id,
            chain_id=original.chain_id,
            snapshot=snapshot,
            inputs=[_RunInput(input=dict(original.input or {}))],
            rerun_of=run_id,
        )

    async def _launch_dataset(
        self,
        session: AsyncSession,
        tenant_id: int,
        *,
        project_id: int,
        dataset_id: int,
        chain_id: int | None,
        snapshot: list[dict[str, Any]],
        rerun_of: int | None = None,
    ) -> list[Run]:
        dataset = await _load_dataset(session, project_id, dataset_id)
        test_cases = await TestCaseRepository(session).list_for_dataset(dataset.id)
        if not test_cases:
            structlog.get_logger().info(
                "dataset_run_empty", tenant_id=tenant_id, dataset_id=dataset.id
            )
            return []

        return await self._create(
            session,
            tenant_id,
            project_id=project_id,
            chain_id=chain_id,
            snapshot=snapshot,
            inputs=[
                _RunInput(
                    input=dict(case.input_variables or {}),
                    dataset_id=dataset.id,
                    test_case_id=case.id,
                )
                for case in test_cases
            ],
            rerun_of=rerun_of,
        )

    async def _create(
        self,
        session: AsyncSession,
        tenant_id: int,
        *,
        project_id: int,
        chain_id: int | None,
        snapshot: list[dict[str, Any]],
        inputs: list[_RunInput],
        rerun_of: int | None = None,
    ) -> list[Run]:
        await self._enforcer.ensure_can_run_chain(
            tenant_id,
            requested_units=len(inputs),
            context={
                "project_id": project_id,
                "chain_id": chain_id,
                "dataset_id": inputs[0].dataset_id,
            },
        )

        repo = RunRepository(session)
        runs = [
            await repo.create(
                project_id=project_id,
                chain_id=chain_id,
                input=item.input,
                chain_snapshot=snapshot,
                dataset_id=item.dataset_id,
                test_case_id=item.test_case_id,
            )
            for item in inputs
        ]
        await session.commit()

        for run in runs:
            await self._bus.publish(RunCreated.from_run(run))
        return await self._enqueue(session, runs, rerun_of=rerun_of)

    async def _enqueue(
        self, session: AsyncSession, runs: list[Run], *, rerun_of: int | None
    ) -> list[Run]:
        log = structlog.get_logger().bind(tenant_id=runs[0].tenant_id)
        if rerun_of is not None:
            log = log.bind(rerun_of=rerun_of)

        if self._redis is None:
            for run in runs:
                log.info("run_created", run_id=run.id, enqueued=False)
            return runs

        repo = RunRepository(session)
        queued: list[Run] = []
        for run in runs:
            arq_job = await self._redis.enqueue_job(EXECUTE_RUN_TASK, run.id)
            if arq_job is not None:
                run = await repo.update(run.id, arq_job_id=arq_job.job_id) or run
            log.info(
                "run_enqueued",
                run_id=run.id,
                arq_job_id=arq_job.job_id if arq_job else None,
            )
            queued.append(run)
        await session.commit()
        return queued


def _require_tenant() -> int:
    tenant_id = current_tenant_id()
    if tenant_id is None:
        raise MissingTenantContextError("Run")
    return tenant_id


async def _load_project(session: AsyncSession, project_id: int) -> None:
    if await ProjectRepository(session).get_by_id(project_id) is None:
        raise UnitOfWorkNotFoundError("project", project_id)


async def _load_chain(
    session: AsyncSession, project_id: int, chain_id: int
) -> Chain:
    chain = await ChainRepository(session).get_with_nodes(chain_id)
    if chain is None or chain.project_id != project_id:
        raise UnitOfWorkNotFoundError("chain", chain_id)
    return chain


async def _chain_snapshot(
    session: AsyncSession, project_id: int, chain_id: int | None
) -> list[dict[str, Any]]:
    if chain_id is None:
        return []
    return snapshot_chain(await _load_chain(session, project_id, chain_id))


async def _load_dataset(
    session: AsyncSession, project_id: int, dataset_id: int
) -> Dataset:
    dataset = await DatasetRepository(session).get_by_id(dataset_id)
    if dataset is None or dataset.project_id != project_id:
        raise UnitOfWorkNotFoundError("dataset", dataset_id)
    return dataset


async def _load_test_case(session: AsyncSession, test_case_id: int) -> TestCase:
    test_case = await TestCaseRepository(session).get_by_id(test_case_id)
    if test_case is None:
        raise UnitOfWorkNotFoundError("test case", test_case_id)
    return test_case
