"""Tests for run launch: quota enforcement, metering and enqueue."""

from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from prompt_workbench.entitlements.capabilities import (
    CommunityUsageCapabilityResolver,
    PlanUsageCapabilityResolver,
)
from prompt_workbench.entitlements.enforcer import EntitlementEnforcer
from prompt_workbench.entitlements.plans import PlanCatalog
from prompt_workbench.entitlements.service import (
    CommunityEntitlementService,
    MeteredEntitlementService,
)
from prompt_workbench.errors import (
    EntitlementDeniedError,
    MissingTenantContextError,
    UnitOfWorkNotFoundError,
)
from prompt_workbench.metering.events import RunCreated
from prompt_workbench.metering.listeners import run_created_event_id
from prompt_workbench.metering.pipeline import build_metering_pipeline
from prompt_workbench.runs.launcher import EXECUTE_RUN_TASK, RunLauncher
from prompt_workbench.storage.orm import (
    Dataset,
    Project,
    Run,
    Tenant,
    TestCase,
    UsageEvent,
)
from prompt_workbench.storage.repositories import (
    ChainRepository,
    DatasetRepository,
    ProjectRepository,
    TestCaseRepository,
)
from prompt_workbench.tenancy.context import CurrentTenant, tenant_scope


def _metered_launcher(
    session_factory: async_sessionmaker[AsyncSession],
    catalog: PlanCatalog,
    redis: Any = None,
) -> RunLauncher:
    capabilities = PlanUsageCapabilityResolver(session_factory, catalog)
    pipeline = build_metering_pipeline(session_factory, capabilities)
    enforcer = EntitlementEnforcer(MeteredEntitlementService(capabilities))
    return RunLauncher(enforcer, pipeline.bus, redis=redis)


def _community_launcher(
    session_factory: async_sessionmaker[AsyncSession], redis: Any = None
) -> RunLauncher:
    capabilities = CommunityUsageCapabilityResolver()
    pipeline = build_metering_pipeline(session_factory, capabilities)
    enforcer = EntitlementEnforcer(CommunityEntitlementService())
    return RunLauncher(enforcer, pipeline.bus, redis=redis)


async def _count(
    session_factory: async_sessionmaker[AsyncSession], model: type, **filters: Any
) -> int:
    async with session_factory() as session:
        stmt = select(func.count()).select_from(model).where(
            *(getattr(model, name) == value for name, value in filters.items())
        )
        return (await session.execute(stmt)).scalar_one()


class TestRunLauncher:
    async def test_creates_pending_run_and_meters_it(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        acme_workspace: Any,
    ) -> None:
        launcher = _community_launcher(session_factory)

        with tenant_scope(CurrentTenant.of(acme_workspace.tenant)):
            run = await launcher.launch(
                session,
                project_id=acme_workspace.project.id,
                chain_id=acme_workspace.chain.id,
                input={"customer": {"name": "Ada"}},
            )

        assert run.status == "pending"
        assert run.tenant_id == acme_workspace.tenant.id
        assert [n["name"] for n in run.chain_snapshot] == ["Greet", "Review"]
        async with session_factory() as check:
            event = (
                await check.execute(
                    select(UsageEvent).where(UsageEvent.meter == "run_count")
                )
            ).scalar_one()
        assert event.event_id == run_created_event_id(run.id)
        assert event.context["chain_id"] == acme_workspace.chain.id

    async def test_enqueues_job(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        acme_workspace: Any,
    ) -> None:
        redis = MagicMock()
        redis.enqueue_job = AsyncMock(return_value=MagicMock(job_id="job-1"))
        launcher = _community_launcher(session_factory, redis=redis)

        with tenant_scope(CurrentTenant.of(acme_workspace.tenant)):
            run = await launcher.launch(session, project_id=acme_workspace.project.id)

        redis.enqueue_job.assert_awaited_once_with(EXECUTE_RUN_TASK, run.id)
        assert run.arq_job_id == "job-1"

    async def test_requires_tenant(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        acme_workspace: Any,
    ) -> None:
        launcher = _community_launcher(session_factory)
        with pytest.raises(MissingTenantContextError):
            await launcher.launch(session, project_id=acme_workspace.project.id)

    async def test_other_tenants_project_not_found(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        acme_workspace: Any,
        tenants: tuple[Tenant, Tenant],
    ) -> None:
        _, globex = tenants
        launcher = _community_launcher(session_factory)

        with (
            tenant_scope(CurrentTenant.of(globex)),
            pytest.raises(UnitOfWorkNotFoundError),
        ):
            await launcher.launch(session, project_id=acme_workspace.project.id)

        assert await _count(session_factory, Run) == 0
        assert await _count(session_factory, UsageEvent) == 0

    async def test_unknown_chain(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        acme_workspace: Any,
    ) -> None:
        launcher = _community_launcher(session_factory)
        with (
            tenant_scope(CurrentTenant.of(acme_workspace.tenant)),
            pytest.raises(UnitOfWorkNotFoundError, match="chain 404 not found"),
        ):
            await launcher.launch(
                session, project_id=acme_workspace.project.id, chain_id=404
            )


class TestRunQuota:
    async def test_free_plan_allows_one_hundred_runs_per_month(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        acme_workspace: Any,
        tenants: tuple[Tenant, Tenant],
        plan_catalog: PlanCatalog,
    ) -> None:
        _, globex = tenants
        launcher = _metered_launcher(session_factory, plan_catalog)
        acme_project = acme_workspace.project.id

        with tenant_scope(CurrentTenant.of(acme_workspace.tenant)):
            for _ in range(100):
                await launcher.launch(session, project_id=acme_project)

            with pytest.raises(EntitlementDeniedError) as exc_info:
                await launcher.launch(session, project_id=acme_project)

        assert exc_info.value.message == "Run limit reached for your workspace."
        assert exc_info.value.decision.explain() == (
            "quota exceeded: 100/100 run_count this period"
        )
        acme_id = acme_workspace.tenant.id
        assert await _count(session_factory, Run, tenant_id=acme_id) == 100
        assert (
            await _count(
                session_factory, UsageEvent, tenant_id=acme_id, meter="run_count"
            )
            == 100
        )

        # Quotas are per tenant.
        with tenant_scope(CurrentTenant.of(globex)):
            project = await ProjectRepository(session).create(name="Globex app")
            await session.commit()
            run = await launcher.launch(session, project_id=project.id)
        assert run.tenant_id == globex.id

    async def test_republished_event_not_double_counted(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        acme_workspace: Any,
        plan_catalog: PlanCatalog,
    ) -> None:
        capabilities = PlanUsageCapabilityResolver(session_factory, plan_catalog)
        pipeline = build_metering_pipeline(session_factory, capabilities)
        enforcer = EntitlementEnforcer(MeteredEntitlementService(capabilities))
        launcher = RunLauncher(enforcer, pipeline.bus)

        with tenant_scope(CurrentTenant.of(acme_workspace.tenant)):
            run = await launcher.launch(session, project_id=acme_workspace.project.id)

        await pipeline.bus.publish(RunCreated.from_run(run))
        used = (await capabilities.for_tenant(run.tenant_id)).used("run_count")
        assert used == 1


async def _dataset(
    session_factory: async_sessionmaker[AsyncSession],
    tenant: Tenant,
    project_id: int,
    inputs: list[dict[str, Any]],
) -> tuple[Dataset, list[TestCase]]:
    async with session_factory() as session:
        with tenant_scope(CurrentTenant.of(tenant)):
            dataset = await DatasetRepository(session).create(
                project_id=project_id, name="Regression"
            )
            cases = TestCaseRepository(session)
            test_cases = [
                await cases.create(
                    dataset_id=dataset.id, name=f"case {i}", input_variables=values
                )
                for i, values in enumerate(inputs, 1)
            ]
            await session.commit()
    return dataset, test_cases


async def _project(
    session_factory: async_sessionmaker[AsyncSession], tenant: Tenant, name: str
) -> Project:
    async with session_factory() as session:
        with tenant_scope(CurrentTenant.of(tenant)):
            project = await ProjectRepository(session).create(name=name)
            await session.commit()
    return project


CUSTOMERS = [
    {"customer": {"name": "Ada"}},
    {"customer": {"name": "Grace"}},
    {"customer": {"name": "Linus"}},
]


class TestRunReferences:
    async def test_other_tenants_dataset_not_found(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        acme_workspace: Any,
        tenants: tuple[Tenant, Tenant],
    ) -> None:
        _, globex = tenants
        globex_project = await _project(session_factory, globex, "Globex app")
        dataset, _ = await _dataset(
            session_factory, globex, globex_project.id, [{"q": 1}]
        )
        launcher = _community_launcher(session_factory)

        with (
            tenant_scope(CurrentTenant.of(acme_workspace.tenant)),
            pytest.raises(
                UnitOfWorkNotFoundError, match=f"dataset {dataset.id} not found"
            ),
        ):
            await launcher.launch(
                session,
                project_id=acme_workspace.project.id,
                dataset_id=dataset.id,
            )

        assert await _count(session_factory, Run) == 0
        assert await _count(session_factory, UsageEvent) == 0

    async def test_other_tenants_test_case_not_found(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        acme_workspace: Any,
        tenants: tuple[Tenant, Tenant],
    ) -> None:
        _, globex = tenants
        globex_project = await _project(session_factory, globex, "Globex app")
        _, [case] = await _dataset(
            session_factory, globex, globex_project.id, [{"q": 1}]
        )
        launcher = _community_launcher(session_factory)

        with (
            tenant_scope(CurrentTenant.of(acme_workspace.tenant)),
            pytest.raises(UnitOfWorkNotFoundError, match="test case"),
        ):
            await launcher.launch(
                session,
                project_id=acme_workspace.project.id,
                test_case_id=case.id,
            )

        assert await _count(session_factory, Run) == 0

    async def test_dataset_from_another_project(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        acme_workspace: Any,
    ) -> None:
        acme = acme_workspace.tenant
        other = await _project(session_factory, acme, "Other")
        dataset, _ = await _dataset(session_factory, acme, other.id, [{"q": 1}])
        launcher = _community_launcher(session_factory)

        with (
            tenant_scope(CurrentTenant.of(acme)),
            pytest.raises(UnitOfWorkNotFoundError, match="dataset"),
        ):
            await launcher.launch(
                session,
                project_id=acme_workspace.project.id,
                dataset_id=dataset.id,
            )

    async def test_chain_from_another_project(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        acme_workspace: Any,
    ) -> None:
        acme = acme_workspace.tenant
        other = await _project(session_factory, acme, "Other")
        launcher = _community_launcher(session_factory)

        with (
            tenant_scope(CurrentTenant.of(acme)),
            pytest.raises(UnitOfWorkNotFoundError, match="chain"),
        ):
            await launcher.launch(
                session, project_id=other.id, chain_id=acme_workspace.chain.id
            )

    async def test_test_case_from_another_dataset(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        acme_workspace: Any,
    ) -> None:
        acme = acme_workspace.tenant
        project_id = acme_workspace.project.id
        first, _ = await _dataset(session_factory, acme, project_id, [{"q": 1}])
        _, [foreign_case] = await _dataset(
            session_factory, acme, project_id, [{"q": 2}]
        )
        launcher = _community_launcher(session_factory)

        with (
            tenant_scope(CurrentTenant.of(acme)),
            pytest.raises(UnitOfWorkNotFoundError, match="test case"),
        ):
            await launcher.launch(
                session,
                project_id=project_id,
                dataset_id=first.id,
                test_case_id=foreign_case.id,
            )

    async def test_test_case_implies_its_dataset(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        acme_workspace: Any,
    ) -> None:
        acme = acme_workspace.tenant
        dataset, [case] = await _dataset(
            session_factory, acme, acme_workspace.project.id, [{"q": 1}]
        )
        launcher = _community_launcher(session_factory)

        with tenant_scope(CurrentTenant.of(acme)):
            run = await launcher.launch(
                session,
                project_id=acme_workspace.project.id,
                test_case_id=case.id,
            )

        assert run.dataset_id == dataset.id
        assert run.test_case_id == case.id


class TestDatasetRuns:
    async def test_one_run_per_test_case(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        acme_workspace: Any,
    ) -> None:
        acme = acme_workspace.tenant
        dataset, cases = await _dataset(
            session_factory, acme, acme_workspace.project.id, CUSTOMERS
        )
        redis = MagicMock()
        redis.enqueue_job = AsyncMock(
            side_effect=[MagicMock(job_id=f"job-{i}") for i in range(3)]
        )
        launcher = _community_launcher(session_factory, redis=redis)

        with tenant_scope(CurrentTenant.of(acme)):
            runs = await launcher.launch_dataset(
                session,
                project_id=acme_workspace.project.id,
                dataset_id=dataset.id,
                chain_id=acme_workspace.chain.id,
            )

        assert [r.test_case_id for r in runs] == [c.id for c in cases]
        assert [r.input for r in runs] == CUSTOMERS
        assert {r.dataset_id for r in runs} == {dataset.id}
        assert [r.arq_job_id for r in runs] == ["job-0", "job-1", "job-2"]
        assert all(len(r.chain_snapshot) == 2 for r in runs)
        assert redis.enqueue_job.await_count == 3
        assert (
            await _count(
                session_factory, UsageEvent, meter="run_count", tenant_id=acme.id
            )
            == 3
        )

    async def test_quota_checked_once_for_the_batch(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        acme_workspace: Any,
    ) -> None:
        acme = acme_workspace.tenant
        dataset, _ = await _dataset(
            session_factory, acme, acme_workspace.project.id, CUSTOMERS
        )
        enforcer = MagicMock()
        enforcer.ensure_can_run_chain = AsyncMock()
        pipeline = build_metering_pipeline(
            session_factory, CommunityUsageCapabilityResolver()
        )
        launcher = RunLauncher(enforcer, pipeline.bus)

        with tenant_scope(CurrentTenant.of(acme)):
            await launcher.launch_dataset(
                session, project_id=acme_workspace.project.id, dataset_id=dataset.id
            )

        enforcer.ensure_can_run_chain.assert_awaited_once()
        _, kwargs = enforcer.ensure_can_run_chain.call_args
        assert kwargs["requested_units"] == 3
        assert kwargs["context"]["dataset_id"] == dataset.id

    async def test_batch_larger_than_remaining_quota_creates_nothing(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        acme_workspace: Any,
        plan_catalog: PlanCatalog,
    ) -> None:
        acme = acme_workspace.tenant
        dataset, _ = await _dataset(
            session_factory, acme, acme_workspace.project.id, CUSTOMERS
        )
        async with session_factory() as seed:
            seed.add(
                UsageEvent(
                    tenant_id=acme.id,
                    event_id="seed-run-count",
                    meter="run_count",
                    quantity=98,
                    context={},
                    occurred_at=datetime.now(UTC),
                )
            )
            await seed.commit()
        launcher = _metered_launcher(session_factory, plan_catalog)

        with (
            tenant_scope(CurrentTenant.of(acme)),
            pytest.raises(EntitlementDeniedError, match="Run limit reached"),
        ):
            await launcher.launch_dataset(
                session, project_id=acme_workspace.project.id, dataset_id=dataset.id
            )

        assert await _count(session_factory, Run) == 0

    async def test_empty_dataset_creates_no_runs(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        acme_workspace: Any,
    ) -> None:
        acme = acme_workspace.tenant
        dataset, _ = await _dataset(
            session_factory, acme, acme_workspace.project.id, []
        )
        launcher = _community_launcher(session_factory)

        with tenant_scope(CurrentTenant.of(acme)):
            runs = await launcher.launch_dataset(
                session, project_id=acme_workspace.project.id, dataset_id=dataset.id
            )

        assert runs == []
        assert await _count(session_factory, Run) == 0

    async def test_other_tenants_dataset(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        acme_workspace: Any,
        tenants: tuple[Tenant, Tenant],
    ) -> None:
        _, globex = tenants
        dataset, _ = await _dataset(
            session_factory, acme_workspace.tenant, acme_workspace.project.id, CUSTOMERS
        )
        globex_project = await _project(session_factory, globex, "Globex app")
        launcher = _community_launcher(session_factory)

        with (
            tenant_scope(CurrentTenant.of(globex)),
            pytest.raises(UnitOfWorkNotFoundError, match="dataset"),
        ):
            await launcher.launch_dataset(
                session, project_id=globex_project.id, dataset_id=dataset.id
            )


class TestRerun:
    async def test_rerun_copies_input_and_snapshot(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        acme_workspace: Any,
    ) -> None:
        acme = acme_workspace.tenant
        launcher = _community_launcher(session_factory)

        with tenant_scope(CurrentTenant.of(acme)):
            original = await launcher.launch(
                session,
                project_id=acme_workspace.project.id,
                chain_id=acme_workspace.chain.id,
                input={"customer": {"name": "Ada"}},
            )
            chain = await ChainRepository(session).get_with_nodes(
                acme_workspace.chain.id
            )
            assert chain is not None
            await ChainRepository(session).append_node(
                chain,
                name="Late addition",
                model_name="gpt-4o-mini",
                provider_credential_id=None,
                messages_config=[],
            )
            await session.commit()

            [rerun] = await launcher.rerun(session, original.id)

        assert rerun.id != original.id
        assert rerun.status == "pending"
        assert rerun.input == {"customer": {"name": "Ada"}}
        assert rerun.chain_snapshot == original.chain_snapshot
        assert rerun.chain_id == acme_workspace.chain.id
        assert (
            await _count(
                session_factory, UsageEvent, meter="run_count", tenant_id=acme.id
            )
            == 2
        )

    async def test_rerun_of_dataset_run_reruns_dataset(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        acme_workspace: Any,
    ) -> None:
        acme = acme_workspace.tenant
        dataset, cases = await _dataset(
            session_factory, acme, acme_workspace.project.id, CUSTOMERS
        )
        launcher = _community_launcher(session_factory)

        with tenant_scope(CurrentTenant.of(acme)):
            first = await launcher.launch_dataset(
                session, project_id=acme_workspace.project.id, dataset_id=dataset.id
            )
            again = await launcher.rerun(session, first[0].id)

        assert [r.test_case_id for r in again] == [c.id for c in cases]
        assert {r.id for r in again}.isdisjoint({r.id for r in first})
        assert await _count(session_factory, Run) == 6

    async def test_rerun_other_tenants_run(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        acme_workspace: Any,
        tenants: tuple[Tenant, Tenant],
    ) -> None:
        _, globex = tenants
        launcher = _community_launcher(session_factory)
        with tenant_scope(CurrentTenant.of(acme_workspace.tenant)):
            run = await launcher.launch(session, project_id=acme_workspace.project.id)

        with (
            tenant_scope(CurrentTenant.of(globex)),
            pytest.raises(UnitOfWorkNotFoundError, match=f"run {run.id} not found"),
        ):
            await launcher.rerun(session, run.id)

        assert await _count(session_factory, Run) == 1
