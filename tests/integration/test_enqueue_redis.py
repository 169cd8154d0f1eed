"""Integration tests for run launch with real DB + Redis.

Run with: ``pytest tests/integration/test_enqueue_redis.py --run-db --run-redis -v``
"""

from __future__ import annotations

import pytest
from arq.connections import ArqRedis
from arq.jobs import Job as ArqJob
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from prompt_workbench.config import EntitlementEdition, Settings
from prompt_workbench.entitlements.setup import create_entitlements
from prompt_workbench.metering.pipeline import build_metering_pipeline
from prompt_workbench.runs.launcher import EXECUTE_RUN_TASK, RunLauncher
from prompt_workbench.storage.repositories import RunRepository
from prompt_workbench.tenancy.context import CurrentTenant, tenant_scope

pytestmark = [pytest.mark.requires_db, pytest.mark.requires_redis]


class TestRunLaunch:
    async def test_job_queued_with_run_id(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        committed_tenants: dict[str, int],
        arq_redis: ArqRedis,
    ) -> None:
        entitlements = create_entitlements(
            Settings(entitlement_edition=EntitlementEdition.COMMUNITY),
            session_factory,
        )
        metering = build_metering_pipeline(session_factory, entitlements.capabilities)
        launcher = RunLauncher(entitlements.enforcer, metering.bus, redis=arq_redis)

        with tenant_scope(CurrentTenant(tenant_id=committed_tenants["acme"])):
            async with session_factory() as session:
                run = await launcher.launch(
                    session, project_id=committed_tenants["acme_project"]
                )
                run_id = run.id
                arq_job_id = run.arq_job_id

            async with session_factory() as session:
                persisted = await RunRepository(session).get_by_id(run_id)

        assert persisted is not None
        assert persisted.status == "pending"
        assert arq_job_id is not None
        assert persisted.arq_job_id == arq_job_id

        info = await ArqJob(arq_job_id, redis=arq_redis).info()
        assert info is not None
        assert info.function == EXECUTE_RUN_TASK
        assert info.args == (run_id,)
