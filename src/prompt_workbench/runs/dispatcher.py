"""Background execution dispatcher for queued runs.

A worker receives nothing but a run id and has no ambient tenant. The
dispatcher loads the run without tenant filtering, resolves its owning
tenant, re-establishes tenant context and only then hands the run to
:class:`~prompt_workbench.runs.action.RunChainAction`, which uses the
normal tenant-scoped repositories.
"""

from __future__ import annotations

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from prompt_workbench.errors import OwningTenantUnresolvedError
from prompt_workbench.runs.action import RunChainAction
from prompt_workbench.storage.orm import Run, Tenant
from prompt_workbench.storage.repositories import TERMINAL_RUN_STATUSES, RunRepository
from prompt_workbench.tenancy.context import CurrentTenant, tenant_scope


class RunDispatcher:
    """Execute queued runs in the context of their owning tenant.

    Safe to call more than once for the same run id: runs already in a
    terminal status are left alone.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        action: RunChainAction,
    ) -> None:
        self._session_factory = session_factory
        self._action = action

    async def dispatch(self, run_id: int) -> Run | None:
        """Execute run *run_id*.

        Returns:
            The run after execution (or after being marked failed), or
            ``None`` when the run no longer exists.
        """
        log = structlog.get_logger().bind(run_id=run_id)
        async with self._session_factory() as session:
            run = await RunRepository.unscoped(session).get_by_id(run_id)
            if run is None:
                log.warning("run_dispatch_skipped", reason="run_not_found")
                return None

            if run.status in TERMINAL_RUN_STATUSES:
                log.info(
                    "run_dispatch_skipped",
                    reason="already_finished",
                    status=run.status,
                )
                return run

            tenant = await session.get(Tenant, run.tenant_id)
            if tenant is None or not tenant.is_active:
                return await self._fail_unresolved(session, run)

            with tenant_scope(CurrentTenant.of(tenant)):
                log.info("run_dispatched", tenant_id=tenant.id)
                return await self._action.execute(session, run)

    async def _fail_unresolved(self, session: AsyncSession, run: Run) -> Run:
        """Mark *run* failed; a missing owner is not worth retrying."""
        error = OwningTenantUnresolvedError("run", run.id, run.tenant_id)
        structlog.get_logger().error(
            "run_tenant_unresolved",
            run_id=run.id,
            tenant_id=run.tenant_id,
        )
        repo = RunRepository.for_tenant(session, run.tenant_id)
        failed = await repo.update_status(run.id, "failed", error_message=str(error))
        await session.commit()
        return failed
