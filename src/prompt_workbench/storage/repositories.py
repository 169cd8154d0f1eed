"""Tenant-scoped CRUD repositories for the prompt workbench entities.

Every repository here derives from
:class:`~prompt_workbench.tenancy.scoping.TenantScopedRepository`, so all
queries are filtered by the current tenant and every insert is stamped
with it.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import selectinload

from prompt_workbench.errors import InvalidStatusTransitionError
from prompt_workbench.storage.orm import (
    Chain,
    ChainNode,
    Dataset,
    Feedback,
    Project,
    PromptTemplate,
    PromptVersion,
    ProviderCredential,
    Run,
    RunStep,
    TestCase,
)
from prompt_workbench.tenancy.scoping import TenantScopedRepository

# Valid run status transitions: current_status → set of allowed next statuses
RUN_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"running", "failed", "cancelled"},
    "running": {"completed", "failed"},
    "completed": set(),  # terminal state
    "failed": {"pending"},  # rerun
    "cancelled": set(),
}

TERMINAL_RUN_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})


class ProjectRepository(TenantScopedRepository[Project]):
    model = Project

    async def create(  # type: ignore[override]
        self,
        *,
        name: str,
        description: str | None = None,
        tenant_id: int | None = None,
    ) -> Project:
        """Create a project.

        Args:
            name: Project name.
            description: Optional description.
            tenant_id: Explicit owner; defaults to the current tenant.
        """
        project = Project(name=name, description=description)
        if tenant_id is not None:
            project.tenant_id = tenant_id
        return await self.add(project)


class ProviderCredentialRepository(TenantScopedRepository[ProviderCredential]):
    model = ProviderCredential

    async def create(  # type: ignore[override]
        self,
        *,
        provider: str,
        name: str,
        encrypted_api_key: str,
        meta: dict[str, Any] | None = None,
    ) -> ProviderCredential:
        credential = ProviderCredential(
            provider=provider,
            name=name,
            encrypted_api_key=encrypted_api_key,
            meta=meta,
        )
        return await self.add(credential)

    async def list_for_provider(self, provider: str) -> list[ProviderCredential]:
        stmt = self.scoped_select(ProviderCredential.provider == provider).order_by(
            ProviderCredential.name
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class PromptVersionRepository(TenantScopedRepository[PromptVersion]):
    model = PromptVersion

    async def latest_for_template(self, template_id: int) -> PromptVersion | None:
        stmt = (
            self.scoped_select(PromptVersion.prompt_template_id == template_id)
            .order_by(PromptVersion.version.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


class PromptTemplateRepository(TenantScopedRepository[PromptTemplate]):
    model = PromptTemplate

    async def create(  # type: ignore[override]
        self,
        *,
        project_id: int,
        name: str,
        description: str | None = None,
    ) -> PromptTemplate:
        template = PromptTemplate(
            project_id=project_id, name=name, description=description
        )
        return await self.add(template)

    async def list_for_project(self, project_id: int) -> list[PromptTemplate]:
        stmt = self.scoped_select(PromptTemplate.project_id == project_id).order_by(
            PromptTemplate.name
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_with_versions(self, template_id: int) -> PromptTemplate | None:
        stmt = self.scoped_select(PromptTemplate.id == template_id).options(
            selectinload(PromptTemplate.versions)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create_new_version(
        self,
        template: PromptTemplate,
        *,
        content: str,
        changelog: str | None = None,
        created_by: int | None = None,
    ) -> PromptVersion:
        """Append the next version (max + 1) to *template*.

        The version inherits the template's tenant. The unique
        ``(prompt_template_id, version)`` constraint rejects a concurrent
        writer that computed the same number.
        """
        stmt = (
            select(func.max(PromptVersion.version))
            .where(
                PromptVersion.prompt_template_id == template.id,
                PromptVersion.tenant_id == template.tenant_id,
            )
        )
        current = (await self._session.execute(stmt)).scalar_one_or_none()
        version = PromptVersion(
            tenant_id=template.tenant_id,
            prompt_template_id=template.id,
            version=(current or 0) + 1,
            content=content,
            changelog=changelog,
            created_by=created_by,
        )
        return await PromptVersionRepository(self._session).add(version)


class ChainRepository(TenantScopedRepository[Chain]):
    model = Chain

    async def create(  # type: ignore[override]
        self,
        *,
        project_id: int,
        name: str,
        description: str | None = None,
        is_quick_prompt: bool = False,
    ) -> Chain:
        chain = Chain(
            project_id=project_id,
            name=name,
            description=description,
            is_quick_prompt=is_quick_prompt,
        )
        return await self.add(chain)

    async def get_with_nodes(self, chain_id: int) -> Chain | None:
        """Get chain with its nodes (ordered by ``order_index``)."""
        stmt = self.scoped_select(Chain.id == chain_id).options(
            selectinload(Chain.nodes)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def append_node(
        self,
        chain: Chain,
        *,
        name: str,
        model_name: str,
        provider_credential_id: int | None,
        messages_config: list[dict[str, Any]],
        model_params: dict[str, Any] | None = None,
        output_schema: dict[str, Any] | None = None,
        stop_on_validation_error: bool = False,
    ) -> ChainNode:
        """Add a node after the chain's current last node."""
        stmt = select(func.max(ChainNode.order_index)).where(
            ChainNode.chain_id == chain.id,
            ChainNode.tenant_id == chain.tenant_id,
        )
        last = (await self._session.execute(stmt)).scalar_one_or_none()
        node = ChainNode(
            tenant_id=chain.tenant_id,
            chain_id=chain.id,
            name=name,
            order_index=(last or 0) + 1,
            provider_credential_id=provider_credential_id,
            model_name=model_name,
            model_params=model_params,
            messages_config=messages_config,
            output_schema=output_schema,
            stop_on_validation_error=stop_on_validation_error,
        )
        self._session.add(node)
        await self._session.flush()
        return node


class DatasetRepository(TenantScopedRepository[Dataset]):
    model = Dataset


class TestCaseRepository(TenantScopedRepository[TestCase]):
    __test__ = False
    model = TestCase

    async def list_for_dataset(self, dataset_id: int) -> list[TestCase]:
        stmt = self.scoped_select(TestCase.dataset_id == dataset_id).order_by(
            TestCase.id
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class RunRepository(TenantScopedRepository[Run]):
    """Tenant-scoped repository for runs and their status lifecycle."""

    model = Run

    async def create(  # type: ignore[override]
        self,
        *,
        project_id: int,
        chain_id: int | None,
        input: dict[str, Any],
        chain_snapshot: list[dict[str, Any]],
        dataset_id: int | None = None,
        test_case_id: int | None = None,
    ) -> Run:
        """Create a pending run for the current tenant."""
        run = Run(
            project_id=project_id,
            chain_id=chain_id,
            dataset_id=dataset_id,
            test_case_id=test_case_id,
            input=input,
            chain_snapshot=chain_snapshot,
            status="pending",
        )
        return await self.add(run)

    async def get_with_steps(self, run_id: int) -> Run | None:
        stmt = self.scoped_select(Run.id == run_id).options(selectinload(Run.steps))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_project(
        self,
        project_id: int,
        *,
        status: str | None = None,
        limit: int = 50,
    ) -> list[Run]:
        stmt = self.scoped_select(Run.project_id == project_id)
        if status is not None:
            stmt = stmt.where(Run.status == status)
        stmt = stmt.order_by(Run.id.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def update_status(
        self,
        run_id: int,
        status: str,
        *,
        error_message: str | None = None,
        now: datetime | None = None,
        **totals: Any,
    ) -> Run:
        """Transition run to a new status with validation.

        Args:
            now: Override for current time (useful for testing).
            totals: Extra columns written with the transition
                (``total_tokens_in``, ``duration_ms``, ...).

        Raises:
            InvalidStatusTransitionError: If the run is not visible or
                the transition is not allowed.
        """
        run = await self.get_by_id(run_id)
        if run is None:
            msg = f"Run {run_id} not found"
            raise InvalidStatusTransitionError(msg)

        allowed = RUN_TRANSITIONS.get(run.status, set())
        if status not in allowed:
            msg = (
                f"Invalid run status transition: '{run.status}' → '{status}'. "
                f"Allowed: {allowed or 'none (terminal state)'}"
            )
            raise InvalidStatusTransitionError(msg)

        now = now or datetime.now(UTC)
        values: dict[str, Any] = {"status": status, **totals}
        if status == "running":
            values["started_at"] = run.started_at or now
        elif status in TERMINAL_RUN_STATUSES:
            values["finished_at"] = now
            if error_message is not None:
                values["error_message"] = error_message
        elif status == "pending":
            values["error_message"] = None

        updated = await self.update(run_id, **values)
        if updated is None:  # pragma: no cover
            msg = f"Run {run_id} disappeared after update"
            raise RuntimeError(msg)
        return updated


class RunStepRepository(TenantScopedRepository[RunStep]):
    model = RunStep


class FeedbackRepository(TenantScopedRepository[Feedback]):
    model = Feedback

    async def list_for_run(self, run_id: int) -> list[Feedback]:
        stmt = self.scoped_select(Feedback.run_id == run_id).order_by(
            Feedback.id.desc()
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
