"""Shared pytest fixtures."""

from collections.abc import AsyncGenerator, Iterator
from dataclasses import dataclass
from pathlib import Path

import pytest
import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from prompt_workbench.entitlements.plans import PlanCatalog, load_plan_catalog
from prompt_workbench.storage.database import create_session_factory
from prompt_workbench.storage.orm import (
    Base,
    Chain,
    Project,
    PromptTemplate,
    ProviderCredential,
    Tenant,
)
from prompt_workbench.storage.repositories import (
    ChainRepository,
    ProjectRepository,
    PromptTemplateRepository,
    ProviderCredentialRepository,
)
from prompt_workbench.tenancy import context as tenant_context

PLANS_PATH = Path(__file__).resolve().parents[1] / "config" / "plans.yaml"


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--run-db",
        action="store_true",
        default=False,
        help="Run tests that require a live PostgreSQL instance",
    )
    parser.addoption(
        "--run-redis",
        action="store_true",
        default=False,
        help="Run tests that require a live Redis instance",
    )


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    markers_to_check = {
        "requires_db": ("--run-db", "needs --run-db flag"),
        "requires_redis": ("--run-redis", "needs --run-redis flag"),
    }

    skip_conditions = {
        marker_name: (not config.getoption(option_flag), reason_msg)
        for marker_name, (option_flag, reason_msg) in markers_to_check.items()
    }

    for item in items:
        for marker_name, (should_skip, reason_msg) in skip_conditions.items():
            if should_skip and marker_name in item.keywords:
                item.add_marker(pytest.mark.skip(reason=reason_msg))


@pytest.fixture(autouse=True)
def _reset_contexts() -> Iterator[None]:
    """Every test starts and ends without a tenant or bound log context."""
    tenant_context.clear()
    structlog.contextvars.clear_contextvars()
    yield
    tenant_context.clear()
    structlog.contextvars.clear_contextvars()


# ── SQLite-backed database (one file per test) ────────────────────


@pytest.fixture()
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine]:
    """Async engine on a throwaway SQLite file with the full schema."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture()
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture()
async def tenants(
    session_factory: async_sessionmaker[AsyncSession],
) -> tuple[Tenant, Tenant]:
    """Two committed tenants: Acme (free plan) and Globex (pro plan)."""
    async with session_factory() as session:
        acme = Tenant(name="Acme", plan="free")
        globex = Tenant(name="Globex", plan="pro")
        session.add_all([acme, globex])
        await session.commit()
    return acme, globex


@pytest.fixture()
def plan_catalog() -> PlanCatalog:
    """The plan catalogue shipped in config/plans.yaml."""
    return load_plan_catalog(PLANS_PATH)


@dataclass
class Workspace:
    tenant: Tenant
    project: Project
    credential: ProviderCredential
    template: PromptTemplate
    chain: Chain


@pytest.fixture()
async def acme_workspace(
    session_factory: async_sessionmaker[AsyncSession],
    tenants: tuple[Tenant, Tenant],
) -> Workspace:
    """Acme project with a credential, a template and a two-node chain.

    The first node renders the template with a run input value; the
    second quotes the first node's output.
    """
    acme, _ = tenants
    async with session_factory() as session:
        with tenant_context.tenant_scope(tenant_context.CurrentTenant.of(acme)):
            project = await ProjectRepository(session).create(name="Support bot")
            credential = await ProviderCredentialRepository(session).create(
                provider="openai", name="default", encrypted_api_key="enc:sk-test"
            )
            templates = PromptTemplateRepository(session)
            template = await templates.create(project_id=project.id, name="greet")
            await templates.create_new_version(
                template, content="Say hello to {{ name }}."
            )
            chains = ChainRepository(session)
            chain = await chains.create(project_id=project.id, name="Greeting")
            await chains.append_node(
                chain,
                name="Greet",
                model_name="gpt-4o-mini",
                provider_credential_id=credential.id,
                messages_config=[
                    {
                        "role": "user",
                        "mode": "template",
                        "prompt_template_id": template.id,
                        "variables": {
                            "name": {"source": "input", "path": "customer.name"}
                        },
                    }
                ],
            )
            await chains.append_node(
                chain,
                name="Review",
                model_name="gpt-4o-mini",
                provider_credential_id=credential.id,
                messages_config=[
                    {
                        "role": "user",
                        "mode": "inline",
                        "inline_content": "Review: {{ draft }}",
                        "variables": {
                            "draft": {"source": "previous_step", "step_key": "greet"}
                        },
                    }
                ],
            )
            await session.commit()
    return Workspace(
        tenant=acme,
        project=project,
        credential=credential,
        template=template,
        chain=chain,
    )
