"""SQLAlchemy ORM models for all project entities."""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# BIGINT identity on PostgreSQL; SQLite only autoincrements INTEGER PRIMARY KEY.
Identifier = BigInteger().with_variant(Integer(), "sqlite")
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class TenantOwnedMixin:
    """Column shared by every entity that belongs to exactly one tenant.

    Rows are stamped and filtered by
    :mod:`prompt_workbench.tenancy.scoping`; never query these models
    with a bare ``select()`` in application code.
    """

    tenant_id: Mapped[int] = mapped_column(
        Identifier,
        ForeignKey("tenants.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )


# ──────────────────────────────────────────────
# Tenancy & Identity
# ──────────────────────────────────────────────


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    plan: Mapped[str] = mapped_column(String(50), default="free")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    memberships: Mapped[list["TenantMembership"]] = relationship(
        back_populates="tenant", cascade="all, delete-orphan"
    )
    api_keys: Mapped[list["APIKey"]] = relationship(
        back_populates="tenant", cascade="all, delete-orphan"
    )


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    email: Mapped[str] = mapped_column(String(255), unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    memberships: Mapped[list["TenantMembership"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )


class TenantMembership(Base):
    """Pivot between users and tenants, carrying the member's role."""

    __tablename__ = "tenant_user"
    __table_args__ = (UniqueConstraint("tenant_id", "user_id"),)

    id: Mapped[int] = mapped_column(Identifier, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(
        Identifier, ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    user_id: Mapped[int] = mapped_column(
        Identifier, ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    role: Mapped[str] = mapped_column(String(20), default="member")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    tenant: Mapped["Tenant"] = relationship(back_populates="memberships")
    user: Mapped["User"] = relationship(back_populates="memberships")


class APIKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(
        Identifier, ForeignKey("tenants.id", ondelete="CASCADE")
    )
    key_hash: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    key_prefix: Mapped[str] = mapped_column(String(16))
    label: Mapped[str] = mapped_column(String(100), default="default")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    tenant: Mapped["Tenant"] = relationship(back_populates="api_keys")


# ──────────────────────────────────────────────
# Projects, Credentials & Prompts
# ──────────────────────────────────────────────


class Project(TenantOwnedMixin, Base):
    __tablename__ = "projects"
    __table_args__ = (Index("ix_projects_tenant_name", "tenant_id", "name"),)

    id: Mapped[int] = mapped_column(Identifier, primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ProviderCredential(TenantOwnedMixin, Base):
    """API credential for one LLM provider.

    ``encrypted_api_key`` is ciphertext produced outside this package.
    """

    __tablename__ = "provider_credentials"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True)
    provider: Mapped[str] = mapped_column(String(50))
    name: Mapped[str] = mapped_column(String(255))
    encrypted_api_key: Mapped[str] = mapped_column(Text)
    meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class PromptTemplate(TenantOwnedMixin, Base):
    __tablename__ = "prompt_templates"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True)
    project_id: Mapped[int] = mapped_column(
        Identifier, ForeignKey("projects.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text)
    variables: Mapped[list[Any] | None] = mapped_column(JSONType)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    versions: Mapped[list["PromptVersion"]] = relationship(
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="PromptVersion.version",
    )


class PromptVersion(TenantOwnedMixin, Base):
    __tablename__ = "prompt_versions"
    __table_args__ = (UniqueConstraint("prompt_template_id", "version"),)

    id: Mapped[int] = mapped_column(Identifier, primary_key=True)
    prompt_template_id: Mapped[int] = mapped_column(
        Identifier, ForeignKey("prompt_templates.id", ondelete="CASCADE")
    )
    version: Mapped[int] = mapped_column(Integer)
    content: Mapped[str] = mapped_column(Text)
    changelog: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[int | None] = mapped_column(
        Identifier, ForeignKey("users.id", ondelete="SET NULL")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    template: Mapped["PromptTemplate"] = relationship(back_populates="versions")


# ──────────────────────────────────────────────
# Chains, Datasets & Runs
# ──────────────────────────────────────────────


class Chain(TenantOwnedMixin, Base):
    __tablename__ = "chains"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True)
    project_id: Mapped[int] = mapped_column(
        Identifier, ForeignKey("projects.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_quick_prompt: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    nodes: Mapped[list["ChainNode"]] = relationship(
        back_populates="chain",
        cascade="all, delete-orphan",
        order_by="ChainNode.order_index",
    )


class ChainNode(TenantOwnedMixin, Base):
    __tablename__ = "chain_nodes"
    __table_args__ = (UniqueConstraint("chain_id", "order_index"),)

    id: Mapped[int] = mapped_column(Identifier, primary_key=True)
    chain_id: Mapped[int] = mapped_column(
        Identifier, ForeignKey("chains.id", ondelete="CASCADE")
    )
    name: Mapped[str] = mapped_column(String(255))
    order_index: Mapped[int] = mapped_column(Integer)
    provider_credential_id: Mapped[int | None] = mapped_column(
        Identifier, ForeignKey("provider_credentials.id", ondelete="SET NULL")
    )
    model_name: Mapped[str] = mapped_column(String(200))
    model_params: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    messages_config: Mapped[list[Any]] = mapped_column(JSONType, default=list)
    output_schema: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    stop_on_validation_error: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    chain: Mapped["Chain"] = relationship(back_populates="nodes")


class Dataset(TenantOwnedMixin, Base):
    __tablename__ = "datasets"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True)
    project_id: Mapped[int] = mapped_column(
        Identifier, ForeignKey("projects.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    test_cases: Mapped[list["TestCase"]] = relationship(
        back_populates="dataset", cascade="all, delete-orphan"
    )


class TestCase(TenantOwnedMixin, Base):
    __tablename__ = "test_cases"
    __test__ = False  # not a pytest class

    id: Mapped[int] = mapped_column(Identifier, primary_key=True)
    dataset_id: Mapped[int] = mapped_column(
        Identifier, ForeignKey("datasets.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String(255))
    input_variables: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    expected_output: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    tags: Mapped[list[Any] | None] = mapped_column(JSONType)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    dataset: Mapped["Dataset"] = relationship(back_populates="test_cases")


class Run(TenantOwnedMixin, Base):
    """One execution of a chain (or a single prompt) against its input.

    ``chain_snapshot`` freezes the nodes at launch time so later chain
    edits do not change what a queued run executes.
    """

    __tablename__ = "runs"
    __table_args__ = (Index("ix_runs_tenant_project", "tenant_id", "project_id"),)

    id: Mapped[int] = mapped_column(Identifier, primary_key=True)
    project_id: Mapped[int] = mapped_column(
        Identifier, ForeignKey("projects.id", ondelete="CASCADE")
    )
    chain_id: Mapped[int | None] = mapped_column(
        Identifier, ForeignKey("chains.id", ondelete="CASCADE"), index=True
    )
    dataset_id: Mapped[int | None] = mapped_column(
        Identifier, ForeignKey("datasets.id", ondelete="SET NULL")
    )
    test_case_id: Mapped[int | None] = mapped_column(
        Identifier, ForeignKey("test_cases.id", ondelete="SET NULL")
    )
    input: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    chain_snapshot: Mapped[list[Any]] = mapped_column(JSONType, default=list)
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    error_message: Mapped[str | None] = mapped_column(Text)
    arq_job_id: Mapped[str | None] = mapped_column(String(100))
    total_tokens_in: Mapped[int | None] = mapped_column(Integer)
    total_tokens_out: Mapped[int | None] = mapped_column(Integer)
    duration_ms: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    steps: Mapped[list["RunStep"]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="RunStep.order_index",
    )


class RunStep(TenantOwnedMixin, Base):
    __tablename__ = "run_steps"
    __table_args__ = (UniqueConstraint("run_id", "order_index"),)

    id: Mapped[int] = mapped_column(Identifier, primary_key=True)
    run_id: Mapped[int] = mapped_column(
        Identifier, ForeignKey("runs.id", ondelete="CASCADE"), index=True
    )
    chain_node_id: Mapped[int | None] = mapped_column(
        Identifier, ForeignKey("chain_nodes.id", ondelete="SET NULL")
    )
    order_index: Mapped[int] = mapped_column(Integer)
    request_payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    response_raw: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    response_content: Mapped[str | None] = mapped_column(Text)
    parsed_output: Mapped[Any | None] = mapped_column(JSONType)
    tokens_in: Mapped[int | None] = mapped_column(Integer)
    tokens_out: Mapped[int | None] = mapped_column(Integer)
    duration_ms: Mapped[int | None] = mapped_column(Integer)
    validation_errors: Mapped[list[Any] | None] = mapped_column(JSONType)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    run: Mapped["Run"] = relationship(back_populates="steps")


class Feedback(TenantOwnedMixin, Base):
    __tablename__ = "feedback"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True)
    user_id: Mapped[int | None] = mapped_column(
        Identifier, ForeignKey("users.id", ondelete="CASCADE")
    )
    run_id: Mapped[int] = mapped_column(
        Identifier, ForeignKey("runs.id", ondelete="CASCADE"), index=True
    )
    run_step_id: Mapped[int | None] = mapped_column(
        Identifier, ForeignKey("run_steps.id", ondelete="SET NULL")
    )
    type: Mapped[str] = mapped_column(String(50))
    rating: Mapped[int | None] = mapped_column(Integer)
    comment: Mapped[str | None] = mapped_column(Text)
    suggested_prompt_content: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


# ──────────────────────────────────────────────
# Usage Metering
# ──────────────────────────────────────────────


class UsageEvent(TenantOwnedMixin, Base):
    """Immutable record that a quota-relevant action happened.

    ``event_id`` is the idempotency key: the same logical event recorded
    twice collapses into one row.
    """

    __tablename__ = "usage_events"
    __table_args__ = (
        Index("ix_usage_events_tenant_meter_time", "tenant_id", "meter", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(Identifier, primary_key=True)
    event_id: Mapped[str] = mapped_column(String(36), unique=True)
    meter: Mapped[str] = mapped_column(String(100))
    quantity: Mapped[int] = mapped_column(Integer)
    context: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
