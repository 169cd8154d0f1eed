"""Tenant scoping for tenant-owned entities.

Every tenant-owned row is read and written through a
:class:`TenantScopedRepository`. The default path follows the ambient
tenant from :mod:`prompt_workbench.tenancy.context`:

* **create** stamps ``tenant_id`` from the context. A value already set
  on the entity is kept as is. With neither available,
  :class:`~prompt_workbench.errors.MissingTenantContextError` is raised
  and nothing is flushed.
* **select / update / delete** get a ``tenant_id = :current`` predicate.
  With no tenant set the predicate becomes ``false()``: the statement
  matches zero rows and a ``tenant_scope_missing`` warning is logged.

Writes fail loudly, reads fail closed. The asymmetry is intentional.

Trusted infrastructure gets two distinctly named escape hatches, both
logged as ``tenant_scope_bypassed``:

* ``Repo.for_tenant(session, tenant_id)`` scopes to an explicit tenant
  regardless of ambient context;
* ``Repo.unscoped(session)`` returns a read-only loader with no tenant
  filter at all (used to find the owner of a queued unit of work).

:class:`TenantAwareSession` additionally checks ``session.new`` at flush
time, so a tenant-owned object added with a bare ``session.add`` is
stamped (or rejected) the same way.
"""

from __future__ import annotations

from typing import Any, ClassVar, Generic, Self, TypeVar

import structlog
from sqlalchemy import ColumnElement, Select, delete, event, false, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session, UOWTransaction

from prompt_workbench.errors import MissingTenantContextError, TenantIsolationError
from prompt_workbench.storage.orm import TenantOwnedMixin
from prompt_workbench.tenancy.context import current_tenant_id

ModelT = TypeVar("ModelT", bound=TenantOwnedMixin)


def stamp_tenant(entity: TenantOwnedMixin) -> int:
    """Ensure *entity* carries a tenant id and return it.

    An explicit ``tenant_id`` on the entity wins over the ambient tenant.

    Raises:
        MissingTenantContextError: neither source provides a tenant.
    """
    if entity.tenant_id is not None:
        return entity.tenant_id

    tenant_id = current_tenant_id()
    if tenant_id is None:
        raise MissingTenantContextError(type(entity).__name__)

    entity.tenant_id = tenant_id
    return tenant_id


class TenantAwareSession(Session):
    """Sync session class behind every ``AsyncSession`` the app creates.

    Pass as ``sync_session_class`` to ``async_sessionmaker``.
    """


@event.listens_for(TenantAwareSession, "before_flush")
def _stamp_pending_rows(
    session: Session,
    flush_context: UOWTransaction,
    instances: object,
) -> None:
    for obj in session.new:
        if isinstance(obj, TenantOwnedMixin):
            stamp_tenant(obj)


def _request_id() -> str | None:
    value = structlog.contextvars.get_contextvars().get("request_id")
    return None if value is None else str(value)


class UnscopedReader(Generic[ModelT]):
    """Primary-key loader that ignores tenant scoping. Read only."""

    def __init__(self, session: AsyncSession, model: type[ModelT]) -> None:
        self._session = session
        self._model = model

    async def get_by_id(self, entity_id: int) -> ModelT | None:
        structlog.get_logger().info(
            "tenant_scope_bypassed",
            mode="unscoped",
            model=self._model.__name__,
            entity_id=entity_id,
        )
        stmt = select(self._model).where(self._model.id == entity_id)  # type: ignore[attr-defined]
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


class TenantScopedRepository(Generic[ModelT]):
    """Base class for repositories of tenant-owned entities.

    Subclasses set ``model`` and add domain-specific queries built on
    :meth:`scoped_select` (never on a bare ``select``).
    """

    model: ClassVar[type[Any]]

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._pinned_tenant_id: int | None = None
        self._pinned = False

    @classmethod
    def for_tenant(cls, session: AsyncSession, tenant_id: int) -> Self:
        """Repository bound to *tenant_id*, ignoring the ambient tenant."""
        structlog.get_logger().info(
            "tenant_scope_bypassed",
            mode="for_tenant",
            model=cls.model.__name__,
            scoped_tenant_id=tenant_id,
            ambient_tenant_id=current_tenant_id(),
        )
        repo = cls(session)
        repo._pinned = True
        repo._pinned_tenant_id = tenant_id
        return repo

    @classmethod
    def unscoped(cls, session: AsyncSession) -> UnscopedReader[ModelT]:
        """Read-only loader with no tenant filter. Infrastructure only."""
        return UnscopedReader(session, cls.model)

    @property
    def tenant_id(self) -> int | None:
        """Tenant this repository currently acts for, or ``None``."""
        if self._pinned:
            return self._pinned_tenant_id
        return current_tenant_id()

    def _tenant_predicate(self) -> ColumnElement[bool]:
        tenant_id = self.tenant_id
        if tenant_id is None:
            structlog.get_logger().warning(
                "tenant_scope_missing",
                model=self.model.__name__,
                request_id=_request_id(),
            )
            return false()
        return self.model.tenant_id == tenant_id

    def scoped_select(self, *criteria: Any) -> Select[tuple[ModelT]]:
        """``SELECT model`` restricted to this repository's tenant."""
        return select(self.model).where(self._tenant_predicate(), *criteria)

    # ── Writes ──

    async def add(self, entity: ModelT) -> ModelT:
        """Stamp *entity* with the tenant, add and flush it."""
        if self._pinned and self._pinned_tenant_id is not None:
            if entity.tenant_id is None:
                entity.tenant_id = self._pinned_tenant_id
            elif entity.tenant_id != self._pinned_tenant_id:
                raise TenantIsolationError(
                    type(entity).__name__, self._pinned_tenant_id, entity.tenant_id
                )
        stamp_tenant(entity)
        self._session.add(entity)
        await self._session.flush()
        return entity

    async def create(self, **attrs: Any) -> ModelT:
        entity: ModelT = self.model(**attrs)
        return await self.add(entity)

    async def update(self, entity_id: int, **values: Any) -> ModelT | None:
        """Update one row by id within scope; ``None`` if not visible.

        Raises:
            TenantIsolationError: *values* tries to move the row to
                another tenant.
        """
        if "tenant_id" in values and values["tenant_id"] != self.tenant_id:
            raise TenantIsolationError(
                self.model.__name__, self.tenant_id or 0, values["tenant_id"]
            )
        stmt = (
            update(self.model)
            .where(self.model.id == entity_id, self._tenant_predicate())
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        if result.rowcount == 0:  # type: ignore[attr-defined]
            return None
        stmt = self.scoped_select(self.model.id == entity_id).execution_options(
            populate_existing=True
        )
        refreshed = await self._session.execute(stmt)
        return refreshed.scalar_one()

    async def delete(self, entity_id: int) -> bool:
        """Delete one row by id within scope. Returns whether it existed."""
        stmt = (
            delete(self.model)
            .where(self.model.id == entity_id, self._tenant_predicate())
            .execution_options(synchronize_session="fetch")
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return bool(result.rowcount)  # type: ignore[attr-defined]

    # ── Reads ──

    async def get_by_id(self, entity_id: int) -> ModelT | None:
        stmt = self.scoped_select(self.model.id == entity_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(self, *, limit: int = 50, offset: int = 0) -> list[ModelT]:
        """List rows for the tenant, newest first."""
        stmt = (
            self.scoped_select()
            .order_by(self.model.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count(self) -> int:
        stmt = (
            select(func.count())
            .select_from(self.model)
            .where(self._tenant_predicate())
        )
        result = await self._session.execute(stmt)
        return result.scalar_one()
