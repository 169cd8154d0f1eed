"""Current tenant for the running unit of work.

Backed by a :class:`~contextvars.ContextVar`, so every thread and every
asyncio task (an HTTP request, an ARQ job) sees its own value. Nothing
here is process-global: a request that never sets a tenant reads
``None`` even if another request on the same worker thread set one.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass
from typing import Protocol

import structlog


class _TenantLike(Protocol):
    id: int
    name: str


@dataclass(frozen=True)
class CurrentTenant:
    """Tenant on whose behalf the current unit of work executes."""

    tenant_id: int
    tenant_name: str = ""

    @classmethod
    def of(cls, tenant: _TenantLike) -> CurrentTenant:
        """Build from a ``Tenant`` row (or anything with ``id``/``name``)."""
        return cls(tenant_id=tenant.id, tenant_name=tenant.name)


_current_tenant: ContextVar[CurrentTenant | None] = ContextVar(
    "current_tenant", default=None
)


def _bind_log_context(tenant: CurrentTenant | None) -> None:
    if tenant is None:
        structlog.contextvars.unbind_contextvars("tenant_id")
    else:
        structlog.contextvars.bind_contextvars(tenant_id=tenant.tenant_id)


def set_current_tenant(
    tenant: CurrentTenant | None,
) -> Token[CurrentTenant | None]:
    """Set (or clear, with ``None``) the tenant for this unit of work.

    Returns the context token; prefer :func:`tenant_scope` which resets
    it automatically.
    """
    token = _current_tenant.set(tenant)
    _bind_log_context(tenant)
    return token


def current_tenant() -> CurrentTenant | None:
    return _current_tenant.get()


def current_tenant_id() -> int | None:
    """Return the current tenant id, or ``None`` when absent.

    Callers must test ``is None``: ``0`` is a valid identifier.
    """
    tenant = _current_tenant.get()
    return None if tenant is None else tenant.tenant_id


def clear() -> None:
    set_current_tenant(None)


@contextmanager
def tenant_scope(tenant: CurrentTenant | None) -> Iterator[CurrentTenant | None]:
    """Run a block with *tenant* as current, restoring the previous value.

    Usage::

        with tenant_scope(CurrentTenant.of(tenant)):
            await action.execute(run)
    """
    token = _current_tenant.set(tenant)
    _bind_log_context(tenant)
    try:
        yield tenant
    finally:
        _current_tenant.reset(token)
        _bind_log_context(_current_tenant.get())
