"""Tests for the current-tenant context store."""

import asyncio
import threading

import structlog

from prompt_workbench.tenancy.context import (
    CurrentTenant,
    clear,
    current_tenant,
    current_tenant_id,
    set_current_tenant,
    tenant_scope,
)

ACME = CurrentTenant(tenant_id=1, tenant_name="Acme")
GLOBEX = CurrentTenant(tenant_id=2, tenant_name="Globex")


class TestCurrentTenant:
    def test_absent_by_default(self) -> None:
        assert current_tenant() is None
        assert current_tenant_id() is None

    def test_set_and_read(self) -> None:
        set_current_tenant(ACME)
        assert current_tenant() == ACME
        assert current_tenant_id() == 1

    def test_zero_is_a_valid_id(self) -> None:
        set_current_tenant(CurrentTenant(tenant_id=0))
        assert current_tenant_id() == 0

    def test_clear(self) -> None:
        set_current_tenant(ACME)
        clear()
        assert current_tenant_id() is None

    def test_of_copies_id_and_name(self) -> None:
        class Row:
            id = 7
            name = "Initech"

        assert CurrentTenant.of(Row()) == CurrentTenant(7, "Initech")

    def test_binds_tenant_id_to_log_context(self) -> None:
        set_current_tenant(ACME)
        assert structlog.contextvars.get_contextvars()["tenant_id"] == 1
        clear()
        assert "tenant_id" not in structlog.contextvars.get_contextvars()


class TestTenantScope:
    def test_restores_absence(self) -> None:
        with tenant_scope(ACME) as tenant:
            assert tenant == ACME
            assert current_tenant_id() == 1
        assert current_tenant_id() is None

    def test_nested_scopes_restore_outer(self) -> None:
        with tenant_scope(ACME):
            with tenant_scope(GLOBEX):
                assert current_tenant_id() == 2
            assert current_tenant_id() == 1
            assert structlog.contextvars.get_contextvars()["tenant_id"] == 1

    def test_restores_after_exception(self) -> None:
        try:
            with tenant_scope(ACME):
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert current_tenant_id() is None


class TestIsolation:
    def test_reused_thread_does_not_inherit_tenant(self) -> None:
        """Two units of work on one thread: the second never sees the first."""
        seen: list[int | None] = []

        def first_unit() -> None:
            with tenant_scope(ACME):
                seen.append(current_tenant_id())

        def second_unit() -> None:
            seen.append(current_tenant_id())

        worker = threading.Thread(target=lambda: (first_unit(), second_unit()))
        worker.start()
        worker.join()

        assert seen == [1, None]

    def test_other_thread_does_not_see_tenant(self) -> None:
        set_current_tenant(ACME)
        seen: list[int | None] = []

        worker = threading.Thread(target=lambda: seen.append(current_tenant_id()))
        worker.start()
        worker.join()

        assert seen == [None]

    async def test_concurrent_tasks_are_isolated(self) -> None:
        async def unit(tenant: CurrentTenant) -> list[int | None]:
            observed = []
            with tenant_scope(tenant):
                for _ in range(3):
                    await asyncio.sleep(0)
                    observed.append(current_tenant_id())
            return observed

        a, b = await asyncio.gather(unit(ACME), unit(GLOBEX))

        assert a == [1, 1, 1]
        assert b == [2, 2, 2]
        assert current_tenant_id() is None

    async def test_task_changes_do_not_leak_to_parent(self) -> None:
        async def unit() -> None:
            set_current_tenant(GLOBEX)

        await asyncio.create_task(unit())
        assert current_tenant_id() is None
