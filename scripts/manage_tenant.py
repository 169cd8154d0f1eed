"""CLI for tenant, plan and API key management.

Usage::

    python -m scripts.manage_tenant <command> [options]

Commands:
    create-tenant       Create a new tenant
    create-key          Generate an API key for a tenant
    list-tenants        List all tenants with plan and key count
    list-keys           List API keys for a tenant
    revoke-key          Revoke an API key by prefix
    set-plan            Move a tenant to another plan
    usage               Show this month's usage per meter for a tenant
    deactivate-tenant   Deactivate a tenant (all keys become invalid)
    register-user       Register a user with a personal workspace
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Callable
from datetime import UTC, datetime

from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import Session

from prompt_workbench.auth.keys import generate_api_key
from prompt_workbench.config import settings
from prompt_workbench.entitlements.plans import (
    QuotaPeriod,
    load_plan_catalog,
    period_start,
)
from prompt_workbench.entitlements.setup import create_entitlements
from prompt_workbench.errors import EntitlementDeniedError
from prompt_workbench.metering.pipeline import (
    build_metering_pipeline,
    stop_reconciler,
)
from prompt_workbench.onboarding import Registration, register_user
from prompt_workbench.storage.database import create_session_factory
from prompt_workbench.storage.orm import APIKey, Tenant, UsageEvent


def get_sync_session() -> Session:
    """Create sync session for CLI operations.

    Uses the same database URL as the async app (psycopg v3
    handles both sync and async natively).
    """
    engine = create_engine(settings.database_url)
    return Session(engine)


def _get_tenant(session: Session, name: str) -> Tenant:
    tenant = session.execute(
        select(Tenant).where(Tenant.name == name)
    ).scalar_one_or_none()
    if tenant is None:
        print(f"Tenant not found: {name}", file=sys.stderr)
        sys.exit(1)
    return tenant


def _check_plan(plan: str) -> None:
    """Exit unless *plan* exists in the plan catalog."""
    catalog = load_plan_catalog(settings.plans_path)
    if plan not in catalog.plans:
        known = ", ".join(sorted(catalog.plans))
        print(f"Unknown plan: {plan} (known: {known})", file=sys.stderr)
        sys.exit(1)


def create_tenant(args: argparse.Namespace) -> None:
    """Create a new tenant."""
    if args.plan is not None:
        _check_plan(args.plan)

    with get_sync_session() as session:
        existing = session.execute(
            select(Tenant).where(Tenant.name == args.name)
        ).scalar_one_or_none()
        if existing is not None:
            print(f"Tenant already exists: {args.name}", file=sys.stderr)
            sys.exit(1)

        tenant = Tenant(name=args.name)
        if args.plan is not None:
            tenant.plan = args.plan
        session.add(tenant)
        session.commit()
        print(f"Tenant created: {args.name} (id: {tenant.id}, plan: {tenant.plan})")


def create_key(args: argparse.Namespace) -> None:
    """Generate an API key for a tenant."""
    with get_sync_session() as session:
        tenant = _get_tenant(session, args.tenant)
        full_key, key_hash, key_prefix = generate_api_key()

        api_key = APIKey(
            tenant_id=tenant.id,
            key_hash=key_hash,
            key_prefix=key_prefix,
            label=args.label,
        )
        session.add(api_key)
        session.commit()

        print(f'API key created for "{args.tenant}":')
        print(f"   Key:     {full_key}")
        print(f"   Prefix:  {key_prefix}")
        print(f"   Label:   {args.label}")
        print()
        print("Save this key now -- it cannot be retrieved later!")


def list_tenants(_args: argparse.Namespace) -> None:
    """List all tenants with plan and key counts."""
    with get_sync_session() as session:
        stmt = (
            select(
                Tenant.id,
                Tenant.name,
                Tenant.plan,
                Tenant.is_active,
                func.count(APIKey.id).label("key_count"),
            )
            .outerjoin(APIKey, Tenant.id == APIKey.tenant_id)
            .group_by(Tenant.id)
            .order_by(Tenant.name)
        )
        rows = session.execute(stmt).all()

        if not rows:
            print("No tenants found.")
            return

        print("Tenants:")
        for i, row in enumerate(rows, 1):
            status = "active" if row.is_active else "inactive"
            keys = row.key_count
            print(
                f"  {i}. {row.name} [id={row.id}, plan={row.plan}] "
                f"({status}, {keys} key{'s' if keys != 1 else ''})"
            )


def list_keys(args: argparse.Namespace) -> None:
    """List API keys for a tenant."""
    with get_sync_session() as session:
        tenant = _get_tenant(session, args.tenant)
        keys = (
            session.execute(
                select(APIKey)
                .where(APIKey.tenant_id == tenant.id)
                .order_by(APIKey.created_at)
            )
            .scalars()
            .all()
        )

        if not keys:
            print(f'No keys for "{args.tenant}".')
            return

        print(f'Keys for "{args.tenant}":')
        for i, key in enumerate(keys, 1):
            status = "active" if key.is_active else "revoked"
            print(f"  {i}. {key.key_prefix} [{key.label}] {status}")


def revoke_key(args: argparse.Namespace) -> None:
    """Revoke an API key by its prefix."""
    with get_sync_session() as session:
        key = session.execute(
            select(APIKey).where(APIKey.key_prefix == args.prefix)
        ).scalar_one_or_none()
        if key is None:
            print(f"Key not found: {args.prefix}", file=sys.stderr)
            sys.exit(1)

        if not key.is_active:
            print(f"Key already revoked: {args.prefix}", file=sys.stderr)
            sys.exit(1)

        key.is_active = False
        session.commit()
        print(f"Key revoked: {args.prefix}")


def set_plan(args: argparse.Namespace) -> None:
    """Move a tenant to another plan."""
    _check_plan(args.plan)
    with get_sync_session() as session:
        tenant = _get_tenant(session, args.tenant)
        previous = tenant.plan
        tenant.plan = args.plan
        session.commit()
        print(f"Plan changed for {args.tenant}: {previous} -> {args.plan}")


def usage(args: argparse.Namespace) -> None:
    """Show this month's usage per meter for a tenant."""
    since = period_start(QuotaPeriod.MONTH, datetime.now(UTC))
    with get_sync_session() as session:
        tenant = _get_tenant(session, args.tenant)
        rows = session.execute(
            select(UsageEvent.meter, func.sum(UsageEvent.quantity).label("total"))
            .where(UsageEvent.tenant_id == tenant.id, UsageEvent.occurred_at >= since)
            .group_by(UsageEvent.meter)
            .order_by(UsageEvent.meter)
        ).all()

        if not rows:
            print(f'No usage for "{args.tenant}" since {since:%Y-%m-%d}.')
            return

        print(f'Usage for "{args.tenant}" since {since:%Y-%m-%d} (plan {tenant.plan}):')
        for row in rows:
            print(f"  {row.meter}: {row.total}")


def deactivate_tenant(args: argparse.Namespace) -> None:
    """Deactivate a tenant (all keys become invalid)."""
    with get_sync_session() as session:
        tenant = _get_tenant(session, args.name)
        if not tenant.is_active:
            print(f"Tenant already inactive: {args.name}", file=sys.stderr)
            sys.exit(1)

        tenant.is_active = False
        session.commit()
        print(f"Tenant deactivated: {args.name}")


async def _register(args: argparse.Namespace) -> Registration:
    """Run onboarding with the configured entitlement edition."""
    engine = create_async_engine(settings.database_url)
    session_factory = create_session_factory(engine)
    entitlements = create_entitlements(settings, session_factory)
    metering = build_metering_pipeline(session_factory, entitlements.capabilities)
    try:
        async with session_factory() as session:
            return await register_user(
                session,
                name=args.name,
                email=args.email,
                entitlements=entitlements,
                meter=metering.meter,
                plan=args.plan,
            )
    finally:
        await stop_reconciler(None, metering.recorder)
        await engine.dispose()


def register(args: argparse.Namespace) -> None:
    """Register a user with a personal workspace and default project."""
    if args.plan is not None:
        _check_plan(args.plan)

    try:
        registration = asyncio.run(_register(args))
    except EntitlementDeniedError as exc:
        print(f"Registration refused: {exc.message}", file=sys.stderr)
        sys.exit(1)
    except IntegrityError:
        print(f"Email already registered: {args.email}", file=sys.stderr)
        sys.exit(1)

    tenant = registration.tenant
    print(
        f"User registered: {args.email} (id: {registration.user.id}, "
        f"workspace id: {tenant.id}, plan: {tenant.plan})"
    )


def main() -> None:
    """Parse arguments and dispatch to command handler."""
    parser = argparse.ArgumentParser(description="Tenant management CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    # create-tenant
    p = sub.add_parser("create-tenant", help="Create a new tenant")
    p.add_argument("--name", required=True, help="Tenant name")
    p.add_argument("--plan", default=None, help="Plan name (default: free)")

    # create-key
    p = sub.add_parser("create-key", help="Generate API key for a tenant")
    p.add_argument("--tenant", required=True, help="Tenant name")
    p.add_argument("--label", default="default", help="Key label")

    # list-tenants
    sub.add_parser("list-tenants", help="List all tenants")

    # list-keys
    p = sub.add_parser("list-keys", help="List API keys for a tenant")
    p.add_argument("--tenant", required=True, help="Tenant name")

    # revoke-key
    p = sub.add_parser("revoke-key", help="Revoke an API key")
    p.add_argument("--prefix", required=True, help="Key prefix to revoke")

    # set-plan
    p = sub.add_parser("set-plan", help="Move a tenant to another plan")
    p.add_argument("--tenant", required=True, help="Tenant name")
    p.add_argument("--plan", required=True, help="Plan name from plans.yaml")

    # usage
    p = sub.add_parser("usage", help="Show this month's usage for a tenant")
    p.add_argument("--tenant", required=True, help="Tenant name")

    # deactivate-tenant
    p = sub.add_parser("deactivate-tenant", help="Deactivate a tenant")
    p.add_argument("--name", required=True, help="Tenant name")

    # register-user
    p = sub.add_parser("register-user", help="Register a user and workspace")
    p.add_argument("--name", required=True, help="User name")
    p.add_argument("--email", required=True, help="User email")
    p.add_argument("--plan", default=None, help="Plan name (default: free)")

    args = parser.parse_args()
    commands: dict[str, Callable[[argparse.Namespace], None]] = {
        "create-tenant": create_tenant,
        "create-key": create_key,
        "list-tenants": list_tenants,
        "list-keys": list_keys,
        "revoke-key": revoke_key,
        "set-plan": set_plan,
        "usage": usage,
        "deactivate-tenant": deactivate_tenant,
        "register-user": register,
    }
    commands[args.command](args)


if __name__ == "__main__":
    main()
