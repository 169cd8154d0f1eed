"""FastAPI application with lifespan management."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import structlog
from arq import create_pool
from arq.connections import RedisSettings
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from prompt_workbench.api.middleware import RequestLoggingMiddleware
from prompt_workbench.api.routes.projects import router as projects_router
from prompt_workbench.api.routes.runs import router as runs_router
from prompt_workbench.api.routes.usage import router as usage_router
from prompt_workbench.config import settings
from prompt_workbench.entitlements.setup import create_entitlements
from prompt_workbench.errors import (
    EntitlementDeniedError,
    MissingTenantContextError,
    TenantIsolationError,
    UnitOfWorkNotFoundError,
)
from prompt_workbench.logging_config import configure_logging
from prompt_workbench.metering.pipeline import (
    build_metering_pipeline,
    reconcile_periodically,
    stop_reconciler,
)
from prompt_workbench.runs.launcher import RunLauncher
from prompt_workbench.storage.database import async_session, engine

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Manage application startup and shutdown.

    Startup:
        - Build entitlement stack and metering pipeline.
        - Start replaying failed usage events in the background.
        - Open ARQ Redis pool and create the run launcher.
    Shutdown:
        - Stop the replay task and retry failed usage once more.
        - Close Redis pool.
        - Dispose database engine (close connection pool).
    """
    configure_logging(
        environment=str(settings.environment),
        log_level=settings.log_level,
    )
    entitlements = create_entitlements(settings, async_session)
    metering = build_metering_pipeline(async_session, entitlements.capabilities)
    reconciler = asyncio.create_task(
        reconcile_periodically(
            metering.recorder, settings.metering_reconcile_interval_seconds
        )
    )

    # ARQ Redis pool for run enqueue
    arq_redis = await create_pool(RedisSettings.from_dsn(settings.redis_url))

    app.state.entitlements = entitlements
    app.state.metering = metering
    app.state.arq_redis = arq_redis
    app.state.run_launcher = RunLauncher(
        entitlements.enforcer, metering.bus, redis=arq_redis
    )

    logger.info("app_started", environment=str(settings.environment))
    yield

    await stop_reconciler(reconciler, metering.recorder)
    await arq_redis.aclose()
    await engine.dispose()
    logger.info("app_stopped")


app = FastAPI(
    title="Prompt Workbench",
    description="Multi-tenant workspace for versioning and running LLM prompts",
    version="0.1.0",
    lifespan=lifespan,
    debug=settings.is_dev,
)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allowed_methods,
    allow_headers=settings.cors_allowed_headers,
)


HEALTH_CHECK_TIMEOUT = 5.0


@app.get("/health")
async def health() -> JSONResponse:
    """Deep health check: verifies DB and Redis connectivity."""
    checks: dict[str, str] = {}
    overall = "ok"

    try:
        async with async_session() as session:
            await asyncio.wait_for(
                session.execute(text("SELECT 1")),
                timeout=HEALTH_CHECK_TIMEOUT,
            )
        checks["db"] = "ok"
    except (TimeoutError, OperationalError, SQLAlchemyError) as e:
        logger.warning("health_check_db_error", error=type(e).__name__)
        checks["db"] = f"error: {type(e).__name__}"
        overall = "degraded"
    except Exception as e:
        logger.error("health_check_db_unexpected", error=str(e), exc_info=True)
        checks["db"] = f"error: {type(e).__name__}"
        overall = "degraded"

    try:
        arq_redis = app.state.arq_redis
        await asyncio.wait_for(
            arq_redis.ping(),
            timeout=HEALTH_CHECK_TIMEOUT,
        )
        checks["redis"] = "ok"
    except (TimeoutError, ConnectionError, OSError) as e:
        logger.warning("health_check_redis_error", error=type(e).__name__)
        checks["redis"] = f"error: {type(e).__name__}"
        overall = "degraded"
    except Exception as e:
        logger.error("health_check_redis_unexpected", error=str(e), exc_info=True)
        checks["redis"] = f"error: {type(e).__name__}"
        overall = "degraded"

    status_code = 200 if overall == "ok" else 503
    return JSONResponse(
        status_code=status_code,
        content={
            "status": overall,
            "checks": checks,
            "timestamp": datetime.now(UTC).isoformat(timespec="seconds"),
        },
    )


@app.exception_handler(EntitlementDeniedError)
async def entitlement_denied_handler(
    request: Request,
    exc: EntitlementDeniedError,
) -> JSONResponse:
    """Plan refusals are a normal outcome: 403 with the user message."""
    return JSONResponse(
        status_code=403,
        content={
            "detail": exc.message,
            "reason": exc.decision.reason,
            "explanation": exc.decision.explain(),
        },
    )


@app.exception_handler(MissingTenantContextError)
async def missing_tenant_handler(
    request: Request,
    exc: MissingTenantContextError,
) -> JSONResponse:
    logger.error("tenant_context_missing", entity=exc.entity, path=request.url.path)
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(TenantIsolationError)
async def tenant_isolation_handler(
    request: Request,
    exc: TenantIsolationError,
) -> JSONResponse:
    logger.error(
        "tenant_isolation_violation",
        entity=exc.entity,
        expected=exc.expected,
        actual=exc.actual,
        path=request.url.path,
    )
    return JSONResponse(status_code=404, content={"detail": "Not found"})


@app.exception_handler(UnitOfWorkNotFoundError)
async def not_found_handler(
    request: Request,
    exc: UnitOfWorkNotFoundError,
) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Catch-all handler for unhandled exceptions."""
    logger.error("unhandled_exception", exc_info=exc, path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


app.include_router(projects_router, prefix="/api/v1")
app.include_router(runs_router, prefix="/api/v1")
app.include_router(usage_router, prefix="/api/v1")
