"""ARQ worker configuration, lifecycle hooks and task functions.

Run with::

    arq prompt_workbench.worker.WorkerSettings

Or in Docker::

    python -m arq prompt_workbench.worker.WorkerSettings
"""

from typing import Any, ClassVar

import structlog
from arq import cron
from arq.connections import RedisSettings

from prompt_workbench.config import get_settings
from prompt_workbench.logging_config import configure_logging

WorkerCtx = dict[str, Any]


async def arq_execute_run(ctx: WorkerCtx, run_id: int) -> None:
    """ARQ task: execute a queued run in its owning tenant's context.

    Args:
        ctx: ARQ worker context (dispatcher, session_factory, engine).
        run_id: Primary key of the run.
    """
    from prompt_workbench.runs.dispatcher import RunDispatcher

    dispatcher: RunDispatcher = ctx["dispatcher"]
    log = structlog.get_logger().bind(run_id=run_id, job_id=ctx.get("job_id"))
    log.info("run_task_started")
    run = await dispatcher.dispatch(run_id)
    log.info("run_task_done", status=run.status if run is not None else None)


async def arq_reconcile_usage(ctx: WorkerCtx) -> int:
    """ARQ cron: replay usage events this worker failed to record.

    Returns:
        Number of events recovered.
    """
    metering = ctx["metering"]
    if not len(metering.recorder.failures):
        return 0
    recovered: int = await metering.recorder.reconcile()
    return recovered


async def startup(ctx: WorkerCtx) -> None:
    """Initialize worker resources on startup.

    Creates an async engine, session factory, entitlement stack and
    metering pipeline, storing the run dispatcher in the worker context
    for use by task functions.
    """
    from sqlalchemy.ext.asyncio import create_async_engine

    from prompt_workbench.entitlements.setup import create_entitlements
    from prompt_workbench.llm.factory import create_llm_client
    from prompt_workbench.metering.pipeline import build_metering_pipeline
    from prompt_workbench.runs.action import RunChainAction
    from prompt_workbench.runs.dispatcher import RunDispatcher
    from prompt_workbench.storage.database import create_session_factory

    s = get_settings()
    configure_logging(
        environment=str(s.environment),
        log_level=s.log_level,
        component="worker",
    )

    engine = create_async_engine(
        s.database_url,
        pool_size=5,
        max_overflow=10,
    )
    session_factory = create_session_factory(engine)
    entitlements = create_entitlements(s, session_factory)
    metering = build_metering_pipeline(session_factory, entitlements.capabilities)

    action = RunChainAction(create_llm_client(s), meter=metering.meter)

    ctx["engine"] = engine
    ctx["session_factory"] = session_factory
    ctx["metering"] = metering
    ctx["dispatcher"] = RunDispatcher(session_factory, action)

    log = structlog.get_logger()
    log.info("worker_started", redis_url=s.redis_url, max_jobs=s.worker_max_jobs)


async def shutdown(ctx: WorkerCtx) -> None:
    """Clean up worker resources on shutdown."""
    log = structlog.get_logger()

    metering = ctx.get("metering")
    if metering is not None and len(metering.recorder.failures):
        await metering.recorder.reconcile()

    engine = ctx.get("engine")
    if engine is not None:
        await engine.dispose()

    log.info("worker_stopped")


class WorkerSettings:
    """ARQ worker settings, consumed by the ``arq`` CLI."""

    _settings = get_settings()

    redis_settings: RedisSettings = RedisSettings.from_dsn(
        _settings.redis_url,
    )
    functions: ClassVar[list[Any]] = [arq_execute_run]
    cron_jobs: ClassVar[list[Any]] = [cron(arq_reconcile_usage, second=0)]
    on_startup = startup
    on_shutdown = shutdown

    max_jobs: int = _settings.worker_max_jobs
    job_timeout: int = _settings.worker_job_timeout
    max_tries: int = _settings.worker_max_tries

    keep_result: int = 3600
    poll_delay: float = 0.5
