"""Worker process runtime: start-up, shutdown, and the per-step worker loop.

Embedding processes call run_pipeline_worker() with their AuditEngine and
Verifier; everything else (logging, database, Redis, object storage) is built
from settings here.
"""

import asyncio
import signal
from contextlib import asynccontextmanager

import structlog

from tonaudit.core.config import get_settings
from tonaudit.core.logging import configure_structlog
from tonaudit.db import close_db, close_redis, get_redis, get_session_factory, init_db, init_redis
from tonaudit.pipeline.handlers import AuditEngine, Verifier
from tonaudit.pipeline.wiring import build_services
from tonaudit.queue.schemas import PipelineStep
from tonaudit.queue.worker import run_worker
from tonaudit.storage.blob_storage import S3BlobStorage

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def worker_lifespan(engine: AuditEngine | None = None, verifier: Verifier | None = None):
    """Open shared connections, yield the service graph, close them on exit.

    The schema is owned by alembic, so tables are never created here.
    """
    settings = get_settings()
    configure_structlog(log_level=settings.log_level, json_logs=settings.json_logs, service=settings.app_name)
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    await init_db(create_tables=False)
    logger.info("db_initialized")

    await init_redis()
    logger.info("redis_initialized")

    services = build_services(
        get_session_factory(),
        get_redis(),
        S3BlobStorage.from_settings(settings),
        engine=engine,
        verifier=verifier,
        settings=settings,
    )
    try:
        yield services
    finally:
        logger.info("shutdown_begin")
        await close_redis()
        await close_db()
        logger.info("shutdown_complete")


async def run_pipeline_worker(
    step: PipelineStep | str,
    engine: AuditEngine | None = None,
    verifier: Verifier | None = None,
    poll_interval: float = 1.0,
) -> None:
    """Serve one pipeline step until SIGTERM or SIGINT."""
    step = PipelineStep(step)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, stop.set)

    async with worker_lifespan(engine=engine, verifier=verifier) as services:
        await run_worker(
            step,
            services.handlers.handler_for(step),
            stop,
            poll_interval=poll_interval,
            redis=get_redis(),
            events=services.events,
            on_failure=services.handlers.failure_handler_for(step),
        )
