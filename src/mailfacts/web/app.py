"""FastAPI application for the mailfacts Pipeline API.

Creates the FastAPI app with:
- Lifespan context manager for dependency initialization and scheduler
- The JSON API router

Sync and extraction also run as background jobs via APScheduler's
BackgroundScheduler in the same process as uvicorn. The scheduler thread
bridges to the async event loop via run_coroutine_threadsafe.

Usage:
    from mailfacts.web.app import create_app

    app = create_app()
    # Run with: uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from fastapi import FastAPI

from mailfacts import __version__
from mailfacts.core.logging import get_logger

logger = get_logger(__name__)

# Upper bound on one scheduled job, in seconds
SYNC_JOB_TIMEOUT = 1800
EXTRACTION_JOB_TIMEOUT = 900


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize dependencies on startup, clean up on shutdown.

    On startup:
    1. Load config
    2. Initialize database
    3. Build the pipeline (vault, OAuth client, Anthropic client, engines)
    4. Start APScheduler with the sync and extraction jobs

    On shutdown:
    - Stop APScheduler
    """
    import anthropic
    from apscheduler.schedulers.background import BackgroundScheduler

    from mailfacts.config import get_config
    from mailfacts.core.errors import ConfigLoadError, ConfigValidationError, VaultKeyError
    from mailfacts.db.store import DatabaseStore
    from mailfacts.engine.pipeline import Pipeline

    app.state.last_runs = {}

    # 1. Load config
    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        logger.error("config_load_failed", error=str(e))
        app.state.config = None
        app.state.store = None
        app.state.pipeline = None
        app.state.scheduler = None
        yield
        return

    app.state.config = config

    # 2. Initialize database
    db_path = Path(config.database_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = DatabaseStore(db_path)
    await store.initialize()
    app.state.store = store

    # 3. Build the pipeline; a missing or short vault key stops startup
    anthropic_client = anthropic.Anthropic(max_retries=3, timeout=30.0)
    try:
        pipeline = Pipeline.build(config, store, anthropic_client)
    except VaultKeyError as e:
        logger.error("pipeline_init_failed", error=str(e))
        raise
    app.state.pipeline = pipeline

    # 4. Start APScheduler
    loop = asyncio.get_running_loop()

    def _bridge(
        job_name: str,
        factory: Callable[[], Coroutine[Any, Any, Any]],
        timeout: int,
    ) -> Callable[[], None]:
        def run() -> None:
            """Run one async pipeline job from the scheduler thread."""
            try:
                future = asyncio.run_coroutine_threadsafe(factory(), loop)
                future.result(timeout=timeout)
                app.state.last_runs[job_name] = {
                    "finished_at": datetime.now(UTC).isoformat(),
                    "ok": True,
                }
            except Exception as e:
                logger.error("scheduled_job_failed", job=job_name, error=str(e))
                app.state.last_runs[job_name] = {
                    "finished_at": datetime.now(UTC).isoformat(),
                    "ok": False,
                    "error": str(e),
                }

        return run

    scheduler = BackgroundScheduler()
    scheduler.add_job(
        _bridge("sync", pipeline.scheduled_sync, SYNC_JOB_TIMEOUT),
        "interval",
        hours=config.sync.interval_hours,
        id="mailbox_sync",
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now() + timedelta(seconds=60),
    )
    scheduler.add_job(
        _bridge("extraction", pipeline.scheduled_extraction, EXTRACTION_JOB_TIMEOUT),
        "interval",
        minutes=config.extraction.interval_minutes,
        id="fact_extraction",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info(
        "scheduler_started",
        sync_interval_hours=config.sync.interval_hours,
        extraction_interval_minutes=config.extraction.interval_minutes,
    )

    app.state.scheduler = scheduler

    yield

    # Shutdown
    scheduler.shutdown(wait=False)
    logger.info("scheduler_stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance
    """
    from mailfacts.web.routes import api_router

    app = FastAPI(
        title="mailfacts",
        description="Mailbox sync, fact extraction and natural-language queries",
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(api_router)

    return app
