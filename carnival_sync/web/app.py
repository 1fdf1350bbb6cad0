"""FastAPI application factory for the Carnival Sync operator API."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI
from sqlalchemy.orm import Session, sessionmaker

from carnival_sync import __version__
from carnival_sync.core.config import PipelineConfig
from carnival_sync.db.engine import get_session_factory, init_db
from carnival_sync.ingestion.pipeline import IngestionPipeline
from carnival_sync.ingestion.scheduler import SyncScheduler

# Load .env file from project root
_project_root = Path(__file__).parent.parent.parent
_env_file = _project_root / ".env"
if _env_file.exists():
    load_dotenv(_env_file)


def create_app(
    config: PipelineConfig | None = None,
    session_factory: sessionmaker[Session] | None = None,
    start_scheduler: bool = True,
    transport: httpx.AsyncBaseTransport | None = None,
    clock: Callable[[], datetime] | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Pipeline configuration (defaults to the environment)
        session_factory: Store sessions (defaults to DATABASE_URL, tables created)
        start_scheduler: Start cron and startup jobs in the lifespan
        transport: Optional httpx transport for the fetcher
        clock: Optional time source for the pipeline
    """
    config = config or PipelineConfig.from_env()
    if session_factory is None:
        init_db()
        session_factory = get_session_factory()

    pipeline_kwargs = {"transport": transport}
    if clock is not None:
        pipeline_kwargs["clock"] = clock
    pipeline = IngestionPipeline(config, session_factory, **pipeline_kwargs)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        scheduler = SyncScheduler(pipeline, config)
        app.state.scheduler = scheduler
        pipeline.audit.recover_stale_runs()
        if start_scheduler:
            scheduler.start()
        try:
            yield
        finally:
            await scheduler.shutdown()

    app = FastAPI(
        title="Carnival Sync",
        description="Operator API for the MySideline carnival ingestion pipeline",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.pipeline = pipeline
    app.state.audit = pipeline.audit

    # Include routers (import here to avoid circular imports)
    from carnival_sync.web.routes import sync

    app.include_router(sync.router)

    return app
