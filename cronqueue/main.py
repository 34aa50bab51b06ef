from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI

from cronqueue.settings import settings
from cronqueue.api.v1.metrics import router as metrics_router
from cronqueue.api.v1.runs import router as runs_router
from cronqueue.db.session import build_engine
from cronqueue.domain.handlers import resolve_identifier
from cronqueue.scheduler.service import Scheduler

logger = logging.getLogger("uvicorn")

def create_app(scheduler: Optional[Scheduler] = None, start_loop: bool = True) -> FastAPI:
    """
    HTTP host for one scheduler. The loop runs as a background task for the
    lifetime of the app; pass start_loop=False to only serve the endpoints.
    """
    if scheduler is None:
        scheduler = Scheduler(build_engine())
        if settings.JOBS:
            resolve_identifier(settings.JOBS)(scheduler)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        await scheduler.install()
        if start_loop:
            await scheduler.start()
            logger.info(f"Scheduler {scheduler.instance_id} running {len(scheduler.defined())} job(s)")

        yield

        # Shutdown
        if start_loop:
            await scheduler.shutdown()
        await scheduler.close()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        lifespan=lifespan
    )
    app.state.scheduler = scheduler

    app.include_router(runs_router, prefix="/api/v1/runs", tags=["runs"])
    app.include_router(metrics_router, tags=["metrics"])

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app
