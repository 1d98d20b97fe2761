import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from modqueue.core.config import Settings, settings
from modqueue.core.db import Database
from modqueue.core.errors import ModerationError, moderation_error_handler
from modqueue.modules.moderation.router import router as moderation_router
from modqueue.modules.moderation.service import ModerationService
from modqueue.modules.moderation.vision import VisionClient, VisionScanClient
from modqueue.modules.worker.router import router as worker_router
from modqueue.modules.worker.runner import JobWorker

logger = logging.getLogger(__name__)

def init_app_state(app: FastAPI, config: Settings, database: Database, vision: VisionClient) -> JobWorker:
    """Builds the service graph on app.state. Returns the worker."""
    service = ModerationService(database, vision, config)
    worker = JobWorker(database, service, config)
    app.state.settings = config
    app.state.database = database
    app.state.moderation_service = service
    app.state.job_worker = worker
    return worker

def create_app(
    config: Settings = settings,
    vision_client: Optional[VisionClient] = None,
    database: Optional[Database] = None
) -> FastAPI:
    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = database or Database(config.async_database_url, echo=config.DATABASE_ECHO)
        vision = vision_client or VisionScanClient(config)
        if isinstance(vision, VisionScanClient) and not vision.configured:
            logger.warning("ANTHROPIC_API_KEY is not set; scans will fail until it is configured.")
        if not config.CRON_SECRET:
            logger.warning("CRON_SECRET is not set; the cron endpoint will reject every call.")

        worker = init_app_state(app, config, db, vision)

        if config.WORKER_POLL_INTERVAL_SECONDS > 0:
            await worker.start(config.WORKER_POLL_INTERVAL_SECONDS)
        yield
        await worker.stop()
        if database is None:
            await db.dispose()

    app = FastAPI(
        title=config.PROJECT_NAME,
        openapi_url=f"{config.API_V1_STR}/openapi.json",
        lifespan=lifespan,
    )
    app.add_exception_handler(ModerationError, moderation_error_handler)

    @app.get("/")
    def root():
        return {"message": f"{config.PROJECT_NAME} API", "docs": "/docs"}

    app.include_router(worker_router, prefix=f"{config.API_V1_STR}/moderation", tags=["worker"])
    app.include_router(moderation_router, prefix=f"{config.API_V1_STR}/moderation", tags=["moderation"])
    return app

app = create_app()
