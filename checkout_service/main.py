import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from checkout_service.config import settings
from checkout_service.database import engine
from checkout_service.infrastructure.db_schema import metadata
from checkout_service.presentation.api import router
from checkout_service.presentation.sweeper_worker import build_sweeper, sweeper_loop

logging.basicConfig(level=settings.LOG_LEVEL, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Creates missing tables and runs the reservation sweeper alongside the API"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    logger.info("Tables ready")

    sweeper_task = None
    if settings.RUN_SWEEPER_IN_APP:
        sweeper_task = asyncio.create_task(
            sweeper_loop(build_sweeper(), settings.SWEEP_INTERVAL_SECONDS, settings.SWEEP_BATCH_SIZE)
        )

    yield

    if sweeper_task is not None:
        sweeper_task.cancel()
        try:
            await sweeper_task
        except asyncio.CancelledError:
            pass
    await engine.dispose()
    logger.info("Checkout service stopped")


app = FastAPI(
    title="Checkout Service",
    description="Checkout, stock reservation and payment orchestration",
    version="1.0.0",
    lifespan=lifespan
)

app.include_router(router, prefix="/api")


@app.get("/health")
async def health():
    return {"status": "healthy", "sweeper": "in-app" if settings.RUN_SWEEPER_IN_APP else "external"}
