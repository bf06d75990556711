"""
Hash Report Publisher - Main Application Entry Point
"""
import sys
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

# Setup logging FIRST
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger(__name__)

from core.config import AppConfig
from core.pipeline import build_pipeline
from core.scheduler import SchedulerService
from api import refresh

config = AppConfig.load()
settings = config.settings()


def serves_local_tree() -> bool:
    return settings.store.backend in ("local", "mirror")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown"""
    logger.info("🚀 Starting Hash Report Publisher (%s store)", settings.store.backend)

    pipeline = build_pipeline(settings)
    scheduler = SchedulerService(pipeline)
    app.state.scheduler = scheduler

    if serves_local_tree():
        Path(settings.store.local.root).mkdir(parents=True, exist_ok=True)

    if settings.scheduler.enabled:
        logger.info("⏰ Starting scheduler...")
        scheduler.start()
    else:
        logger.info("Scheduler disabled; refreshes run only via /api/cron/refresh")

    try:
        yield
    finally:
        logger.info("🛑 Shutting down Hash Report Publisher")
        scheduler.shutdown()
        await pipeline.aclose()


app = FastAPI(
    title="Hash Report Publisher",
    description="Scheduled fleet hashrate reports",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(refresh.router, prefix="/api/cron", tags=["refresh"])


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "version": "1.0.0"
    }


# Serve the published tree when reports are written locally; the directory
# is created at startup
if serves_local_tree():
    app.mount(
        "/",
        StaticFiles(directory=settings.store.local.root, html=True, check_dir=False),
        name="public",
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8080,
        reload=False
    )
