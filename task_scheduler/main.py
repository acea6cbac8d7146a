"""FastAPI application hosting the scheduler."""

from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load environment variables before anything else
load_dotenv()

from fastapi import FastAPI

from task_scheduler.api.routes import router
from task_scheduler.config import get_settings
from task_scheduler.services.logging_service import configure_logging, get_logger
from task_scheduler.services.scheduler_service import SchedulerDriver


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the scheduler with the app and drain it on shutdown."""
    settings = get_settings()
    configure_logging(settings.log_level)
    logger = get_logger("main")

    scheduler = SchedulerDriver(settings=settings)
    try:
        await scheduler.start()
    except Exception as e:
        # No degraded mode: the app does not come up without its stores
        logger.error("scheduler_start_failed", error=str(e))
        raise

    app.state.scheduler = scheduler
    logger.info("application_started", log_level=settings.log_level)

    yield

    await scheduler.stop()
    app.state.scheduler = None
    logger.info("application_shutdown")


app = FastAPI(
    title="Task Scheduler",
    description="Recurring task materialization and notification delivery",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(router)
