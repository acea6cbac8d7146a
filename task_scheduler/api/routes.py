"""Operator endpoints: health and processing stats."""

from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from task_scheduler import database
from task_scheduler.services.redis_service import redis_health_check
from task_scheduler.services.scheduler_service import SchedulerDriver

logger = structlog.get_logger(__name__)

router = APIRouter()


def get_scheduler(request: Request) -> Optional[SchedulerDriver]:
    """The driver hosted by the application lifespan, if it started."""
    return getattr(request.app.state, "scheduler", None)


@router.get("/health")
async def health_check(scheduler: Optional[SchedulerDriver] = Depends(get_scheduler)) -> JSONResponse:
    """Dependency and scheduler status. Returns 503 when a dependency is down."""
    database_ok = await database.health_check()
    redis_ok = await redis_health_check()

    health_status = {
        "status": "healthy" if database_ok and redis_ok else "unhealthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": "healthy" if database_ok else "unhealthy",
        "redis": "healthy" if redis_ok else "unhealthy",
        "scheduler": {
            "running": scheduler.is_running if scheduler else False,
            "processing": scheduler.processor.is_processing if scheduler else False,
            "inflight_jobs": scheduler.inflight_count if scheduler else 0,
        },
    }

    status_code = 200 if database_ok and redis_ok else 503
    return JSONResponse(status_code=status_code, content=health_status)


@router.get("/stats")
async def processing_stats(scheduler: Optional[SchedulerDriver] = Depends(get_scheduler)) -> dict:
    """Task, notification, pattern and retry-queue counts."""
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler is not running")

    try:
        return await scheduler.processor.get_processing_stats()
    except Exception as e:
        logger.error("processing_stats_failed", error=str(e))
        raise HTTPException(status_code=503, detail="Statistics are unavailable") from e
