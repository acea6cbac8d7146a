"""API package exports."""

from task_scheduler.api.routes import router

__all__ = ["router"]
