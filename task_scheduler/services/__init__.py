"""Services package exports."""

from task_scheduler.services.job_processor import JobProcessor
from task_scheduler.services.logging_service import bind_job_context, configure_logging, get_logger
from task_scheduler.services.scheduler_service import SchedulerDriver

__all__ = [
    "JobProcessor",
    "SchedulerDriver",
    "bind_job_context",
    "configure_logging",
    "get_logger",
]
