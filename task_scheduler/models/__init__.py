"""Models package exports."""

from task_scheduler.models.change import (
    AffectedInstances,
    ChangeRecord,
    ChangeType,
    EditScope,
    FieldChange,
    RecurringTaskState,
    RecurringTaskUpdate,
    Severity,
)
from task_scheduler.models.duration import Duration
from task_scheduler.models.job import JobRunSummary, PhaseResult, RetryResult
from task_scheduler.models.notification import (
    FailedNotification,
    Notification,
    NotificationCreate,
    NotificationType,
)
from task_scheduler.models.pattern import RecurringPattern
from task_scheduler.models.recurrence import (
    CountEnd,
    Frequency,
    NoEnd,
    RecurrenceConfig,
    RecurrenceRule,
    UntilEnd,
)
from task_scheduler.models.task import Task, TaskPriority, TaskStatus

__all__ = [
    "AffectedInstances",
    "ChangeRecord",
    "ChangeType",
    "CountEnd",
    "Duration",
    "EditScope",
    "FailedNotification",
    "FieldChange",
    "Frequency",
    "JobRunSummary",
    "NoEnd",
    "Notification",
    "NotificationCreate",
    "NotificationType",
    "PhaseResult",
    "RecurrenceConfig",
    "RecurrenceRule",
    "RecurringPattern",
    "RecurringTaskState",
    "RecurringTaskUpdate",
    "RetryResult",
    "Severity",
    "Task",
    "TaskPriority",
    "TaskStatus",
    "UntilEnd",
]
