"""Task models."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from task_scheduler.models.duration import Duration


class TaskStatus(str, Enum):
    """Task workflow status."""

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class TaskPriority(str, Enum):
    """Task priority level."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class Task(BaseModel):
    """A unit of work.

    A task is exactly one of:
    - a template (is_recurring, recurring_pattern set, no parent_task_id)
    - an instance (parent_task_id set, not recurring)
    - a plain non-recurring task
    """

    id: UUID
    title: str
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    owner_id: UUID
    assignees: list[UUID] = Field(default_factory=list)
    category_id: Optional[UUID] = None
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    duration: Optional[Duration] = None
    is_recurring: bool = False
    recurring_pattern: Optional[str] = None
    parent_task_id: Optional[UUID] = None
    occurrence_at: Optional[datetime] = None  # Occurrence an instance was materialized for
    recurrence_version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_template(self) -> bool:
        return self.is_recurring and bool(self.recurring_pattern) and self.parent_task_id is None
