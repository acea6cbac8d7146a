"""Models for tracking edits to recurring task series."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field

from task_scheduler.models.duration import Duration
from task_scheduler.models.recurrence import RecurrenceConfig
from task_scheduler.models.task import TaskPriority, TaskStatus


class EditScope(str, Enum):
    """How far an edit to a recurring series reaches."""

    THIS_INSTANCE = "this_instance"
    THIS_AND_FUTURE = "this_and_future"
    ALL_INSTANCES = "all_instances"


class Severity(str, Enum):
    """How disruptive a change is to a recurring series."""

    NONE = "none"
    MINOR = "minor"
    MAJOR = "major"
    BREAKING = "breaking"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.NONE: 0,
    Severity.MINOR: 1,
    Severity.MAJOR: 2,
    Severity.BREAKING: 3,
}


class ChangeType(str, Enum):
    """Kind of field-level change."""

    PATTERN_FIELD_CHANGE = "pattern_field_change"
    PATTERN_ADDITION = "pattern_addition"
    PATTERN_REMOVAL = "pattern_removal"
    DURATION_FIELD_CHANGE = "duration_field_change"
    DURATION_ADDITION = "duration_addition"
    DURATION_REMOVAL = "duration_removal"
    TIMING_CHANGE = "timing_change"
    FIELD_CHANGE = "field_change"


class FieldChange(BaseModel):
    """A single field-level difference."""

    type: ChangeType
    field: str
    old_value: Any = None
    new_value: Any = None


class AffectedInstances(BaseModel):
    """Estimated number of materialized instances an edit touches."""

    past: int = 0
    present: int = 0
    future: int = 0
    total: int = 0


class RecurringTaskState(BaseModel):
    """Current state of a task as seen by the change tracker."""

    title: str
    description: Optional[str] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.TODO
    category: Optional[UUID] = None
    assignees: list[UUID] = Field(default_factory=list)
    start_date: Optional[datetime] = None
    duration: Optional[Duration] = None
    recurring_pattern: Optional[Union[RecurrenceConfig, str]] = None
    recurrence_version: int = 1


class RecurringTaskUpdate(BaseModel):
    """Proposed update. Only explicitly supplied fields are compared."""

    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[TaskPriority] = None
    status: Optional[TaskStatus] = None
    category: Optional[UUID] = None
    assignees: Optional[list[UUID]] = None
    start_date: Optional[datetime] = None
    duration: Optional[Duration] = None
    recurring_pattern: Optional[Union[RecurrenceConfig, str]] = None


class ChangeRecord(BaseModel):
    """Result of comparing a recurring task to a proposed update."""

    task_id: Optional[UUID] = None
    user_id: Optional[UUID] = None
    edit_scope: EditScope
    changes: list[FieldChange] = Field(default_factory=list)
    severity: Severity = Severity.NONE
    has_pattern_changes: bool = False
    has_duration_changes: bool = False
    has_timing_changes: bool = False
    has_non_recurring_changes: bool = False
    old_version: int
    new_version: int
    affected: AffectedInstances = Field(default_factory=AffectedInstances)
    timestamp: datetime
