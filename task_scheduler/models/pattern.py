"""Recurring pattern model: scheduling state for one template task."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel


class RecurringPattern(BaseModel):
    """Next-due bookkeeping for a template task.

    Patterns are deactivated, never deleted, once the rule is exhausted or
    the template goes away. task_id is None when the template was deleted.
    """

    id: UUID
    task_id: Optional[UUID] = None
    rrule: str
    next_due: datetime
    last_generated: Optional[datetime] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
