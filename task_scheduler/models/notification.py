"""Notification models."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class NotificationType(str, Enum):
    """Valid notification types."""

    REMINDER = "reminder"
    OVERDUE = "overdue"
    SHARED_TASK = "shared_task"


class NotificationCreate(BaseModel):
    """Payload needed to create a notification; also what the retry queue stores."""

    user_id: UUID
    type: NotificationType
    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=500)
    related_task_id: Optional[UUID] = None


class Notification(BaseModel):
    """A delivered notification record."""

    id: UUID
    user_id: UUID
    type: NotificationType
    title: str
    message: str
    related_task_id: Optional[UUID] = None
    is_read: bool = False
    created_at: datetime


class FailedNotification(BaseModel):
    """An entry in the durable failed-notification retry list."""

    data: NotificationCreate
    retry_count: int = 0
    failed_at: datetime
    last_retry_at: Optional[datetime] = None
