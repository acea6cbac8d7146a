"""Notification service: persisting notifications and the de-duplication lookup."""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

import structlog

from task_scheduler.database import get_pool
from task_scheduler.models.notification import (
    FailedNotification,
    Notification,
    NotificationCreate,
    NotificationType,
)
from task_scheduler.services.redis_service import RetryQueue

logger = structlog.get_logger(__name__)


class NotificationService:
    """Service for notification inserts, de-duplication and counts."""

    def __init__(self, retry_queue: Optional[RetryQueue] = None):
        self.retry_queue = retry_queue or RetryQueue()

    async def deliver(self, payload: NotificationCreate) -> Notification:
        """Insert a notification record.

        Raises:
            Exception: Whatever the database driver raises; callers decide
                whether to queue the payload for retry
        """
        notification_id = uuid4()
        now = datetime.now(timezone.utc)

        pool = await get_pool()

        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO notifications (id, user_id, type, title, message, related_task_id, is_read, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, FALSE, $7)
                """,
                notification_id,
                payload.user_id,
                payload.type.value,
                payload.title,
                payload.message,
                payload.related_task_id,
                now,
            )

        logger.info(
            "notification_created",
            notification_id=str(notification_id),
            user_id=str(payload.user_id),
            type=payload.type.value,
            related_task_id=str(payload.related_task_id) if payload.related_task_id else None,
        )

        return Notification(
            id=notification_id,
            user_id=payload.user_id,
            type=payload.type,
            title=payload.title,
            message=payload.message,
            related_task_id=payload.related_task_id,
            is_read=False,
            created_at=now,
        )

    async def create_notification(self, payload: NotificationCreate) -> Optional[Notification]:
        """Create a notification, queueing the payload for retry on failure.

        Returns:
            The notification, or None if it was queued for a later attempt
        """
        try:
            return await self.deliver(payload)
        except Exception as e:
            logger.error(
                "notification_create_failed",
                user_id=str(payload.user_id),
                type=payload.type.value,
                error=str(e),
            )

        entry = FailedNotification(data=payload, retry_count=0, failed_at=datetime.now(timezone.utc))
        try:
            await self.retry_queue.push(entry)
        except Exception as e:
            logger.error(
                "notification_queue_failed",
                payload=payload.model_dump(mode="json"),
                error=str(e),
            )
        return None

    async def has_recent_notification(
        self,
        task_id: UUID,
        notification_type: NotificationType,
        since: datetime,
    ) -> bool:
        """Check whether a notification of this type exists for the task since ``since``."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id FROM notifications
                WHERE related_task_id = $1 AND type = $2 AND created_at >= $3
                LIMIT 1
                """,
                task_id,
                notification_type.value,
                since,
            )

        return row is not None

    async def get_counts(self) -> dict:
        """Total and unread notification counts."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT COUNT(*) AS total,
                       COUNT(*) FILTER (WHERE is_read = FALSE) AS unread
                FROM notifications
                """
            )

        return {"total": row["total"] or 0, "unread": row["unread"] or 0}
