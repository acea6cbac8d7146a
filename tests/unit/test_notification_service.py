"""Unit tests for NotificationService."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from task_scheduler.models.notification import NotificationCreate, NotificationType
from task_scheduler.services.notification_service import NotificationService


@pytest.fixture
def retry_queue():
    queue = MagicMock()
    queue.push = AsyncMock(return_value=1)
    return queue


@pytest.fixture
def service(retry_queue):
    return NotificationService(retry_queue)


@pytest.fixture
def payload():
    return NotificationCreate(
        user_id=uuid4(),
        type=NotificationType.REMINDER,
        title="Task Reminder",
        message='Task "Pay rent" is due soon',
        related_task_id=uuid4(),
    )


class TestDeliver:
    @pytest.mark.asyncio
    async def test_inserts_unread_notification(self, service, mock_pool, payload):
        pool, conn = mock_pool

        with patch("task_scheduler.services.notification_service.get_pool", return_value=pool):
            notification = await service.deliver(payload)

        assert notification.user_id == payload.user_id
        assert notification.is_read is False
        args = conn.execute.call_args[0]
        assert "INSERT INTO notifications" in args[0]
        assert args[3] == "reminder"
        assert args[6] == payload.related_task_id

    @pytest.mark.asyncio
    async def test_propagates_database_errors(self, service, mock_pool, payload):
        pool, conn = mock_pool
        conn.execute.side_effect = ConnectionError("connection refused")

        with patch("task_scheduler.services.notification_service.get_pool", return_value=pool):
            with pytest.raises(ConnectionError):
                await service.deliver(payload)


class TestCreateNotification:
    @pytest.mark.asyncio
    async def test_returns_notification_on_success(self, service, mock_pool, payload, retry_queue):
        pool, _ = mock_pool

        with patch("task_scheduler.services.notification_service.get_pool", return_value=pool):
            notification = await service.create_notification(payload)

        assert notification is not None
        retry_queue.push.assert_not_called()

    @pytest.mark.asyncio
    async def test_queues_payload_on_failure(self, service, mock_pool, payload, retry_queue):
        pool, conn = mock_pool
        conn.execute.side_effect = ConnectionError("connection refused")

        with patch("task_scheduler.services.notification_service.get_pool", return_value=pool):
            notification = await service.create_notification(payload)

        assert notification is None
        entry = retry_queue.push.call_args[0][0]
        assert entry.data == payload
        assert entry.retry_count == 0
        assert entry.failed_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_queue_failure_logs_payload(self, service, mock_pool, payload, retry_queue):
        pool, conn = mock_pool
        conn.execute.side_effect = ConnectionError("connection refused")
        retry_queue.push.side_effect = ConnectionError("Redis is not available")

        with (
            patch("task_scheduler.services.notification_service.get_pool", return_value=pool),
            patch("task_scheduler.services.notification_service.logger") as mock_logger,
        ):
            notification = await service.create_notification(payload)

        assert notification is None
        events = [call[0][0] for call in mock_logger.error.call_args_list]
        assert events == ["notification_create_failed", "notification_queue_failed"]
        assert mock_logger.error.call_args[1]["payload"]["title"] == "Task Reminder"


class TestQueries:
    @pytest.mark.asyncio
    async def test_has_recent_notification(self, service, mock_pool):
        pool, conn = mock_pool
        conn.fetchrow.return_value = {"id": uuid4()}
        since = datetime(2025, 1, 14, 9, 0, tzinfo=timezone.utc)
        task_id = uuid4()

        with patch("task_scheduler.services.notification_service.get_pool", return_value=pool):
            found = await service.has_recent_notification(task_id, NotificationType.OVERDUE, since)

        assert found is True
        assert conn.fetchrow.call_args[0][1:] == (task_id, "overdue", since)

    @pytest.mark.asyncio
    async def test_no_recent_notification(self, service, mock_pool):
        pool, conn = mock_pool
        conn.fetchrow.return_value = None

        with patch("task_scheduler.services.notification_service.get_pool", return_value=pool):
            found = await service.has_recent_notification(uuid4(), NotificationType.REMINDER, datetime.now(timezone.utc))

        assert found is False

    @pytest.mark.asyncio
    async def test_get_counts(self, service, mock_pool):
        pool, conn = mock_pool
        conn.fetchrow.return_value = {"total": 12, "unread": None}

        with patch("task_scheduler.services.notification_service.get_pool", return_value=pool):
            counts = await service.get_counts()

        assert counts == {"total": 12, "unread": 0}
