"""Job processor: one tick of recurring materialization and notification delivery.

A tick runs four phases concurrently:

1. materialize instances for due recurring patterns
2. remind owners of tasks due within the look-ahead window
3. flag overdue tasks
4. retry notifications that previously failed to persist

Ticks never overlap. A tick requested while another is running is skipped.
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

import structlog

from task_scheduler import database
from task_scheduler.config import Settings, get_settings
from task_scheduler.models.job import JobRunSummary, PhaseResult, RetryResult
from task_scheduler.models.notification import NotificationCreate, NotificationType
from task_scheduler.models.pattern import RecurringPattern
from task_scheduler.models.task import Task
from task_scheduler.services.notification_service import NotificationService
from task_scheduler.services.occurrence_service import is_valid, next_occurrence
from task_scheduler.services.pattern_service import PatternService
from task_scheduler.services.redis_service import RetryQueue, redis_health_check
from task_scheduler.services.task_service import TaskService

logger = structlog.get_logger(__name__)

HealthPredicate = Callable[[], Awaitable[bool]]

MESSAGE_MAX_LENGTH = 500


def _clip(text: str, limit: int = MESSAGE_MAX_LENGTH) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobProcessor:
    """Runs scheduler ticks against the persistence services."""

    def __init__(
        self,
        task_service: Optional[TaskService] = None,
        pattern_service: Optional[PatternService] = None,
        notification_service: Optional[NotificationService] = None,
        retry_queue: Optional[RetryQueue] = None,
        settings: Optional[Settings] = None,
        database_health: Optional[HealthPredicate] = None,
        queue_health: Optional[HealthPredicate] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.settings = settings or get_settings()
        self.retry_queue = retry_queue or RetryQueue(self.settings.retry_queue_key)
        self.task_service = task_service or TaskService()
        self.pattern_service = pattern_service or PatternService()
        self.notification_service = notification_service or NotificationService(self.retry_queue)
        self.database_health = database_health or database.health_check
        self.queue_health = queue_health or redis_health_check
        self.clock = clock
        self._lock = asyncio.Lock()
        # The retry phase also runs from its own trigger; one pass at a time
        self._retry_lock = asyncio.Lock()

    @property
    def is_processing(self) -> bool:
        return self._lock.locked()

    async def process_jobs(self, now: Optional[datetime] = None) -> JobRunSummary:
        """Run one tick. Returns a skipped summary if a tick is already running."""
        if self._lock.locked():
            logger.warning("job_processing_skipped", reason="previous_run_in_progress")
            return JobRunSummary(skipped=True)

        async with self._lock:
            start_time = time.perf_counter()
            now = now or self.clock()
            logger.info("job_processing_started", now=now.isoformat())

            recurring, reminders, overdue, retries = await asyncio.gather(
                self.process_recurring_tasks(now),
                self.process_reminders(now),
                self.process_overdue_tasks(now),
                self.process_failed_notifications(now),
            )

            summary = JobRunSummary(
                recurring=recurring,
                reminders=reminders,
                overdue=overdue,
                retries=retries,
                duration_ms=int((time.perf_counter() - start_time) * 1000),
            )
            logger.info(
                "job_processing_completed",
                duration_ms=summary.duration_ms,
                instances_created=recurring.created,
                reminders_created=reminders.created,
                overdue_created=overdue.created,
                retries_delivered=retries.delivered,
            )
            return summary

    async def _database_ready(self, phase: str) -> bool:
        if await self.database_health():
            return True
        logger.warning("phase_skipped_unhealthy", phase=phase, dependency="database")
        return False

    # Recurring materialization

    async def process_recurring_tasks(self, now: datetime) -> PhaseResult:
        """Materialize one instance for every due, active pattern."""
        if not await self._database_ready("recurring"):
            return PhaseResult(ran=False)

        try:
            due = await self.pattern_service.get_due_patterns(now)
        except Exception as e:
            logger.error("due_patterns_query_failed", error=str(e))
            return PhaseResult(failed=1)

        result = PhaseResult(examined=len(due))
        for pattern, template in due:
            try:
                created = await self._materialize(pattern, template, now)
            except Exception as e:
                logger.error(
                    "recurring_materialization_failed",
                    pattern_id=str(pattern.id),
                    task_id=str(pattern.task_id) if pattern.task_id else None,
                    error=str(e),
                )
                result.failed += 1
                continue
            if created:
                result.created += 1
            else:
                result.skipped += 1

        if due:
            logger.info("recurring_tasks_processed", examined=result.examined, created=result.created)
        return result

    async def _materialize(
        self, pattern: RecurringPattern, template: Optional[Task], now: datetime
    ) -> bool:
        if template is None:
            await self.pattern_service.deactivate(pattern.id, reason="template_missing")
            return False

        if not is_valid(pattern.rrule):
            # Left untouched until the rule is corrected
            logger.error(
                "recurrence_rule_invalid",
                pattern_id=str(pattern.id),
                task_id=str(template.id),
                rrule=pattern.rrule,
            )
            return False

        instance, created = await self.task_service.create_instance(template, pattern.next_due)

        offset = timedelta(seconds=self.settings.materialization_offset_seconds)
        next_due = next_occurrence(
            pattern.rrule,
            pattern.next_due + offset,
            dtstart=pattern.next_due,
            task_id=template.id,
        )
        if next_due is not None:
            await self.pattern_service.advance(pattern.id, next_due, now)
        else:
            await self.pattern_service.deactivate(pattern.id, reason="exhausted")

        if not created:
            # Replayed occurrence; its notice went out with the first insert
            return False

        await self.notification_service.create_notification(
            NotificationCreate(
                user_id=template.owner_id,
                type=NotificationType.REMINDER,
                title="New Recurring Task",
                message=_clip(f'A new instance of "{template.title}" has been created'),
                related_task_id=instance.id,
            )
        )
        return True

    # Due-soon reminders and overdue detection

    async def process_reminders(self, now: datetime) -> PhaseResult:
        """Remind owners of tasks due within the look-ahead window."""
        if not await self._database_ready("reminders"):
            return PhaseResult(ran=False)

        window_end = now + timedelta(minutes=self.settings.reminder_lookahead_minutes)
        try:
            tasks = await self.task_service.find_due_between(now, window_end)
        except Exception as e:
            logger.error("due_tasks_query_failed", error=str(e))
            return PhaseResult(failed=1)

        return await self._notify_each(
            tasks,
            now,
            NotificationType.REMINDER,
            "Task Reminder",
            'Task "{title}" is due soon',
        )

    async def process_overdue_tasks(self, now: datetime) -> PhaseResult:
        """Notify owners of tasks whose due date has passed."""
        if not await self._database_ready("overdue"):
            return PhaseResult(ran=False)

        try:
            tasks = await self.task_service.find_overdue(now)
        except Exception as e:
            logger.error("overdue_tasks_query_failed", error=str(e))
            return PhaseResult(failed=1)

        return await self._notify_each(
            tasks,
            now,
            NotificationType.OVERDUE,
            "Task Overdue",
            'Task "{title}" is overdue',
        )

    async def _notify_each(
        self,
        tasks: list[Task],
        now: datetime,
        notification_type: NotificationType,
        title: str,
        message_template: str,
    ) -> PhaseResult:
        result = PhaseResult(examined=len(tasks))
        since = now - timedelta(hours=self.settings.notification_dedup_hours)

        for task in tasks:
            try:
                if await self.notification_service.has_recent_notification(
                    task.id, notification_type, since
                ):
                    result.skipped += 1
                    continue

                notification = await self.notification_service.create_notification(
                    NotificationCreate(
                        user_id=task.owner_id,
                        type=notification_type,
                        title=title,
                        message=_clip(message_template.format(title=task.title)),
                        related_task_id=task.id,
                    )
                )
            except Exception as e:
                logger.error(
                    "task_notification_failed",
                    task_id=str(task.id),
                    type=notification_type.value,
                    error=str(e),
                )
                result.failed += 1
                continue

            if notification is None:
                # Queued for retry
                result.failed += 1
            else:
                result.created += 1

        if tasks:
            logger.info(
                "task_notifications_processed",
                type=notification_type.value,
                examined=result.examined,
                created=result.created,
                skipped=result.skipped,
            )
        return result

    # Failed-notification retry

    async def process_failed_notifications(self, now: Optional[datetime] = None) -> RetryResult:
        """Attempt every queued notification once.

        Entries that have reached the retry ceiling are dropped with an
        error log carrying the full payload.
        """
        if self._retry_lock.locked():
            logger.warning("retry_pass_skipped", reason="previous_pass_in_progress")
            return RetryResult(ran=False)

        async with self._retry_lock:
            return await self._retry_failed_notifications(now)

    async def _retry_failed_notifications(self, now: Optional[datetime]) -> RetryResult:
        if not await self.queue_health():
            logger.warning("phase_skipped_unhealthy", phase="retries", dependency="redis")
            return RetryResult(ran=False)
        if not await self._database_ready("retries"):
            return RetryResult(ran=False)

        now = now or self.clock()
        max_attempts = self.settings.retry_max_attempts

        try:
            raw_entries = await self.retry_queue.entries()
        except Exception as e:
            logger.error("retry_queue_read_failed", error=str(e))
            return RetryResult(ran=False)

        result = RetryResult(examined=len(raw_entries))
        for raw in raw_entries:
            try:
                entry = self.retry_queue.parse(raw)
            except ValueError:
                # Malformed entries are removed by the health-check sweep
                logger.warning("retry_entry_malformed")
                continue

            try:
                if entry.retry_count >= max_attempts:
                    await self.retry_queue.remove(raw)
                    result.dropped += 1
                    logger.error(
                        "notification_dropped_max_retries",
                        retry_count=entry.retry_count,
                        payload=entry.data.model_dump(mode="json"),
                    )
                    continue

                try:
                    await self.notification_service.deliver(entry.data)
                except Exception as e:
                    entry.retry_count += 1
                    entry.last_retry_at = now
                    if not await self.retry_queue.remove(raw):
                        # Swept while we were delivering
                        logger.info("retry_entry_already_removed", retry_count=entry.retry_count)
                        continue

                    if entry.retry_count < max_attempts:
                        await self.retry_queue.push(entry)
                        result.requeued += 1
                        logger.warning(
                            "notification_retry_failed",
                            retry_count=entry.retry_count,
                            max_attempts=max_attempts,
                            error=str(e),
                        )
                    else:
                        result.dropped += 1
                        logger.error(
                            "notification_dropped_max_retries",
                            retry_count=entry.retry_count,
                            payload=entry.data.model_dump(mode="json"),
                            error=str(e),
                        )
                    continue

                await self.retry_queue.remove(raw)
                result.delivered += 1
                logger.info("notification_retry_succeeded", attempt=entry.retry_count + 1)
            except Exception as e:
                logger.error("retry_entry_update_failed", error=str(e))

        if raw_entries:
            logger.info(
                "failed_notifications_processed",
                examined=result.examined,
                delivered=result.delivered,
                requeued=result.requeued,
                dropped=result.dropped,
            )
        return result

    # Health and stats

    async def cleanup_failed_notifications(self, now: Optional[datetime] = None) -> int:
        """Remove queue entries that are too old to deliver or cannot be parsed.

        Returns:
            Number of entries removed
        """
        now = now or self.clock()
        cutoff = now - timedelta(hours=self.settings.retry_entry_max_age_hours)
        removed = 0

        for raw in await self.retry_queue.entries():
            try:
                entry = self.retry_queue.parse(raw)
            except ValueError:
                await self.retry_queue.remove(raw)
                removed += 1
                logger.warning("retry_entry_malformed_removed")
                continue

            failed_at = entry.failed_at
            if failed_at.tzinfo is None:
                failed_at = failed_at.replace(tzinfo=timezone.utc)
            if failed_at < cutoff:
                await self.retry_queue.remove(raw)
                removed += 1
                logger.error(
                    "retry_entry_expired",
                    failed_at=failed_at.isoformat(),
                    payload=entry.data.model_dump(mode="json"),
                )

        return removed

    async def get_processing_stats(self, now: Optional[datetime] = None) -> dict:
        """Counts of tasks, notifications, patterns and queued retries."""
        now = now or self.clock()

        tasks, notifications, patterns = await asyncio.gather(
            self.task_service.get_status_counts(now),
            self.notification_service.get_counts(),
            self.pattern_service.get_counts(now),
        )

        try:
            queue_depth = await self.retry_queue.length()
        except Exception as e:
            logger.warning("retry_queue_length_failed", error=str(e))
            queue_depth = None

        return {
            "tasks": tasks,
            "notifications": notifications,
            "patterns": patterns,
            "failed_notifications": queue_depth,
            "is_processing": self.is_processing,
            "timestamp": now.isoformat(),
        }

    async def health_check(self, now: Optional[datetime] = None) -> dict:
        """Report dependency health and counts, sweeping stale retry entries."""
        now = now or self.clock()
        database_ok, queue_ok = await asyncio.gather(self.database_health(), self.queue_health())

        report: dict = {
            "database": database_ok,
            "redis": queue_ok,
            "is_processing": self.is_processing,
            "timestamp": now.isoformat(),
        }

        if queue_ok:
            try:
                report["cleaned_failed_notifications"] = await self.cleanup_failed_notifications(now)
            except Exception as e:
                logger.error("retry_queue_cleanup_failed", error=str(e))

        if database_ok:
            try:
                report.update(await self.get_processing_stats(now))
            except Exception as e:
                logger.error("processing_stats_failed", error=str(e))

        report["healthy"] = database_ok and queue_ok
        logger.info(
            "health_check_completed",
            healthy=report["healthy"],
            database=database_ok,
            redis=queue_ok,
            failed_notifications=report.get("failed_notifications"),
        )
        return report
