"""Task service: instance materialization and due/overdue queries."""

import json
from datetime import datetime, timezone
from typing import Any, Mapping
from uuid import uuid4

import structlog

from task_scheduler.config import get_settings
from task_scheduler.database import get_pool
from task_scheduler.models.task import Task, TaskStatus

logger = structlog.get_logger(__name__)

TASK_COLUMNS = """
    id, title, description, status, priority, owner_id, assignees, category_id,
    start_date, due_date, duration, is_recurring, recurring_pattern, parent_task_id,
    occurrence_at, recurrence_version, created_at, updated_at
"""

# A template carries the rule and is never itself due
NOT_TEMPLATE = "NOT (is_recurring AND recurring_pattern IS NOT NULL AND parent_task_id IS NULL)"


def task_from_record(record: Mapping[str, Any]) -> Task:
    """Build a Task from a database row or a to_jsonb() document."""
    data = dict(record)
    duration = data.get("duration")
    if isinstance(duration, str):
        data["duration"] = json.loads(duration)
    if data.get("assignees") is None:
        data["assignees"] = []
    return Task.model_validate(data)


class TaskService:
    """Task reads and writes needed by the job processor."""

    def __init__(self):
        self.settings = get_settings()

    async def create_instance(self, template: Task, occurrence: datetime) -> tuple[Task, bool]:
        """Materialize an instance of a template for one occurrence.

        The (parent_task_id, occurrence_at) pair is unique, so re-running a
        materialization for the same occurrence returns the existing instance
        instead of inserting a duplicate.

        Returns:
            The instance, and whether this call inserted it
        """
        instance_id = uuid4()
        now = datetime.now(timezone.utc)
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO tasks
                (id, title, description, status, priority, owner_id, assignees, category_id,
                 start_date, due_date, duration, is_recurring, recurring_pattern, parent_task_id,
                 occurrence_at, recurrence_version, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $9, NULL, FALSE, NULL, $10, $9, 1, $11, $11)
                ON CONFLICT (parent_task_id, occurrence_at) WHERE parent_task_id IS NOT NULL
                DO NOTHING
                RETURNING {TASK_COLUMNS}
                """,
                instance_id,
                template.title,
                template.description,
                TaskStatus.TODO.value,
                template.priority.value,
                template.owner_id,
                list(template.assignees),
                template.category_id,
                occurrence,
                template.id,
                now,
            )

            if row is None:
                row = await conn.fetchrow(
                    f"""
                    SELECT {TASK_COLUMNS} FROM tasks
                    WHERE parent_task_id = $1 AND occurrence_at = $2
                    """,
                    template.id,
                    occurrence,
                )
                logger.warning(
                    "instance_already_materialized",
                    template_id=str(template.id),
                    occurrence=occurrence.isoformat(),
                )
                return task_from_record(row), False

        logger.info(
            "recurring_instance_created",
            task_id=str(instance_id),
            template_id=str(template.id),
            due_date=occurrence.isoformat(),
        )
        return task_from_record(row), True

    async def find_due_between(self, start: datetime, end: datetime) -> list[Task]:
        """Non-template tasks due within [start, end] that are not done."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {TASK_COLUMNS} FROM tasks
                WHERE due_date >= $1 AND due_date <= $2
                AND status <> 'done'
                AND {NOT_TEMPLATE}
                ORDER BY due_date ASC
                LIMIT $3
                """,
                start,
                end,
                self.settings.scheduler_batch_size,
            )

        return [task_from_record(row) for row in rows]

    async def find_overdue(self, now: datetime) -> list[Task]:
        """Non-template tasks whose due date has passed and that are not done."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {TASK_COLUMNS} FROM tasks
                WHERE due_date < $1
                AND status <> 'done'
                AND {NOT_TEMPLATE}
                ORDER BY due_date ASC
                LIMIT $2
                """,
                now,
                self.settings.scheduler_batch_size,
            )

        return [task_from_record(row) for row in rows]

    async def get_status_counts(self, now: datetime) -> dict:
        """Task counts by status, plus overdue."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT COUNT(*) AS total,
                       COUNT(*) FILTER (WHERE status = 'todo') AS todo,
                       COUNT(*) FILTER (WHERE status = 'in_progress') AS in_progress,
                       COUNT(*) FILTER (WHERE status = 'done') AS done,
                       COUNT(*) FILTER (WHERE due_date < $1 AND status <> 'done' AND {NOT_TEMPLATE}) AS overdue
                FROM tasks
                """,
                now,
            )

        return {key: row[key] or 0 for key in ("total", "todo", "in_progress", "done", "overdue")}
