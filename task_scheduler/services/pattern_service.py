"""Pattern service: next-due bookkeeping for recurring templates."""

import json
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

import structlog

from task_scheduler.config import get_settings
from task_scheduler.database import get_pool
from task_scheduler.models.change import ChangeRecord, ChangeType, EditScope
from task_scheduler.models.pattern import RecurringPattern
from task_scheduler.models.task import Task
from task_scheduler.services.change_tracker import requires_recalculation
from task_scheduler.services.occurrence_service import anchor_rule, is_valid, next_occurrence
from task_scheduler.services.task_service import TASK_COLUMNS, task_from_record

logger = structlog.get_logger(__name__)

PATTERN_COLUMNS = "id, task_id, rrule, next_due, last_generated, is_active, created_at, updated_at"


def pattern_from_record(record) -> RecurringPattern:
    return RecurringPattern.model_validate(
        {key: record[key] for key in PATTERN_COLUMNS.split(", ")}
    )


class PatternService:
    """Reads and writes recurring_patterns rows."""

    def __init__(self):
        self.settings = get_settings()

    async def get_due_patterns(self, now: datetime) -> list[tuple[RecurringPattern, Optional[Task]]]:
        """Active patterns with next_due <= now, paired with their template.

        The template is None when it has been deleted.
        """
        pool = await get_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT p.id, p.task_id, p.rrule, p.next_due, p.last_generated, p.is_active,
                       p.created_at, p.updated_at,
                       CASE WHEN t.id IS NULL THEN NULL ELSE to_jsonb(t) END AS template
                FROM recurring_patterns p
                LEFT JOIN tasks t ON t.id = p.task_id
                WHERE p.next_due <= $1 AND p.is_active = TRUE
                ORDER BY p.next_due ASC
                LIMIT $2
                """,
                now,
                self.settings.scheduler_batch_size,
            )

        due = []
        for row in rows:
            template = None
            if row["template"] is not None:
                template = task_from_record(json.loads(row["template"]))
            due.append((pattern_from_record(row), template))
        return due

    async def advance(self, pattern_id: UUID, next_due: datetime, last_generated: datetime) -> None:
        pool = await get_pool()

        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE recurring_patterns
                SET next_due = $1, last_generated = $2, updated_at = $2
                WHERE id = $3
                """,
                next_due,
                last_generated,
                pattern_id,
            )

        logger.info(
            "recurring_pattern_advanced",
            pattern_id=str(pattern_id),
            next_due=next_due.isoformat(),
        )

    async def deactivate(self, pattern_id: UUID, reason: str) -> None:
        """Soft-exhaust a pattern. The row is kept for audit."""
        now = datetime.now(timezone.utc)
        pool = await get_pool()

        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE recurring_patterns
                SET is_active = FALSE, last_generated = COALESCE($1, last_generated), updated_at = $2
                WHERE id = $3
                """,
                now if reason == "exhausted" else None,
                now,
                pattern_id,
            )

        logger.info("recurring_pattern_deactivated", pattern_id=str(pattern_id), reason=reason)

    async def deactivate_for_task(self, task_id: UUID) -> int:
        """Deactivate every active pattern of a template, e.g. before it is deleted."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE recurring_patterns
                SET is_active = FALSE, updated_at = $1
                WHERE task_id = $2 AND is_active = TRUE
                """,
                datetime.now(timezone.utc),
                task_id,
            )

        # result is like "UPDATE N"
        count = int(result.split()[-1])
        if count:
            logger.info("recurring_patterns_deactivated_for_task", task_id=str(task_id), count=count)
        return count

    async def create_for_template(self, template: Task, now: Optional[datetime] = None) -> Optional[RecurringPattern]:
        """Create the pattern row for a template.

        next_due is the first occurrence after the template's start date (or
        now). Returns None when the rule yields no occurrence.
        """
        now = now or datetime.now(timezone.utc)
        anchor = template.start_date or now
        rule_text = anchor_rule(template.recurring_pattern, anchor)

        next_due = next_occurrence(rule_text, anchor, task_id=template.id)
        if next_due is None:
            logger.info("recurring_pattern_not_created", task_id=str(template.id), reason="no_occurrence")
            return None

        pattern_id = uuid4()
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO recurring_patterns
                (id, task_id, rrule, next_due, last_generated, is_active, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, TRUE, $5, $5)
                RETURNING {PATTERN_COLUMNS}
                """,
                pattern_id,
                template.id,
                rule_text,
                next_due,
                now,
            )

        logger.info(
            "recurring_pattern_created",
            pattern_id=str(pattern_id),
            task_id=str(template.id),
            next_due=next_due.isoformat(),
        )
        return pattern_from_record(row)

    async def backfill_patterns(self, now: Optional[datetime] = None) -> dict:
        """Create patterns for templates that have never had one.

        Returns:
            Dict with templates examined, created and skipped
        """
        pool = await get_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {TASK_COLUMNS} FROM tasks t
                WHERE is_recurring = TRUE AND recurring_pattern IS NOT NULL
                AND parent_task_id IS NULL
                AND NOT EXISTS (SELECT 1 FROM recurring_patterns p WHERE p.task_id = t.id)
                """
            )

        created = 0
        skipped = 0
        for row in rows:
            template = task_from_record(row)
            try:
                pattern = await self.create_for_template(template, now)
            except Exception as e:
                logger.error("recurring_pattern_backfill_failed", task_id=str(template.id), error=str(e))
                skipped += 1
                continue
            if pattern is None:
                skipped += 1
            else:
                created += 1

        logger.info("recurring_patterns_backfilled", examined=len(rows), created=created, skipped=skipped)
        return {"examined": len(rows), "created": created, "skipped": skipped}

    async def apply_change(
        self,
        record: ChangeRecord,
        *,
        rrule: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[RecurringPattern]:
        """Persist a tracked change to a template.

        Always writes the audit row and stamps the template with the new
        recurrence_version. A this_instance edit stops there and never
        touches the series rule or its pattern. For series edits a removed
        recurrence deactivates the pattern, and a change that alters the
        occurrence sequence replaces the active pattern with one computed
        from ``rrule``, or from the template's stored rule when no new rule
        is supplied.

        Returns:
            The new active pattern, or None if no pattern was (re)created
        """
        if record.task_id is None:
            raise ValueError("ChangeRecord has no task_id")

        now = now or datetime.now(timezone.utc)
        series = record.edit_scope != EditScope.THIS_INSTANCE
        removed = series and any(change.type == ChangeType.PATTERN_REMOVAL for change in record.changes)
        recalculate = series and not removed and requires_recalculation(record)

        if not series or removed:
            rrule = None
        elif rrule:
            rrule = anchor_rule(rrule, now)

        pool = await get_pool()
        new_pattern = None
        next_due = None

        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO recurrence_changes
                    (id, task_id, user_id, edit_scope, severity, changes, old_version, new_version,
                     affected, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                    """,
                    uuid4(),
                    record.task_id,
                    record.user_id,
                    record.edit_scope.value,
                    record.severity.value,
                    json.dumps([change.model_dump(mode="json") for change in record.changes]),
                    record.old_version,
                    record.new_version,
                    record.affected.model_dump_json(),
                    record.timestamp,
                )

                if not series:
                    await conn.execute(
                        """
                        UPDATE tasks SET recurrence_version = $1, updated_at = $2
                        WHERE id = $3
                        """,
                        record.new_version,
                        now,
                        record.task_id,
                    )
                else:
                    rule_text = await conn.fetchval(
                        """
                        UPDATE tasks
                        SET recurrence_version = $1,
                            recurring_pattern = CASE WHEN $2 THEN NULL ELSE COALESCE($3, recurring_pattern) END,
                            is_recurring = CASE WHEN $2 THEN FALSE ELSE is_recurring END,
                            updated_at = $4
                        WHERE id = $5
                        RETURNING recurring_pattern
                        """,
                        record.new_version,
                        removed,
                        rrule,
                        now,
                        record.task_id,
                    )

                    if removed:
                        await self._deactivate_active(conn, record.task_id, now)
                    elif recalculate:
                        if not rule_text or not is_valid(rule_text):
                            # Nothing to recompute from; the current pattern keeps running
                            logger.warning(
                                "recurrence_recalculation_skipped",
                                task_id=str(record.task_id),
                                rrule=rule_text,
                            )
                        else:
                            rule_text = anchor_rule(rule_text, now)
                            next_due = next_occurrence(rule_text, now, task_id=record.task_id)
                            await self._deactivate_active(conn, record.task_id, now)

                            if next_due is None:
                                logger.warning(
                                    "recurring_pattern_exhausted_by_change",
                                    task_id=str(record.task_id),
                                    rrule=rule_text,
                                )
                            else:
                                row = await conn.fetchrow(
                                    f"""
                                    INSERT INTO recurring_patterns
                                    (id, task_id, rrule, next_due, last_generated, is_active,
                                     created_at, updated_at)
                                    VALUES ($1, $2, $3, $4, NULL, TRUE, $5, $5)
                                    RETURNING {PATTERN_COLUMNS}
                                    """,
                                    uuid4(),
                                    record.task_id,
                                    rule_text,
                                    next_due,
                                    now,
                                )
                                new_pattern = pattern_from_record(row)

        logger.info(
            "recurrence_change_applied",
            task_id=str(record.task_id),
            edit_scope=record.edit_scope.value,
            severity=record.severity.value,
            new_version=record.new_version,
            recalculated=recalculate,
            next_due=next_due.isoformat() if next_due else None,
        )
        return new_pattern

    @staticmethod
    async def _deactivate_active(conn, task_id: UUID, now: datetime) -> None:
        await conn.execute(
            """
            UPDATE recurring_patterns
            SET is_active = FALSE, updated_at = $1
            WHERE task_id = $2 AND is_active = TRUE
            """,
            now,
            task_id,
        )

    async def get_counts(self, now: datetime) -> dict:
        """Active, inactive and currently-due pattern counts."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT COUNT(*) FILTER (WHERE is_active = TRUE) AS active,
                       COUNT(*) FILTER (WHERE is_active = FALSE) AS inactive,
                       COUNT(*) FILTER (WHERE is_active = TRUE AND next_due <= $1) AS due_now
                FROM recurring_patterns
                """,
                now,
            )

        return {key: row[key] or 0 for key in ("active", "inactive", "due_now")}
