"""Change tracking for edits to recurring task series.

Compares a template task's current state with a proposed update and
classifies how disruptive the edit is, so callers can decide whether the
persisted recurring pattern has to be recomputed.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union
from uuid import UUID

import structlog

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
from task_scheduler.models.duration import DURATION_FIELDS, Duration
from task_scheduler.models.recurrence import RecurrenceConfig
from task_scheduler.services.occurrence_service import (
    RecurrenceRuleError,
    build_rrule,
    config_from_rrule,
    occurrences_between,
)

logger = structlog.get_logger(__name__)

PATTERN_FIELDS = (
    "frequency",
    "interval",
    "days_of_week",
    "day_of_month",
    "end_date",
    "end_occurrences",
    "timezone",
)

NON_RECURRING_FIELDS = ("title", "description", "priority", "status", "category", "assignees")

# Placeholder estimates used where counting would need a query
THIS_AND_FUTURE_MINOR_ESTIMATE = 10
ALL_INSTANCES_ESTIMATE = AffectedInstances(past=5, present=1, future=20, total=26)

ESTIMATE_HORIZON = timedelta(days=365)
ESTIMATE_LIMIT = 1000

_SCOPE_DESCRIPTIONS = {
    EditScope.THIS_INSTANCE: (
        "Only this specific occurrence will be modified. "
        "The recurring pattern will remain unchanged."
    ),
    EditScope.THIS_AND_FUTURE: (
        "This occurrence will be modified and the recurring pattern "
        "will be updated for future occurrences."
    ),
    EditScope.ALL_INSTANCES: "All occurrences (past, current, and future) will be modified.",
}

PatternValue = Optional[Union[RecurrenceConfig, str]]


class ChangeTrackingError(ValueError):
    """Raised for an edit scope the tracker does not know."""


def _coerce_scope(edit_scope: Union[EditScope, str]) -> EditScope:
    try:
        return EditScope(edit_scope)
    except ValueError as e:
        raise ChangeTrackingError(f"Unknown edit scope: {edit_scope!r}") from e


def _comparable(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    if hasattr(value, "value"):
        return value.value
    return value


def _to_config(pattern: PatternValue) -> Optional[RecurrenceConfig]:
    if pattern is None or isinstance(pattern, RecurrenceConfig):
        return pattern
    return config_from_rrule(pattern)


def _compare_patterns(old: PatternValue, new: PatternValue) -> list[FieldChange]:
    if old is None and new is None:
        return []
    if old is None:
        return [FieldChange(type=ChangeType.PATTERN_ADDITION, field="recurring_pattern", new_value=_dump(new))]
    if new is None:
        return [FieldChange(type=ChangeType.PATTERN_REMOVAL, field="recurring_pattern", old_value=_dump(old))]

    old_config = _to_config(old)
    new_config = _to_config(new)
    if old_config is None or new_config is None:
        # At least one side is not a parsable rule; fall back to text comparison
        if _dump(old) != _dump(new):
            return [
                FieldChange(
                    type=ChangeType.PATTERN_FIELD_CHANGE,
                    field="recurring_pattern",
                    old_value=_dump(old),
                    new_value=_dump(new),
                )
            ]
        return []

    changes = []
    for name in PATTERN_FIELDS:
        old_value = getattr(old_config, name)
        new_value = getattr(new_config, name)
        if isinstance(old_value, list) or isinstance(new_value, list):
            differs = list(old_value or []) != list(new_value or [])
        else:
            differs = _comparable(old_value) != _comparable(new_value)
        if differs:
            changes.append(
                FieldChange(
                    type=ChangeType.PATTERN_FIELD_CHANGE,
                    field=name,
                    old_value=_comparable_or_raw(old_value),
                    new_value=_comparable_or_raw(new_value),
                )
            )
    return changes


def _compare_durations(old: Optional[Duration], new: Optional[Duration]) -> list[FieldChange]:
    if old is None and new is None:
        return []
    if old is None:
        return [FieldChange(type=ChangeType.DURATION_ADDITION, field="duration", new_value=new.model_dump())]
    if new is None:
        return [FieldChange(type=ChangeType.DURATION_REMOVAL, field="duration", old_value=old.model_dump())]

    changes = []
    for name in DURATION_FIELDS:
        old_value = getattr(old, name) or 0
        new_value = getattr(new, name) or 0
        if old_value != new_value:
            changes.append(
                FieldChange(
                    type=ChangeType.DURATION_FIELD_CHANGE,
                    field=name,
                    old_value=old_value,
                    new_value=new_value,
                )
            )
    return changes


def _dump(pattern: PatternValue) -> Any:
    if isinstance(pattern, RecurrenceConfig):
        return pattern.model_dump(mode="json")
    return pattern


def _comparable_or_raw(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return value


def _change_severity(change: FieldChange) -> Severity:
    if change.type in (
        ChangeType.PATTERN_ADDITION,
        ChangeType.PATTERN_REMOVAL,
        ChangeType.DURATION_ADDITION,
        ChangeType.DURATION_REMOVAL,
    ):
        return Severity.MAJOR

    if change.type == ChangeType.PATTERN_FIELD_CHANGE:
        if change.field in ("frequency", "recurring_pattern"):
            return Severity.MAJOR
        if change.field == "interval":
            old_interval = change.old_value or 1
            new_interval = change.new_value or 1
            if abs(new_interval - old_interval) > 1:
                return Severity.MAJOR
        return Severity.MINOR

    if change.type in (ChangeType.DURATION_FIELD_CHANGE, ChangeType.TIMING_CHANGE):
        return Severity.MINOR

    return Severity.NONE


def resolve_severity(changes: list[FieldChange], baseline: Severity = Severity.NONE) -> Severity:
    """Highest severity implied by the changes, never lower than ``baseline``."""
    severity = baseline
    for change in changes:
        candidate = _change_severity(change)
        if candidate.rank > severity.rank:
            severity = candidate
    return severity


def _pattern_rule_text(pattern: PatternValue, anchor: datetime) -> Optional[str]:
    if pattern is None:
        return None
    if isinstance(pattern, str):
        return pattern
    try:
        return build_rrule(pattern, anchor)
    except RecurrenceRuleError as e:
        logger.warning("change_estimate_rule_unbuildable", error=str(e))
        return None


def estimate_affected(
    edit_scope: EditScope,
    severity: Severity,
    has_pattern_changes: bool,
    has_duration_changes: bool,
    old_pattern: PatternValue,
    new_pattern: PatternValue,
    now: datetime,
) -> AffectedInstances:
    """Estimate how many instances an edit touches for the given scope."""
    if edit_scope == EditScope.THIS_INSTANCE:
        return AffectedInstances(present=1, total=1)

    if edit_scope == EditScope.ALL_INSTANCES:
        return ALL_INSTANCES_ESTIMATE.model_copy()

    sequence_changed = severity.rank >= Severity.MAJOR.rank and (
        has_pattern_changes or has_duration_changes
    )
    if sequence_changed:
        rule_text = _pattern_rule_text(new_pattern if new_pattern is not None else old_pattern, now)
        if rule_text is None:
            future = 0
        else:
            future = len(
                occurrences_between(
                    rule_text, now, now + ESTIMATE_HORIZON, limit=ESTIMATE_LIMIT, dtstart=now
                )
            )
    else:
        future = THIS_AND_FUTURE_MINOR_ESTIMATE

    return AffectedInstances(present=1, future=future, total=1 + future)


def track_changes(
    old: RecurringTaskState,
    update: RecurringTaskUpdate,
    *,
    task_id: Optional[UUID] = None,
    user_id: Optional[UUID] = None,
    edit_scope: Union[EditScope, str] = EditScope.THIS_INSTANCE,
    baseline_severity: Severity = Severity.NONE,
    now: Optional[datetime] = None,
) -> ChangeRecord:
    """Compare a recurring task with a proposed update.

    Only fields explicitly present on ``update`` are compared, so a partial
    update never reads as a removal.

    Args:
        old: Current state of the task
        update: Proposed update
        task_id: Task being edited (for the record and logs)
        user_id: User making the edit
        edit_scope: this_instance, this_and_future or all_instances
        baseline_severity: Severity already established by the caller; the
            result is never lower
        now: Reference instant for the future-instance estimate

    Returns:
        ChangeRecord describing the field changes, severity and estimate

    Raises:
        ChangeTrackingError: If edit_scope is unknown
    """
    scope = _coerce_scope(edit_scope)
    now = now or datetime.now(timezone.utc)
    supplied = update.model_fields_set

    pattern_changes: list[FieldChange] = []
    if "recurring_pattern" in supplied:
        pattern_changes = _compare_patterns(old.recurring_pattern, update.recurring_pattern)

    duration_changes: list[FieldChange] = []
    if "duration" in supplied:
        duration_changes = _compare_durations(old.duration, update.duration)

    timing_changes: list[FieldChange] = []
    if "start_date" in supplied and old.start_date is not None and update.start_date is not None:
        if _comparable(old.start_date) != _comparable(update.start_date):
            timing_changes.append(
                FieldChange(
                    type=ChangeType.TIMING_CHANGE,
                    field="start_date",
                    old_value=old.start_date.isoformat(),
                    new_value=update.start_date.isoformat(),
                )
            )

    field_changes: list[FieldChange] = []
    for name in NON_RECURRING_FIELDS:
        if name not in supplied:
            continue
        old_value = getattr(old, name)
        new_value = getattr(update, name)
        if _comparable(old_value) != _comparable(new_value):
            field_changes.append(
                FieldChange(
                    type=ChangeType.FIELD_CHANGE,
                    field=name,
                    old_value=_comparable_or_raw(old_value),
                    new_value=_comparable_or_raw(new_value),
                )
            )

    changes = pattern_changes + duration_changes + timing_changes + field_changes
    severity = resolve_severity(changes, baseline_severity)

    affected = estimate_affected(
        scope,
        severity,
        bool(pattern_changes),
        bool(duration_changes),
        old.recurring_pattern,
        update.recurring_pattern if "recurring_pattern" in supplied else None,
        now,
    )

    record = ChangeRecord(
        task_id=task_id,
        user_id=user_id,
        edit_scope=scope,
        changes=changes,
        severity=severity,
        has_pattern_changes=bool(pattern_changes),
        has_duration_changes=bool(duration_changes),
        has_timing_changes=bool(timing_changes),
        has_non_recurring_changes=bool(field_changes),
        old_version=old.recurrence_version,
        new_version=old.recurrence_version + 1,
        affected=affected,
        timestamp=now,
    )

    logger.info(
        "recurrence_changes_tracked",
        task_id=str(task_id) if task_id else None,
        edit_scope=scope.value,
        severity=severity.value,
        change_count=len(changes),
        affected_total=affected.total,
    )
    return record


def requires_recalculation(record: ChangeRecord) -> bool:
    """Whether the edit alters the occurrence sequence and the pattern must be recomputed."""
    return record.has_pattern_changes or record.has_duration_changes or record.has_timing_changes


def describe_scope(edit_scope: Union[EditScope, str]) -> str:
    """Preview text explaining what an edit with this scope will modify."""
    return _SCOPE_DESCRIPTIONS[_coerce_scope(edit_scope)]
