"""Unit tests for the recurring-task change tracker."""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from task_scheduler.models.change import (
    ChangeType,
    EditScope,
    RecurringTaskState,
    RecurringTaskUpdate,
    Severity,
)
from task_scheduler.models.duration import Duration
from task_scheduler.models.recurrence import Frequency, RecurrenceConfig
from task_scheduler.models.task import TaskPriority
from task_scheduler.services.change_tracker import (
    ChangeTrackingError,
    describe_scope,
    requires_recalculation,
    resolve_severity,
    track_changes,
)

NOW = datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def daily_state() -> RecurringTaskState:
    return RecurringTaskState(
        title="Water the plants",
        description="Balcony and kitchen",
        priority=TaskPriority.MEDIUM,
        start_date=datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc),
        duration=Duration(hours=1),
        recurring_pattern=RecurrenceConfig(frequency=Frequency.DAILY),
        recurrence_version=3,
    )


def track(old, update, scope=EditScope.THIS_AND_FUTURE, **kwargs):
    return track_changes(old, update, task_id=uuid4(), user_id=uuid4(), edit_scope=scope, now=NOW, **kwargs)


class TestSeverity:
    def test_title_only_change_is_none(self, daily_state):
        record = track(daily_state, RecurringTaskUpdate(title="Water all plants"))

        assert record.severity == Severity.NONE
        assert record.has_non_recurring_changes is True
        assert record.has_pattern_changes is False
        assert record.has_duration_changes is False
        assert record.has_timing_changes is False
        assert [c.field for c in record.changes] == ["title"]

    def test_frequency_change_is_major(self, daily_state):
        record = track(
            daily_state,
            RecurringTaskUpdate(recurring_pattern=RecurrenceConfig(frequency=Frequency.WEEKLY)),
        )

        assert record.severity == Severity.MAJOR
        change = record.changes[0]
        assert change.type == ChangeType.PATTERN_FIELD_CHANGE
        assert change.field == "frequency"
        assert (change.old_value, change.new_value) == ("daily", "weekly")

    def test_pattern_addition_is_major(self):
        old = RecurringTaskState(title="Pay rent")
        update = RecurringTaskUpdate(
            title="Pay rent",
            recurring_pattern=RecurrenceConfig(frequency=Frequency.MONTHLY, day_of_month=1),
        )

        record = track(old, update)

        assert record.severity == Severity.MAJOR
        assert record.changes[0].type == ChangeType.PATTERN_ADDITION

    def test_pattern_removal_is_major(self, daily_state):
        record = track(daily_state, RecurringTaskUpdate(recurring_pattern=None))

        assert record.severity == Severity.MAJOR
        assert record.changes[0].type == ChangeType.PATTERN_REMOVAL

    def test_duration_addition_is_major(self):
        old = RecurringTaskState(title="Stretch")
        record = track(old, RecurringTaskUpdate(duration=Duration(minutes=15)))

        assert record.severity == Severity.MAJOR
        assert record.changes[0].type == ChangeType.DURATION_ADDITION
        assert record.has_duration_changes is True

    def test_duration_field_change_is_minor(self, daily_state):
        record = track(daily_state, RecurringTaskUpdate(duration=Duration(hours=1, minutes=30)))

        assert record.severity == Severity.MINOR
        assert [(c.field, c.old_value, c.new_value) for c in record.changes] == [("minutes", 0, 30)]

    def test_interval_change_by_one_is_minor(self, daily_state):
        record = track(
            daily_state,
            RecurringTaskUpdate(recurring_pattern=RecurrenceConfig(frequency=Frequency.DAILY, interval=2)),
        )
        assert record.severity == Severity.MINOR

    def test_interval_change_by_more_than_one_is_major(self, daily_state):
        record = track(
            daily_state,
            RecurringTaskUpdate(recurring_pattern=RecurrenceConfig(frequency=Frequency.DAILY, interval=3)),
        )
        assert record.severity == Severity.MAJOR

    def test_days_of_week_order_matters(self):
        old = RecurringTaskState(
            title="Gym",
            recurring_pattern=RecurrenceConfig(frequency=Frequency.WEEKLY, days_of_week=[1, 3]),
        )
        update = RecurringTaskUpdate(
            recurring_pattern=RecurrenceConfig(frequency=Frequency.WEEKLY, days_of_week=[3, 1])
        )

        record = track(old, update)

        assert record.severity == Severity.MINOR
        assert record.changes[0].field == "days_of_week"

    def test_start_date_change_is_minor(self, daily_state):
        record = track(daily_state, RecurringTaskUpdate(start_date=datetime(2025, 1, 2, 9, 0, tzinfo=timezone.utc)))

        assert record.severity == Severity.MINOR
        assert record.has_timing_changes is True
        assert record.changes[0].type == ChangeType.TIMING_CHANGE

    def test_same_instant_in_other_zone_is_not_a_timing_change(self, daily_state):
        same_instant = daily_state.start_date.astimezone(timezone(timedelta(hours=2)))
        record = track(daily_state, RecurringTaskUpdate(start_date=same_instant))

        assert record.changes == []
        assert record.severity == Severity.NONE

    def test_addition_stays_major_alongside_minor_changes(self):
        old = RecurringTaskState(title="Review", start_date=NOW)
        update = RecurringTaskUpdate(
            start_date=NOW + timedelta(days=1),
            recurring_pattern=RecurrenceConfig(frequency=Frequency.WEEKLY),
        )

        record = track(old, update)

        assert record.severity == Severity.MAJOR

    def test_breaking_baseline_is_never_downgraded(self, daily_state):
        record = track(
            daily_state,
            RecurringTaskUpdate(title="Renamed"),
            baseline_severity=Severity.BREAKING,
        )
        assert record.severity == Severity.BREAKING

    def test_resolve_severity_never_drops_below_baseline(self):
        assert resolve_severity([], Severity.MAJOR) == Severity.MAJOR

    def test_omitted_fields_are_not_compared(self, daily_state):
        record = track(daily_state, RecurringTaskUpdate(priority=TaskPriority.HIGH))

        assert [c.field for c in record.changes] == ["priority"]
        assert record.severity == Severity.NONE

    def test_rule_text_patterns_are_compared_field_by_field(self):
        old = RecurringTaskState(title="Standup", recurring_pattern="FREQ=WEEKLY;BYDAY=MO")
        update = RecurringTaskUpdate(recurring_pattern="FREQ=WEEKLY;BYDAY=MO;COUNT=10")

        record = track(old, update)

        assert [c.field for c in record.changes] == ["end_occurrences"]
        assert record.severity == Severity.MINOR


class TestAffectedInstances:
    @pytest.mark.parametrize(
        "update",
        [
            RecurringTaskUpdate(title="x"),
            RecurringTaskUpdate(recurring_pattern=RecurrenceConfig(frequency=Frequency.YEARLY)),
        ],
    )
    def test_this_instance_is_always_one(self, daily_state, update):
        record = track(daily_state, update, scope=EditScope.THIS_INSTANCE)

        assert record.affected.total == 1
        assert record.affected.present == 1

    def test_all_instances_uses_placeholders(self, daily_state):
        record = track(daily_state, RecurringTaskUpdate(title="x"), scope=EditScope.ALL_INSTANCES)

        assert (record.affected.past, record.affected.present, record.affected.future) == (5, 1, 20)
        assert record.affected.total == 26

    def test_this_and_future_minor_uses_placeholder(self, daily_state):
        record = track(daily_state, RecurringTaskUpdate(start_date=NOW))

        assert record.affected.present == 1
        assert record.affected.future == 10
        assert record.affected.total == 11

    def test_this_and_future_major_walks_new_pattern_for_a_year(self, daily_state):
        update = RecurringTaskUpdate(recurring_pattern=RecurrenceConfig(frequency=Frequency.WEEKLY))

        record = track(daily_state, update)

        # Weekly from NOW through NOW + 365 days, both ends included
        assert record.affected.future == 53
        assert record.affected.total == 54

    def test_this_and_future_major_respects_end_condition(self, daily_state):
        update = RecurringTaskUpdate(
            recurring_pattern=RecurrenceConfig(frequency=Frequency.MONTHLY, end_occurrences=4)
        )

        record = track(daily_state, update)

        assert record.affected.future == 4

    def test_pattern_removal_walks_old_pattern(self, daily_state):
        record = track(daily_state, RecurringTaskUpdate(recurring_pattern=None))

        assert record.affected.future == 366

    def test_duration_addition_without_pattern_estimates_zero(self):
        record = track(RecurringTaskState(title="One-off"), RecurringTaskUpdate(duration=Duration(hours=2)))

        assert record.severity == Severity.MAJOR
        assert record.affected.future == 0
        assert record.affected.total == 1


class TestRecordMetadata:
    def test_version_is_bumped(self, daily_state):
        record = track(daily_state, RecurringTaskUpdate(title="x"))

        assert record.old_version == 3
        assert record.new_version == 4
        assert record.timestamp == NOW

    def test_string_scope_is_accepted(self, daily_state):
        record = track(daily_state, RecurringTaskUpdate(title="x"), scope="all_instances")
        assert record.edit_scope == EditScope.ALL_INSTANCES

    def test_unknown_scope_raises(self, daily_state):
        with pytest.raises(ChangeTrackingError):
            track(daily_state, RecurringTaskUpdate(title="x"), scope="everything")


class TestRequiresRecalculation:
    def test_title_change_does_not_require_recalculation(self, daily_state):
        assert requires_recalculation(track(daily_state, RecurringTaskUpdate(title="x"))) is False

    @pytest.mark.parametrize(
        "update",
        [
            RecurringTaskUpdate(recurring_pattern=RecurrenceConfig(frequency=Frequency.WEEKLY)),
            RecurringTaskUpdate(duration=Duration(hours=2)),
            RecurringTaskUpdate(start_date=datetime(2025, 2, 1, tzinfo=timezone.utc)),
        ],
    )
    def test_schedule_changes_require_recalculation(self, daily_state, update):
        assert requires_recalculation(track(daily_state, update)) is True


class TestDescribeScope:
    def test_describes_each_scope(self):
        assert "Only this specific occurrence" in describe_scope(EditScope.THIS_INSTANCE)
        assert "future occurrences" in describe_scope("this_and_future")
        assert "past, current, and future" in describe_scope(EditScope.ALL_INSTANCES)

    def test_unknown_scope_raises(self):
        with pytest.raises(ChangeTrackingError):
            describe_scope("sometimes")
