"""Occurrence calculator for RFC-5545 recurrence rules.

Rules are parsed into a structured RecurrenceRule and evaluated with
dateutil.rrule. The public functions never raise on a malformed rule:
they log the rule text (and task id when known) and degrade to
"no occurrence" / "invalid".

Supported subset: FREQ (DAILY, WEEKLY, MONTHLY, YEARLY), INTERVAL, BYDAY,
BYMONTHDAY, UNTIL, COUNT and WKST, with an optional DTSTART line.
"""

from datetime import datetime, timezone
from itertools import islice
from typing import Optional, Union
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from dateutil.rrule import (
    DAILY,
    FR,
    MO,
    MONTHLY,
    SA,
    SU,
    TH,
    TU,
    WE,
    WEEKLY,
    YEARLY,
    rrule,
)

from task_scheduler.models.recurrence import (
    CountEnd,
    Frequency,
    NoEnd,
    RecurrenceConfig,
    RecurrenceRule,
    UntilEnd,
)

logger = structlog.get_logger(__name__)

RuleInput = Union[str, RecurrenceRule]

_DATEUTIL_FREQUENCY = {
    Frequency.DAILY: DAILY,
    Frequency.WEEKLY: WEEKLY,
    Frequency.MONTHLY: MONTHLY,
    Frequency.YEARLY: YEARLY,
}

_FREQUENCY_CODES = {
    "DAILY": Frequency.DAILY,
    "WEEKLY": Frequency.WEEKLY,
    "MONTHLY": Frequency.MONTHLY,
    "YEARLY": Frequency.YEARLY,
}

# Index is the weekday number, 0 = Sunday
_WEEKDAY_CODES = ("SU", "MO", "TU", "WE", "TH", "FR", "SA")
_WEEKDAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")
_DATEUTIL_WEEKDAYS = (SU, MO, TU, WE, TH, FR, SA)

_FREQUENCY_UNITS = {
    Frequency.DAILY: ("day", "days"),
    Frequency.WEEKLY: ("week", "weeks"),
    Frequency.MONTHLY: ("month", "months"),
    Frequency.YEARLY: ("year", "years"),
}

# Anchor used only to check that a rule without DTSTART can be expanded
_VALIDATION_ANCHOR = datetime(2000, 1, 1, tzinfo=timezone.utc)


class RecurrenceRuleError(ValueError):
    """Raised when a recurrence rule string cannot be parsed."""


def _as_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC. Naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _load_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise RecurrenceRuleError(f"Unknown time zone: {name!r}") from e


def _parse_datetime(value: str, zone: Optional[ZoneInfo] = None) -> datetime:
    value = value.strip()
    is_utc = value.upper().endswith("Z")
    raw = value[:-1] if is_utc else value

    for fmt in ("%Y%m%dT%H%M%S", "%Y%m%d"):
        try:
            parsed = datetime.strptime(raw, fmt)
            break
        except ValueError:
            continue
    else:
        raise RecurrenceRuleError(f"Invalid date-time value: {value!r}")

    if is_utc:
        return parsed.replace(tzinfo=timezone.utc)
    if zone is not None:
        return parsed.replace(tzinfo=zone)
    # Floating times are interpreted as UTC
    return parsed.replace(tzinfo=timezone.utc)


def _parse_int_list(name: str, value: str) -> list[int]:
    try:
        return [int(item) for item in value.split(",") if item.strip()]
    except ValueError as e:
        raise RecurrenceRuleError(f"{name} must be a list of integers: {value!r}") from e


def _parse_rrule_body(body: str) -> dict:
    parts: dict = {}
    for item in body.split(";"):
        item = item.strip()
        if not item:
            continue
        key, sep, value = item.partition("=")
        key = key.upper()
        if not sep or not value:
            raise RecurrenceRuleError(f"Malformed rule part: {item!r}")
        if key in parts:
            raise RecurrenceRuleError(f"Duplicate rule part: {key}")
        parts[key] = value.strip()
    return parts


def parse_rule(text: str) -> RecurrenceRule:
    """Parse RFC-5545 rule text into a RecurrenceRule.

    Accepts either a bare ``FREQ=...`` line or ``DTSTART``/``RRULE`` lines.

    Raises:
        RecurrenceRuleError: If the text is not a supported recurrence rule
    """
    if not isinstance(text, str) or not text.strip():
        raise RecurrenceRuleError("Recurrence rule is empty")

    dtstart: Optional[datetime] = None
    tzid: Optional[str] = None
    body: Optional[str] = None

    for line in text.strip().splitlines():
        line = line.strip()
        if not line:
            continue
        name, sep, value = line.partition(":")
        upper = name.upper()

        if not sep and "=" in line:
            upper, value = "RRULE", line

        if upper.startswith("DTSTART"):
            for param in name.split(";")[1:]:
                key, _, param_value = param.partition("=")
                if key.upper() == "TZID":
                    tzid = param_value
            zone = _load_zone(tzid) if tzid else None
            dtstart = _parse_datetime(value, zone)
        elif upper == "RRULE":
            if body is not None:
                raise RecurrenceRuleError("Only one RRULE line is supported")
            body = value
        else:
            raise RecurrenceRuleError(f"Unsupported recurrence property: {name!r}")

    if body is None:
        raise RecurrenceRuleError("Missing RRULE")

    parts = _parse_rrule_body(body)

    freq_code = parts.pop("FREQ", None)
    if freq_code is None:
        raise RecurrenceRuleError("FREQ is required")
    frequency = _FREQUENCY_CODES.get(freq_code.upper())
    if frequency is None:
        raise RecurrenceRuleError(f"Unsupported frequency: {freq_code!r}")

    interval = 1
    if "INTERVAL" in parts:
        try:
            interval = int(parts.pop("INTERVAL"))
        except ValueError as e:
            raise RecurrenceRuleError("INTERVAL must be an integer") from e
        if interval < 1:
            raise RecurrenceRuleError("INTERVAL must be at least 1")

    by_weekday: list[int] = []
    if "BYDAY" in parts:
        for code in parts.pop("BYDAY").split(","):
            code = code.strip().upper()
            if code not in _WEEKDAY_CODES:
                raise RecurrenceRuleError(f"Unsupported BYDAY value: {code!r}")
            by_weekday.append(_WEEKDAY_CODES.index(code))

    by_month_day: list[int] = []
    if "BYMONTHDAY" in parts:
        by_month_day = _parse_int_list("BYMONTHDAY", parts.pop("BYMONTHDAY"))
        if any(day == 0 or not -31 <= day <= 31 for day in by_month_day):
            raise RecurrenceRuleError("BYMONTHDAY values must be within 1..31 or -31..-1")

    until = parts.pop("UNTIL", None)
    count = parts.pop("COUNT", None)
    if until is not None and count is not None:
        raise RecurrenceRuleError("UNTIL and COUNT cannot both be set")

    end: Union[NoEnd, UntilEnd, CountEnd] = NoEnd()
    if until is not None:
        end = UntilEnd(until=_parse_datetime(until))
    elif count is not None:
        try:
            count_value = int(count)
        except ValueError as e:
            raise RecurrenceRuleError("COUNT must be an integer") from e
        if count_value < 1:
            raise RecurrenceRuleError("COUNT must be at least 1")
        end = CountEnd(count=count_value)

    parts.pop("WKST", None)
    if parts:
        raise RecurrenceRuleError(f"Unsupported rule parts: {', '.join(sorted(parts))}")

    return RecurrenceRule(
        frequency=frequency,
        interval=interval,
        by_weekday=by_weekday,
        by_month_day=by_month_day,
        end=end,
        dtstart=dtstart,
        timezone=tzid,
    )


def format_rule(rule: RecurrenceRule) -> str:
    """Render a RecurrenceRule as RFC-5545 text."""
    lines = []
    if rule.dtstart is not None:
        if rule.timezone:
            local = rule.dtstart
            if local.tzinfo is None:
                local = local.replace(tzinfo=timezone.utc)
            local = local.astimezone(_load_zone(rule.timezone))
            lines.append(f"DTSTART;TZID={rule.timezone}:{local:%Y%m%dT%H%M%S}")
        else:
            lines.append(f"DTSTART:{_as_utc(rule.dtstart):%Y%m%dT%H%M%SZ}")

    parts = [f"FREQ={rule.frequency.value.upper()}", f"INTERVAL={rule.interval}"]
    if rule.by_weekday:
        parts.append("BYDAY=" + ",".join(_WEEKDAY_CODES[day] for day in rule.by_weekday))
    if rule.by_month_day:
        parts.append("BYMONTHDAY=" + ",".join(str(day) for day in rule.by_month_day))
    if isinstance(rule.end, UntilEnd):
        parts.append(f"UNTIL={_as_utc(rule.end.until):%Y%m%dT%H%M%SZ}")
    elif isinstance(rule.end, CountEnd):
        parts.append(f"COUNT={rule.end.count}")

    lines.append("RRULE:" + ";".join(parts))
    return "\n".join(lines)


def _expand(rule: RecurrenceRule, default_dtstart: datetime) -> rrule:
    """Build the dateutil rrule for a parsed rule."""
    start = rule.dtstart or default_dtstart
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    if rule.timezone and rule.dtstart is None:
        start = start.astimezone(_load_zone(rule.timezone))

    kwargs: dict = {
        "dtstart": start,
        "interval": rule.interval,
    }
    if rule.by_weekday:
        kwargs["byweekday"] = [_DATEUTIL_WEEKDAYS[day] for day in rule.by_weekday]
    if rule.by_month_day:
        kwargs["bymonthday"] = tuple(rule.by_month_day)
    if isinstance(rule.end, UntilEnd):
        kwargs["until"] = _as_utc(rule.end.until)
    elif isinstance(rule.end, CountEnd):
        kwargs["count"] = rule.end.count

    return rrule(_DATEUTIL_FREQUENCY[rule.frequency], **kwargs)


def _coerce(rule: RuleInput) -> RecurrenceRule:
    if isinstance(rule, RecurrenceRule):
        return rule
    return parse_rule(rule)


def _rule_text(rule: RuleInput) -> str:
    return rule if isinstance(rule, str) else format_rule(rule)


def next_occurrence(
    rule: RuleInput,
    after: datetime,
    *,
    dtstart: Optional[datetime] = None,
    task_id: Optional[Union[UUID, str]] = None,
) -> Optional[datetime]:
    """Return the earliest occurrence strictly after ``after``.

    Args:
        rule: Rule text or parsed rule
        after: Reference instant (naive values are taken to be UTC)
        dtstart: Anchor for rules without a DTSTART line; defaults to ``after``
        task_id: Only used to give log lines context

    Returns:
        Next occurrence in UTC, or None if the rule is exhausted or invalid
    """
    reference = _as_utc(after)
    try:
        parsed = _coerce(rule)
        result = _expand(parsed, dtstart or reference).after(reference, inc=False)
    except (ValueError, TypeError, OverflowError) as e:
        logger.error(
            "recurrence_rule_invalid",
            rrule=_safe_text(rule),
            task_id=str(task_id) if task_id else None,
            error=str(e),
        )
        return None

    return _as_utc(result) if result is not None else None


def occurrences_between(
    rule: RuleInput,
    start: datetime,
    end: datetime,
    *,
    limit: int = 100,
    dtstart: Optional[datetime] = None,
    task_id: Optional[Union[UUID, str]] = None,
) -> list[datetime]:
    """Return occurrences within the closed interval [start, end].

    At most ``limit`` values are returned. Intended for previews and
    estimates, not for materialization.
    """
    window_start = _as_utc(start)
    window_end = _as_utc(end)
    if window_end < window_start or limit <= 0:
        return []

    try:
        parsed = _coerce(rule)
        expanded = _expand(parsed, dtstart or window_start)
        results = []
        for occurrence in islice(expanded.xafter(window_start, inc=True), limit):
            if occurrence > window_end:
                break
            results.append(_as_utc(occurrence))
        return results
    except (ValueError, TypeError, OverflowError) as e:
        logger.error(
            "recurrence_rule_invalid",
            rrule=_safe_text(rule),
            task_id=str(task_id) if task_id else None,
            error=str(e),
        )
        return []


def is_valid(rule: RuleInput) -> bool:
    """Check whether a rule can be parsed and expanded."""
    try:
        _expand(_coerce(rule), _VALIDATION_ANCHOR)
        return True
    except (ValueError, TypeError, OverflowError):
        return False


def _ordinal(day: int) -> str:
    if day == -1:
        return "last day"
    if day < 0:
        return f"{_ordinal(-day)} to last day"
    if 11 <= day % 100 <= 13:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(day % 10, "th")
    return f"{day}{suffix}"


def describe(rule: RuleInput) -> str:
    """Human-readable description, e.g. "every 2 weeks on Monday, Friday for 5 times"."""
    try:
        parsed = _coerce(rule)
    except ValueError as e:
        logger.warning("recurrence_rule_describe_failed", rrule=_safe_text(rule), error=str(e))
        return "invalid recurrence rule"

    singular, plural = _FREQUENCY_UNITS[parsed.frequency]
    if parsed.interval == 1:
        text = f"every {singular}"
    else:
        text = f"every {parsed.interval} {plural}"

    if parsed.by_weekday:
        text += " on " + ", ".join(_WEEKDAY_NAMES[day] for day in parsed.by_weekday)
    if parsed.by_month_day:
        text += " on the " + ", ".join(_ordinal(day) for day in parsed.by_month_day)

    if isinstance(parsed.end, UntilEnd):
        until = _as_utc(parsed.end.until)
        text += f" until {until:%B} {until.day}, {until.year}"
    elif isinstance(parsed.end, CountEnd):
        text += " for 1 time" if parsed.end.count == 1 else f" for {parsed.end.count} times"

    if parsed.timezone:
        text += f" ({parsed.timezone})"
    return text


def _safe_text(rule: object) -> str:
    if isinstance(rule, RecurrenceRule):
        return format_rule(rule)
    return str(rule)


def anchor_rule(text: str, dtstart: datetime) -> str:
    """Return rule text with a DTSTART line, adding ``dtstart`` if it has none.

    COUNT is counted from DTSTART, so stored rules must carry one. Invalid
    text is returned unchanged.
    """
    try:
        parsed = parse_rule(text)
    except RecurrenceRuleError:
        return text
    if parsed.dtstart is not None:
        return text
    return format_rule(parsed.model_copy(update={"dtstart": _as_utc(dtstart)}))


def build_rrule(config: RecurrenceConfig, start: datetime) -> str:
    """Convert user-facing recurrence settings into rule text anchored at ``start``.

    Raises:
        RecurrenceRuleError: If the settings cannot be expressed as a rule
    """
    zone_name = None if config.timezone in ("UTC", "Etc/UTC") else config.timezone
    if zone_name:
        _load_zone(zone_name)

    by_weekday: list[int] = []
    by_month_day: list[int] = []
    if config.frequency == Frequency.WEEKLY and config.days_of_week:
        if any(not 0 <= day <= 6 for day in config.days_of_week):
            raise RecurrenceRuleError("days_of_week values must be within 0..6")
        by_weekday = list(config.days_of_week)
    if config.frequency == Frequency.MONTHLY and config.day_of_month:
        by_month_day = [config.day_of_month]

    rule = RecurrenceRule(
        frequency=config.frequency,
        interval=config.interval,
        by_weekday=by_weekday,
        by_month_day=by_month_day,
        end=config.end_condition(),
        dtstart=start,
        timezone=zone_name,
    )
    return format_rule(rule)


def config_from_rrule(text: RuleInput) -> Optional[RecurrenceConfig]:
    """Convert rule text back into user-facing settings, or None if invalid."""
    try:
        parsed = _coerce(text)
    except ValueError as e:
        logger.warning("recurrence_rule_to_config_failed", rrule=_safe_text(text), error=str(e))
        return None

    positive_days = [day for day in parsed.by_month_day if day > 0]
    return RecurrenceConfig(
        frequency=parsed.frequency,
        interval=min(parsed.interval, 99),
        days_of_week=list(parsed.by_weekday) or None,
        day_of_month=positive_days[0] if positive_days else None,
        end_date=parsed.end.until if isinstance(parsed.end, UntilEnd) else None,
        end_occurrences=parsed.end.count if isinstance(parsed.end, CountEnd) else None,
        timezone=parsed.timezone or "UTC",
    )
