"""Duration model: a task's intended span independent of absolute dates."""

from datetime import datetime

from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, Field

# Approximations used when collapsing a duration to a flat number of minutes
MINUTES_PER_HOUR = 60
MINUTES_PER_DAY = 24 * MINUTES_PER_HOUR
MINUTES_PER_MONTH = 30 * MINUTES_PER_DAY
MINUTES_PER_YEAR = 365 * MINUTES_PER_DAY

DURATION_FIELDS = ("years", "months", "days", "hours", "minutes")

_UNIT_LABELS = (
    ("years", "year", "years"),
    ("months", "month", "months"),
    ("days", "day", "days"),
    ("hours", "hour", "hours"),
    ("minutes", "minute", "minutes"),
)


class Duration(BaseModel):
    """A structured {years, months, days, hours, minutes} span."""

    years: int = Field(default=0, ge=0)
    months: int = Field(default=0, ge=0)
    days: int = Field(default=0, ge=0)
    hours: int = Field(default=0, ge=0)
    minutes: int = Field(default=0, ge=0)

    def add_to(self, date: datetime) -> datetime:
        """Add this duration to a date.

        Years and months are applied first and clamp to the end of the
        month (Jan 31 + 1 month = Feb 28/29).
        """
        return date + relativedelta(
            years=self.years,
            months=self.months,
            days=self.days,
            hours=self.hours,
            minutes=self.minutes,
        )

    @classmethod
    def between(cls, start: datetime, end: datetime) -> "Duration":
        """Approximate the duration between two dates.

        Raises:
            ValueError: If end is not after start
        """
        if start >= end:
            raise ValueError("End date must be after start date")
        total_minutes = int((end - start).total_seconds() // 60)
        return cls.from_minutes(total_minutes)

    @classmethod
    def from_minutes(cls, total_minutes: int) -> "Duration":
        """Split a flat number of minutes into units (365-day years, 30-day months)."""
        if not total_minutes or total_minutes <= 0:
            return cls()

        years, remaining = divmod(total_minutes, MINUTES_PER_YEAR)
        months, remaining = divmod(remaining, MINUTES_PER_MONTH)
        days, remaining = divmod(remaining, MINUTES_PER_DAY)
        hours, minutes = divmod(remaining, MINUTES_PER_HOUR)
        return cls(years=years, months=months, days=days, hours=hours, minutes=minutes)

    def to_minutes(self) -> int:
        return (
            self.years * MINUTES_PER_YEAR
            + self.months * MINUTES_PER_MONTH
            + self.days * MINUTES_PER_DAY
            + self.hours * MINUTES_PER_HOUR
            + self.minutes
        )

    def is_zero(self) -> bool:
        return all(getattr(self, name) == 0 for name in DURATION_FIELDS)

    def format(
        self, compact: bool = False, include_zero: bool = False, max_units: int = 3
    ) -> str:
        """Format as text, e.g. "1 day, 2 hours" or "1d 2h" when compact."""
        parts: list[str] = []
        for key, singular, plural in _UNIT_LABELS:
            value = getattr(self, key)
            if value > 0 or (include_zero and not parts):
                if compact:
                    parts.append(f"{value}{key[0]}")
                else:
                    parts.append(f"{value} {singular if value == 1 else plural}")
                if len(parts) >= max_units:
                    break

        if not parts:
            return "0 minutes" if include_zero else ""
        return " ".join(parts) if compact else ", ".join(parts)

    def validate_bounds(self) -> list[str]:
        """Check the per-unit bounds used by task forms.

        Returns:
            List of error messages; empty when the duration is acceptable
        """
        errors = []
        limits = {"years": 99, "months": 11, "days": 30, "hours": 23, "minutes": 59}
        for key, limit in limits.items():
            if getattr(self, key) > limit:
                errors.append(f"{key.capitalize()} cannot exceed {limit}")
        if self.is_zero():
            errors.append("Duration must have at least one positive value")
        return errors
