"""Recurrence models: the structured form of an RFC-5545 recurrence rule."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


class Frequency(str, Enum):
    """Supported recurrence frequencies."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class NoEnd(BaseModel):
    """The rule repeats forever."""

    kind: Literal["never"] = "never"


class UntilEnd(BaseModel):
    """The rule stops after an inclusive end instant."""

    kind: Literal["until"] = "until"
    until: datetime


class CountEnd(BaseModel):
    """The rule stops after a fixed number of occurrences."""

    kind: Literal["count"] = "count"
    count: int = Field(..., ge=1)


EndCondition = Annotated[Union[NoEnd, UntilEnd, CountEnd], Field(discriminator="kind")]


class RecurrenceRule(BaseModel):
    """Parsed recurrence rule.

    Weekdays use 0 = Sunday ... 6 = Saturday, matching RecurrenceConfig.
    """

    frequency: Frequency
    interval: int = Field(default=1, ge=1)
    by_weekday: list[int] = Field(default_factory=list)
    by_month_day: list[int] = Field(default_factory=list)
    end: EndCondition = Field(default_factory=NoEnd)
    dtstart: Optional[datetime] = None
    timezone: Optional[str] = None


class RecurrenceConfig(BaseModel):
    """User-facing recurrence settings as edited on a template task."""

    frequency: Frequency
    interval: int = Field(default=1, ge=1, le=99)
    days_of_week: Optional[list[int]] = None
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    end_date: Optional[datetime] = None
    end_occurrences: Optional[int] = Field(default=None, ge=1, le=999)
    timezone: str = "UTC"

    @model_validator(mode="after")
    def _single_end_condition(self) -> "RecurrenceConfig":
        if self.end_date is not None and self.end_occurrences is not None:
            raise ValueError("A recurrence cannot have both an end date and an occurrence count")
        return self

    def end_condition(self) -> Union[NoEnd, UntilEnd, CountEnd]:
        if self.end_date is not None:
            return UntilEnd(until=self.end_date)
        if self.end_occurrences is not None:
            return CountEnd(count=self.end_occurrences)
        return NoEnd()
