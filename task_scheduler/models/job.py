"""Job processing result models."""

from pydantic import BaseModel, Field


class PhaseResult(BaseModel):
    """Outcome counts for one phase of a tick."""

    examined: int = 0
    created: int = 0
    skipped: int = 0
    failed: int = 0
    ran: bool = True


class RetryResult(BaseModel):
    """Outcome counts for a pass over the failed-notification queue."""

    examined: int = 0
    delivered: int = 0
    requeued: int = 0
    dropped: int = 0
    ran: bool = True


class JobRunSummary(BaseModel):
    """Summary of one processJobs tick."""

    skipped: bool = False
    recurring: PhaseResult = Field(default_factory=PhaseResult)
    reminders: PhaseResult = Field(default_factory=PhaseResult)
    overdue: PhaseResult = Field(default_factory=PhaseResult)
    retries: RetryResult = Field(default_factory=RetryResult)
    duration_ms: int = 0
