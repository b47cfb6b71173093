"""Results of pipeline runs, returned by services and the automation API."""

from enum import StrEnum

from pydantic import BaseModel, Field


class OutcomeStatus(StrEnum):
    REGISTERED = "registered"
    MANUAL_REQUIRED = "manual_required"
    SKIPPED = "skipped"  # not approved any more, or another worker holds the lease
    CONFLICT = "conflict"  # lease lost before the result could be stored
    ERROR = "error"


class RegistrationOutcome(BaseModel):
    event_id: int
    status: OutcomeStatus
    message: str = ""
    event_title: str | None = None
    confirmation_number: str | None = None
    failure_kind: str | None = None


class RunSummary(BaseModel):
    total: int = 0
    registered: int = 0
    manual_required: int = 0
    skipped: int = 0
    conflicts: int = 0
    errors: int = 0

    @classmethod
    def from_outcomes(cls, outcomes: list[RegistrationOutcome]) -> "RunSummary":
        counts = {status: 0 for status in OutcomeStatus}
        for outcome in outcomes:
            counts[outcome.status] += 1
        return cls(
            total=len(outcomes),
            registered=counts[OutcomeStatus.REGISTERED],
            manual_required=counts[OutcomeStatus.MANUAL_REQUIRED],
            skipped=counts[OutcomeStatus.SKIPPED],
            conflicts=counts[OutcomeStatus.CONFLICT],
            errors=counts[OutcomeStatus.ERROR],
        )


class ProposalSummary(BaseModel):
    considered: int = 0
    proposed: list[int] = Field(default_factory=list)
    below_threshold: int = 0
    calendar_conflicts: int = 0
    failed: int = 0
    daily_limit_reached: bool = False


class ReportDeliveryResult(BaseModel):
    success: bool
    message_id: str | None = None
    fallback: str | None = None  # "file_saved" when the report went to disk instead
    file_path: str | None = None
    error: str | None = None
