"""Pydantic records passed between the store, the services and the API."""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator

from family_events.domain.lifecycle import ApprovalStatus, EventStatus


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AgeRange(BaseModel):
    min: float | None = None
    max: float | None = None


class Location(BaseModel):
    name: str = ""
    address: str = ""
    distance_miles: float | None = None


class SocialProof(BaseModel):
    rating: float | None = None
    review_count: int | None = None
    tags: list[str] = Field(default_factory=list)


class NewEvent(BaseModel):
    """Candidate event as produced by ingestion, before it has an id."""

    source: str = ""
    external_id: str | None = None
    title: str
    description: str = ""
    start_time: datetime
    duration_minutes: int = 120
    location: Location = Field(default_factory=Location)
    cost: float = 0.0
    age_range: AgeRange | None = None
    registration_url: str | None = None
    social_proof: SocialProof | None = None

    @field_validator("start_time")
    @classmethod
    def _utc_start(cls, value: datetime) -> datetime:
        return _as_utc(value)


class EventRecord(NewEvent):
    model_config = ConfigDict(from_attributes=True)

    id: int
    status: EventStatus = EventStatus.DISCOVERED
    confirmation_number: str | None = None
    rejection_reason: str | None = None
    failure_reason: str | None = None
    score: float | None = None
    score_breakdown: dict[str, float] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("created_at", "updated_at")
    @classmethod
    def _utc_audit(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @property
    def is_free(self) -> bool:
        return self.cost == 0


class ApprovalRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    event_id: int
    phone_number: str
    status: ApprovalStatus = ApprovalStatus.PENDING
    message_body: str = ""
    message_sid: str | None = None
    response_text: str | None = None
    response_message_id: str | None = None
    created_at: datetime
    responded_at: datetime | None = None

    @field_validator("created_at", "responded_at")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


class ScoreHistoryRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    event_id: int
    total_score: float
    breakdown: dict[str, float]
    error: str | None = None
    scored_at: datetime

    @field_validator("scored_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class RegistrationAttemptRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    event_id: int
    approval_id: int | None = None
    success: bool
    status: EventStatus
    confirmation_number: str | None = None
    message: str = ""
    failure_kind: str | None = None
    payment_required: bool = False
    attempted_at: datetime

    @field_validator("attempted_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return _as_utc(value)
