"""Event model — one row per candidate family event."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Float, Integer, String, Text, UniqueConstraint

from family_events.db.base import Base


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (UniqueConstraint("source", "external_id", name="uq_events_source_external_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    source = Column(String(100), nullable=False, default="")
    external_id = Column(String(255), nullable=True)

    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=False, default="")
    start_time = Column(DateTime(timezone=True), nullable=False, index=True)
    duration_minutes = Column(Integer, nullable=False, default=120)

    location_name = Column(String(255), nullable=False, default="")
    location_address = Column(Text, nullable=False, default="")
    location_distance_miles = Column(Float, nullable=True)

    cost = Column(Float, nullable=False, default=0.0)  # USD
    age_min = Column(Float, nullable=True)
    age_max = Column(Float, nullable=True)

    status = Column(String(50), nullable=False, default="discovered", index=True)  # EventStatus values
    registration_url = Column(Text, nullable=True)
    confirmation_number = Column(String(255), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)

    # Cached copy of the latest row in event_scores
    score = Column(Float, nullable=True)
    score_breakdown = Column(JSON, nullable=True)

    social_rating = Column(Float, nullable=True)
    social_review_count = Column(Integer, nullable=True)
    social_tags = Column(JSON, nullable=False, default=list)

    # Work lease: held while an approval SMS is dispatched or a registration runs
    lease_owner = Column(String(255), nullable=True)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
