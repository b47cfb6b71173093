"""EventScore model — append-only history of score computations."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Float, ForeignKey, Integer, Text

from family_events.db.base import Base


class EventScore(Base):
    __tablename__ = "event_scores"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    total_score = Column(Float, nullable=False)
    breakdown = Column(JSON, nullable=False)
    error = Column(Text, nullable=True)
    scored_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
