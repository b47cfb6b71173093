"""RegistrationAttempt model — one row per completed automation attempt."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text

from family_events.db.base import Base


class RegistrationAttempt(Base):
    __tablename__ = "registration_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    approval_id = Column(Integer, ForeignKey("approval_requests.id"), nullable=True)

    success = Column(Boolean, nullable=False)
    status = Column(String(50), nullable=False)  # registered or manual_required
    confirmation_number = Column(String(255), nullable=True)
    message = Column(Text, nullable=False, default="")
    failure_kind = Column(String(50), nullable=True)
    payment_required = Column(Boolean, nullable=False, default=False)

    attempted_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
