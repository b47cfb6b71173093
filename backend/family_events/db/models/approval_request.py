"""ApprovalRequest model — SMS yes/no gate for one event."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from family_events.db.base import Base


class ApprovalRequest(Base):
    __tablename__ = "approval_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    phone_number = Column(String(50), nullable=False, index=True)

    status = Column(String(20), nullable=False, default="pending")  # pending, approved, rejected
    message_body = Column(Text, nullable=False, default="")
    message_sid = Column(String(100), nullable=True)  # Outbound gateway message id

    response_text = Column(Text, nullable=True)
    response_message_id = Column(String(100), nullable=True)  # Inbound gateway message id

    created_at = Column(DateTime(timezone=True), nullable=False, index=True, default=lambda: datetime.now(timezone.utc))
    responded_at = Column(DateTime(timezone=True), nullable=True)
