"""Re-export all models so Base.metadata sees them."""

from family_events.db.models.approval_request import ApprovalRequest
from family_events.db.models.event import Event
from family_events.db.models.event_score import EventScore
from family_events.db.models.registration_attempt import RegistrationAttempt

__all__ = [
    "ApprovalRequest",
    "Event",
    "EventScore",
    "RegistrationAttempt",
]
