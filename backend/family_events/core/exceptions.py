class FamilyEventsError(Exception):
    """Base exception for the family event planner."""

    pass


class PersistenceError(FamilyEventsError):
    """Raised when the event store cannot read or write."""

    pass


class InvalidTransitionError(FamilyEventsError):
    """Raised when an event status change is not allowed by the lifecycle."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Invalid status transition '{current}' -> '{target}'")


class MessagingError(FamilyEventsError):
    """Raised when the SMS gateway rejects or fails a send."""

    pass


class ApprovalDispatchError(MessagingError):
    """Raised when an approval request could not be delivered; nothing was persisted."""

    pass


class DailyApprovalLimitError(FamilyEventsError):
    """Raised when the daily cap on approval requests has been reached."""

    def __init__(self, limit: int, sent: int):
        self.limit = limit
        self.sent = sent
        super().__init__(f"Daily approval limit reached ({sent}/{limit})")


class CalendarError(FamilyEventsError):
    """Base class for calendar provider failures."""

    pass


class CalendarUnavailableError(CalendarError):
    pass


class CalendarAccessDeniedError(CalendarError):
    pass


class CalendarRateLimitedError(CalendarError):
    pass


class AutomationUnavailableError(FamilyEventsError):
    """Raised when the browser engine cannot be started."""

    pass


class ReportDeliveryError(FamilyEventsError):
    """Raised when the primary report sink fails."""

    pass


class EventBusyError(FamilyEventsError):
    """Raised when another worker holds a lease on the event."""

    def __init__(self, event_id: int):
        self.event_id = event_id
        super().__init__(f"Event {event_id} is held by another worker")
