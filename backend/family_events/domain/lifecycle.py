"""Event and approval status lifecycles.

Pure functions only: no store access. Persistence layers call
``validate_transition`` before every compare-and-set on status.
"""

from enum import StrEnum

from family_events.core.exceptions import InvalidTransitionError


class EventStatus(StrEnum):
    DISCOVERED = "discovered"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    REGISTERED = "registered"
    MANUAL_REQUIRED = "manual_required"


class ApprovalStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# approved/rejected -> pending is only used when a fresh approval cycle starts.
EVENT_TRANSITIONS: dict[EventStatus, frozenset[EventStatus]] = {
    EventStatus.DISCOVERED: frozenset({EventStatus.PENDING}),
    EventStatus.PENDING: frozenset({EventStatus.APPROVED, EventStatus.REJECTED}),
    EventStatus.APPROVED: frozenset(
        {EventStatus.REGISTERED, EventStatus.MANUAL_REQUIRED, EventStatus.PENDING}
    ),
    EventStatus.REJECTED: frozenset({EventStatus.PENDING}),
    EventStatus.REGISTERED: frozenset(),
    EventStatus.MANUAL_REQUIRED: frozenset(),
}

TERMINAL_EVENT_STATUSES: frozenset[EventStatus] = frozenset(
    status for status, targets in EVENT_TRANSITIONS.items() if not targets
)

APPROVAL_TRANSITIONS: dict[ApprovalStatus, frozenset[ApprovalStatus]] = {
    ApprovalStatus.PENDING: frozenset({ApprovalStatus.APPROVED, ApprovalStatus.REJECTED}),
    ApprovalStatus.APPROVED: frozenset(),
    ApprovalStatus.REJECTED: frozenset(),
}


def can_transition(current: EventStatus | str, target: EventStatus | str) -> bool:
    """Return True if an event may move from ``current`` to ``target``.

    Unknown status strings are never valid.
    """
    try:
        current_status = EventStatus(current)
        target_status = EventStatus(target)
    except ValueError:
        return False
    return target_status in EVENT_TRANSITIONS[current_status]


def validate_transition(current: EventStatus | str, target: EventStatus | str) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is allowed."""
    if not can_transition(current, target):
        raise InvalidTransitionError(str(current), str(target))


def approval_outcome_status(approved: bool) -> tuple[ApprovalStatus, EventStatus]:
    """Map a parsed reply to the approval and event statuses it produces."""
    if approved:
        return ApprovalStatus.APPROVED, EventStatus.APPROVED
    return ApprovalStatus.REJECTED, EventStatus.REJECTED
