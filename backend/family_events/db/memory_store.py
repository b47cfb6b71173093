"""InMemoryEventStore: in-process EventStore for local runs and tests.

Selected with ``database_url="memory://"``. A single asyncio.Lock stands in
for the database transaction, so every compare-and-set is atomic with respect
to other coroutines. The lock is never held across an await on anything
outside the store; approval dispatch reserves the event with a lease instead. Records are copied in and out; callers never hold a
reference to stored state.
"""

import asyncio
import itertools
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

from family_events.core.exceptions import EventBusyError, PersistenceError
from family_events.db.store import ApprovalHandle, RegistrationCompletion
from family_events.domain.lifecycle import (
    ApprovalStatus,
    EventStatus,
    approval_outcome_status,
    validate_transition,
)
from family_events.schemas.events import (
    ApprovalRecord,
    EventRecord,
    NewEvent,
    RegistrationAttemptRecord,
    ScoreHistoryRecord,
)


class InMemoryEventStore:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._events: dict[int, EventRecord] = {}
        self._leases: dict[int, tuple[str, datetime]] = {}
        self._approvals: dict[int, ApprovalRecord] = {}
        self._scores: list[ScoreHistoryRecord] = []
        self._attempts: list[RegistrationAttemptRecord] = []
        self._event_ids = itertools.count(1)
        self._approval_ids = itertools.count(1)
        self._score_ids = itertools.count(1)
        self._attempt_ids = itertools.count(1)

    async def ping(self) -> None:
        return None

    # ── Events ─────────────────────────────────────────────────────────────

    async def add_event(self, event: NewEvent, now: datetime | None = None) -> EventRecord:
        now = now or datetime.now(timezone.utc)
        async with self._lock:
            if event.external_id is not None:
                for existing in self._events.values():
                    if (existing.source, existing.external_id) == (event.source, event.external_id):
                        raise PersistenceError(f"Duplicate event {event.source}:{event.external_id}")
            record = EventRecord(
                **event.model_dump(),
                id=next(self._event_ids),
                status=EventStatus.DISCOVERED,
                created_at=now,
                updated_at=now,
            )
            self._events[record.id] = record
            return record.model_copy(deep=True)

    async def get_event(self, event_id: int) -> EventRecord | None:
        async with self._lock:
            record = self._events.get(event_id)
            return record.model_copy(deep=True) if record is not None else None

    async def list_events(self, status: EventStatus, limit: int | None = None) -> list[EventRecord]:
        async with self._lock:
            matches = [e.model_copy(deep=True) for e in self._events.values() if e.status == status]
        return matches if limit is None else matches[:limit]

    def _swap_status(self, event_id: int, expected: EventStatus, target: EventStatus, **fields) -> bool:
        record = self._events.get(event_id)
        if record is None or record.status != expected:
            return False
        self._events[event_id] = record.model_copy(
            update={"status": target, "updated_at": datetime.now(timezone.utc), **fields}
        )
        return True

    def _lease_live(self, event_id: int, now: datetime) -> bool:
        lease = self._leases.get(event_id)
        return lease is not None and lease[1] >= now

    def _holds_lease(self, event_id: int, owner: str) -> bool:
        lease = self._leases.get(event_id)
        return lease is not None and lease[0] == owner

    def _drop_lease(self, event_id: int, owner: str) -> None:
        if self._holds_lease(event_id, owner):
            del self._leases[event_id]

    async def transition_status(self, event_id: int, expected: EventStatus, target: EventStatus) -> bool:
        validate_transition(expected, target)
        async with self._lock:
            return self._swap_status(event_id, EventStatus(expected), EventStatus(target))

    # ── Scores ─────────────────────────────────────────────────────────────

    async def record_score(
        self,
        event_id: int,
        total_score: float,
        breakdown: dict[str, float],
        error: str | None = None,
        now: datetime | None = None,
    ) -> None:
        now = now or datetime.now(timezone.utc)
        async with self._lock:
            record = self._events.get(event_id)
            if record is None:
                raise PersistenceError(f"Event {event_id} not found")
            self._scores.append(
                ScoreHistoryRecord(
                    id=next(self._score_ids),
                    event_id=event_id,
                    total_score=total_score,
                    breakdown=dict(breakdown),
                    error=error,
                    scored_at=now,
                )
            )
            self._events[event_id] = record.model_copy(
                update={"score": total_score, "score_breakdown": dict(breakdown), "updated_at": now}
            )

    async def list_score_history(self, event_id: int) -> list[ScoreHistoryRecord]:
        async with self._lock:
            return [s.model_copy() for s in self._scores if s.event_id == event_id]

    # ── Approvals ──────────────────────────────────────────────────────────

    @asynccontextmanager
    async def begin_approval(
        self,
        event_id: int,
        phone_number: str,
        message_body: str,
        now: datetime | None = None,
        reserve_seconds: int = 300,
    ) -> AsyncIterator[ApprovalHandle]:
        # Reserve under the lock, run the body without it, then commit or release.
        now = now or datetime.now(timezone.utc)
        owner = f"approval:{uuid.uuid4().hex}"
        async with self._lock:
            record = self._events.get(event_id)
            if record is None:
                raise PersistenceError(f"Event {event_id} not found")
            validate_transition(record.status, EventStatus.PENDING)
            if self._lease_live(event_id, now):
                raise EventBusyError(event_id)
            self._leases[event_id] = (owner, now + timedelta(seconds=reserve_seconds))
            expected = record.status

        handle = ApprovalHandle(event_id=event_id)
        committed = False
        try:
            yield handle
            async with self._lock:
                if not self._holds_lease(event_id, owner) or not self._swap_status(
                    event_id, expected, EventStatus.PENDING, updated_at=now
                ):
                    raise PersistenceError(f"Approval reservation for event {event_id} was lost")
                del self._leases[event_id]
                handle.approval_id = next(self._approval_ids)
                self._approvals[handle.approval_id] = ApprovalRecord(
                    id=handle.approval_id,
                    event_id=event_id,
                    phone_number=phone_number,
                    status=ApprovalStatus.PENDING,
                    message_body=message_body,
                    message_sid=handle.message_sid,
                    created_at=now,
                )
                committed = True
        finally:
            if not committed:
                async with self._lock:
                    self._drop_lease(event_id, owner)

    async def get_approval(self, approval_id: int) -> ApprovalRecord | None:
        async with self._lock:
            record = self._approvals.get(approval_id)
            return record.model_copy() if record is not None else None

    async def find_pending_approvals(self, phone_number: str, since: datetime) -> list[ApprovalRecord]:
        async with self._lock:
            matches = [
                a.model_copy()
                for a in self._approvals.values()
                if a.phone_number == phone_number
                and a.status == ApprovalStatus.PENDING
                and a.created_at >= since
            ]
        return sorted(matches, key=lambda a: (a.created_at, a.id), reverse=True)

    async def resolve_approval(
        self,
        approval_id: int,
        approved: bool,
        response_text: str,
        response_message_id: str | None = None,
        now: datetime | None = None,
    ) -> ApprovalRecord | None:
        now = now or datetime.now(timezone.utc)
        approval_status, event_status = approval_outcome_status(approved)
        async with self._lock:
            approval = self._approvals.get(approval_id)
            if approval is None or approval.status != ApprovalStatus.PENDING:
                return None
            extra = {} if approved else {"rejection_reason": response_text}
            if not self._swap_status(approval.event_id, EventStatus.PENDING, event_status, **extra):
                return None
            resolved = approval.model_copy(
                update={
                    "status": approval_status,
                    "response_text": response_text,
                    "response_message_id": response_message_id,
                    "responded_at": now,
                }
            )
            self._approvals[approval_id] = resolved
            return resolved.model_copy()

    async def count_approvals_since(self, since: datetime) -> int:
        async with self._lock:
            return sum(1 for a in self._approvals.values() if a.created_at >= since)

    # ── Registration ───────────────────────────────────────────────────────

    async def claim_registration(
        self, event_id: int, owner: str, ttl_seconds: int, now: datetime | None = None
    ) -> bool:
        now = now or datetime.now(timezone.utc)
        async with self._lock:
            record = self._events.get(event_id)
            if record is None or record.status != EventStatus.APPROVED:
                return False
            if self._lease_live(event_id, now):
                return False
            self._leases[event_id] = (owner, now + timedelta(seconds=ttl_seconds))
            return True

    async def complete_registration(
        self, event_id: int, owner: str, completion: RegistrationCompletion, now: datetime | None = None
    ) -> bool:
        validate_transition(EventStatus.APPROVED, completion.status)
        now = now or datetime.now(timezone.utc)
        async with self._lock:
            if not self._holds_lease(event_id, owner):
                return False
            if completion.success:
                fields = {"confirmation_number": completion.confirmation_number}
            else:
                fields = {"failure_reason": completion.message}
            if not self._swap_status(event_id, EventStatus.APPROVED, completion.status, **fields):
                return False
            del self._leases[event_id]
            self._attempts.append(
                RegistrationAttemptRecord(
                    id=next(self._attempt_ids),
                    event_id=event_id,
                    approval_id=completion.approval_id,
                    success=completion.success,
                    status=completion.status,
                    confirmation_number=completion.confirmation_number,
                    message=completion.message,
                    failure_kind=completion.failure_kind,
                    payment_required=completion.payment_required,
                    attempted_at=now,
                )
            )
            return True

    async def release_registration(self, event_id: int, owner: str) -> None:
        async with self._lock:
            self._drop_lease(event_id, owner)

    async def list_registration_attempts(self, event_id: int | None = None) -> list[RegistrationAttemptRecord]:
        async with self._lock:
            return [
                a.model_copy()
                for a in self._attempts
                if event_id is None or a.event_id == event_id
            ]
