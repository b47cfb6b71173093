"""EventStore protocol and its SQLAlchemy implementation.

The store is the single source of truth for event and approval state. Every
status change is a compare-and-set: the UPDATE carries the expected current
status in its WHERE clause and the caller learns from the row count whether
it won. Multi-row changes (approval + event, registration result + attempt)
commit in one transaction.
"""

import uuid
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol, runtime_checkable

import structlog
from sqlalchemy import func, or_, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from family_events.core.exceptions import EventBusyError, PersistenceError
from family_events.db.models import ApprovalRequest, Event, EventScore, RegistrationAttempt
from family_events.domain.lifecycle import (
    ApprovalStatus,
    EventStatus,
    approval_outcome_status,
    validate_transition,
)
from family_events.schemas.events import (
    AgeRange,
    ApprovalRecord,
    EventRecord,
    Location,
    NewEvent,
    RegistrationAttemptRecord,
    ScoreHistoryRecord,
    SocialProof,
)

logger = structlog.get_logger(__name__)


class _EventNotPending(Exception):
    def __init__(self, event_id: int):
        self.event_id = event_id
        super().__init__(f"Event {event_id} is no longer pending")


@dataclass
class ApprovalHandle:
    """Yielded by ``begin_approval`` while the event is reserved.

    Set ``message_sid`` once the SMS has gone out; it is stored on commit.
    ``approval_id`` is assigned when the block exits cleanly.
    """

    event_id: int
    approval_id: int | None = None
    message_sid: str | None = None


@dataclass(frozen=True)
class RegistrationCompletion:
    status: EventStatus  # registered or manual_required
    message: str = ""
    confirmation_number: str | None = None
    failure_kind: str | None = None
    payment_required: bool = False
    approval_id: int | None = None

    @property
    def success(self) -> bool:
        return self.status == EventStatus.REGISTERED


@runtime_checkable
class EventStore(Protocol):
    """Persistence capability used by every service.

    Implementations: SqlEventStore (Postgres / SQLite) and InMemoryEventStore.
    """

    async def ping(self) -> None: ...

    async def add_event(self, event: NewEvent, now: datetime | None = None) -> EventRecord: ...

    async def get_event(self, event_id: int) -> EventRecord | None: ...

    async def list_events(self, status: EventStatus, limit: int | None = None) -> list[EventRecord]: ...

    async def transition_status(self, event_id: int, expected: EventStatus, target: EventStatus) -> bool: ...

    async def record_score(
        self,
        event_id: int,
        total_score: float,
        breakdown: dict[str, float],
        error: str | None = None,
        now: datetime | None = None,
    ) -> None: ...

    async def list_score_history(self, event_id: int) -> list[ScoreHistoryRecord]: ...

    def begin_approval(
        self,
        event_id: int,
        phone_number: str,
        message_body: str,
        now: datetime | None = None,
        reserve_seconds: int = 300,
    ) -> AbstractAsyncContextManager[ApprovalHandle]: ...

    async def get_approval(self, approval_id: int) -> ApprovalRecord | None: ...

    async def find_pending_approvals(self, phone_number: str, since: datetime) -> list[ApprovalRecord]: ...

    async def resolve_approval(
        self,
        approval_id: int,
        approved: bool,
        response_text: str,
        response_message_id: str | None = None,
        now: datetime | None = None,
    ) -> ApprovalRecord | None: ...

    async def count_approvals_since(self, since: datetime) -> int: ...

    async def claim_registration(
        self, event_id: int, owner: str, ttl_seconds: int, now: datetime | None = None
    ) -> bool: ...

    async def complete_registration(
        self, event_id: int, owner: str, completion: RegistrationCompletion, now: datetime | None = None
    ) -> bool: ...

    async def release_registration(self, event_id: int, owner: str) -> None: ...

    async def list_registration_attempts(self, event_id: int | None = None) -> list[RegistrationAttemptRecord]: ...


def _event_to_record(row: Event) -> EventRecord:
    age_range = None
    if row.age_min is not None or row.age_max is not None:
        age_range = AgeRange(min=row.age_min, max=row.age_max)
    social = None
    if row.social_rating is not None or row.social_review_count is not None or row.social_tags:
        social = SocialProof(
            rating=row.social_rating,
            review_count=row.social_review_count,
            tags=list(row.social_tags or []),
        )
    return EventRecord(
        id=row.id,
        source=row.source,
        external_id=row.external_id,
        title=row.title,
        description=row.description,
        start_time=row.start_time,
        duration_minutes=row.duration_minutes,
        location=Location(
            name=row.location_name,
            address=row.location_address,
            distance_miles=row.location_distance_miles,
        ),
        cost=row.cost,
        age_range=age_range,
        status=EventStatus(row.status),
        registration_url=row.registration_url,
        confirmation_number=row.confirmation_number,
        rejection_reason=row.rejection_reason,
        failure_reason=row.failure_reason,
        score=row.score,
        score_breakdown=row.score_breakdown,
        social_proof=social,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _new_event_row(event: NewEvent, now: datetime) -> Event:
    return Event(
        source=event.source,
        external_id=event.external_id,
        title=event.title,
        description=event.description,
        start_time=event.start_time,
        duration_minutes=event.duration_minutes,
        location_name=event.location.name,
        location_address=event.location.address,
        location_distance_miles=event.location.distance_miles,
        cost=event.cost,
        age_min=event.age_range.min if event.age_range else None,
        age_max=event.age_range.max if event.age_range else None,
        status=EventStatus.DISCOVERED.value,
        registration_url=event.registration_url,
        social_rating=event.social_proof.rating if event.social_proof else None,
        social_review_count=event.social_proof.review_count if event.social_proof else None,
        social_tags=list(event.social_proof.tags) if event.social_proof else [],
        created_at=now,
        updated_at=now,
    )


class SqlEventStore:
    """EventStore backed by SQLAlchemy async sessions.

    Args:
        session_factory: async_sessionmaker bound to the Postgres or SQLite engine
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            logger.warning("event_store_error", error=str(exc), error_type=type(exc).__name__)
            raise PersistenceError(str(exc)) from exc

    async def ping(self) -> None:
        async with self._transaction() as session:
            await session.execute(text("SELECT 1"))

    # ── Events ─────────────────────────────────────────────────────────────

    async def add_event(self, event: NewEvent, now: datetime | None = None) -> EventRecord:
        now = now or datetime.now(timezone.utc)
        try:
            async with self._transaction() as session:
                row = _new_event_row(event, now)
                session.add(row)
                await session.flush()
                return _event_to_record(row)
        except PersistenceError as exc:
            if isinstance(exc.__cause__, IntegrityError):
                raise PersistenceError(
                    f"Duplicate event {event.source}:{event.external_id}"
                ) from exc.__cause__
            raise

    async def get_event(self, event_id: int) -> EventRecord | None:
        async with self._transaction() as session:
            row = await session.get(Event, event_id)
            return _event_to_record(row) if row is not None else None

    async def list_events(self, status: EventStatus, limit: int | None = None) -> list[EventRecord]:
        async with self._transaction() as session:
            stmt = select(Event).where(Event.status == EventStatus(status).value).order_by(Event.id)
            if limit is not None:
                stmt = stmt.limit(limit)
            rows = (await session.execute(stmt)).scalars().all()
            return [_event_to_record(row) for row in rows]

    async def transition_status(self, event_id: int, expected: EventStatus, target: EventStatus) -> bool:
        validate_transition(expected, target)
        async with self._transaction() as session:
            result = await session.execute(
                update(Event)
                .where(Event.id == event_id, Event.status == EventStatus(expected).value)
                .values(status=EventStatus(target).value, updated_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

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
        async with self._transaction() as session:
            session.add(
                EventScore(
                    event_id=event_id,
                    total_score=total_score,
                    breakdown=dict(breakdown),
                    error=error,
                    scored_at=now,
                )
            )
            await session.execute(
                update(Event)
                .where(Event.id == event_id)
                .values(score=total_score, score_breakdown=dict(breakdown), updated_at=now)
                .execution_options(synchronize_session=False)
            )

    async def list_score_history(self, event_id: int) -> list[ScoreHistoryRecord]:
        async with self._transaction() as session:
            rows = (
                await session.execute(
                    select(EventScore).where(EventScore.event_id == event_id).order_by(EventScore.id)
                )
            ).scalars().all()
            return [ScoreHistoryRecord.model_validate(row) for row in rows]

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
        """Move the event to pending and create its approval row atomically.

        The event is first reserved with a short lease in its own transaction.
        The caller sends the SMS inside the ``async with`` block with no
        transaction open; on exit the status change and the approval row
        commit together. Any exception raised in the block releases the
        reservation and stores nothing.
        """
        now = now or datetime.now(timezone.utc)
        owner = f"approval:{uuid.uuid4().hex}"
        async with self._transaction() as session:
            current = (
                await session.execute(select(Event.status).where(Event.id == event_id))
            ).scalar_one_or_none()
            if current is None:
                raise PersistenceError(f"Event {event_id} not found")
            validate_transition(current, EventStatus.PENDING)

            reserved = await session.execute(
                update(Event)
                .where(
                    Event.id == event_id,
                    Event.status == current,
                    or_(Event.lease_owner.is_(None), Event.lease_expires_at < now),
                )
                .values(lease_owner=owner, lease_expires_at=now + timedelta(seconds=reserve_seconds))
                .execution_options(synchronize_session=False)
            )
            if reserved.rowcount != 1:
                raise EventBusyError(event_id)

        handle = ApprovalHandle(event_id=event_id)
        committed = False
        try:
            yield handle
            async with self._transaction() as session:
                moved = await session.execute(
                    update(Event)
                    .where(Event.id == event_id, Event.status == current, Event.lease_owner == owner)
                    .values(
                        status=EventStatus.PENDING.value,
                        lease_owner=None,
                        lease_expires_at=None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if moved.rowcount != 1:
                    raise PersistenceError(f"Approval reservation for event {event_id} was lost")

                approval = ApprovalRequest(
                    event_id=event_id,
                    phone_number=phone_number,
                    status=ApprovalStatus.PENDING.value,
                    message_body=message_body,
                    message_sid=handle.message_sid,
                    created_at=now,
                )
                session.add(approval)
                await session.flush()
                handle.approval_id = approval.id
            committed = True
        finally:
            if not committed:
                await self._release_reservation(event_id, owner)

    async def _release_reservation(self, event_id: int, owner: str) -> None:
        try:
            await self.release_registration(event_id, owner)
        except PersistenceError as exc:
            # The lease expires on its own
            logger.warning("approval_reservation_release_failed", event_id=event_id, error=str(exc))

    async def get_approval(self, approval_id: int) -> ApprovalRecord | None:
        async with self._transaction() as session:
            row = await session.get(ApprovalRequest, approval_id)
            return ApprovalRecord.model_validate(row) if row is not None else None

    async def find_pending_approvals(self, phone_number: str, since: datetime) -> list[ApprovalRecord]:
        async with self._transaction() as session:
            rows = (
                await session.execute(
                    select(ApprovalRequest)
                    .where(
                        ApprovalRequest.phone_number == phone_number,
                        ApprovalRequest.status == ApprovalStatus.PENDING.value,
                        ApprovalRequest.created_at >= since,
                    )
                    .order_by(ApprovalRequest.created_at.desc(), ApprovalRequest.id.desc())
                )
            ).scalars().all()
            return [ApprovalRecord.model_validate(row) for row in rows]

    async def resolve_approval(
        self,
        approval_id: int,
        approved: bool,
        response_text: str,
        response_message_id: str | None = None,
        now: datetime | None = None,
    ) -> ApprovalRecord | None:
        """Record a terminal reply. Returns None if another reply already won."""
        now = now or datetime.now(timezone.utc)
        approval_status, event_status = approval_outcome_status(approved)
        try:
            return await self._resolve_approval(
                approval_id, approval_status, event_status, response_text, response_message_id, now
            )
        except _EventNotPending as exc:
            logger.warning("approval_event_not_pending", approval_id=approval_id, event_id=exc.event_id)
            return None

    async def _resolve_approval(
        self,
        approval_id: int,
        approval_status: ApprovalStatus,
        event_status: EventStatus,
        response_text: str,
        response_message_id: str | None,
        now: datetime,
    ) -> ApprovalRecord | None:
        async with self._transaction() as session:
            approval = await session.get(ApprovalRequest, approval_id)
            if approval is None or approval.status != ApprovalStatus.PENDING.value:
                return None

            won = await session.execute(
                update(ApprovalRequest)
                .where(
                    ApprovalRequest.id == approval_id,
                    ApprovalRequest.status == ApprovalStatus.PENDING.value,
                )
                .values(
                    status=approval_status.value,
                    response_text=response_text,
                    response_message_id=response_message_id,
                    responded_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if won.rowcount != 1:
                return None

            event_values = {"status": event_status.value, "updated_at": now}
            if event_status == EventStatus.REJECTED:
                event_values["rejection_reason"] = response_text
            moved = await session.execute(
                update(Event)
                .where(Event.id == approval.event_id, Event.status == EventStatus.PENDING.value)
                .values(**event_values)
                .execution_options(synchronize_session=False)
            )
            if moved.rowcount != 1:
                # Raising rolls back the approval update as well
                raise _EventNotPending(approval.event_id)

            await session.refresh(approval)
            return ApprovalRecord.model_validate(approval)

    async def count_approvals_since(self, since: datetime) -> int:
        async with self._transaction() as session:
            return (
                await session.execute(
                    select(func.count(ApprovalRequest.id)).where(ApprovalRequest.created_at >= since)
                )
            ).scalar_one()

    # ── Registration ───────────────────────────────────────────────────────

    async def claim_registration(
        self, event_id: int, owner: str, ttl_seconds: int, now: datetime | None = None
    ) -> bool:
        now = now or datetime.now(timezone.utc)
        async with self._transaction() as session:
            result = await session.execute(
                update(Event)
                .where(
                    Event.id == event_id,
                    Event.status == EventStatus.APPROVED.value,
                    or_(Event.lease_owner.is_(None), Event.lease_expires_at < now),
                )
                .values(lease_owner=owner, lease_expires_at=now + timedelta(seconds=ttl_seconds))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def complete_registration(
        self, event_id: int, owner: str, completion: RegistrationCompletion, now: datetime | None = None
    ) -> bool:
        validate_transition(EventStatus.APPROVED, completion.status)
        now = now or datetime.now(timezone.utc)
        values = {
            "status": completion.status.value,
            "lease_owner": None,
            "lease_expires_at": None,
            "updated_at": now,
        }
        if completion.success:
            values["confirmation_number"] = completion.confirmation_number
        else:
            values["failure_reason"] = completion.message
        async with self._transaction() as session:
            result = await session.execute(
                update(Event)
                .where(
                    Event.id == event_id,
                    Event.status == EventStatus.APPROVED.value,
                    Event.lease_owner == owner,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False
            session.add(
                RegistrationAttempt(
                    event_id=event_id,
                    approval_id=completion.approval_id,
                    success=completion.success,
                    status=completion.status.value,
                    confirmation_number=completion.confirmation_number,
                    message=completion.message,
                    failure_kind=completion.failure_kind,
                    payment_required=completion.payment_required,
                    attempted_at=now,
                )
            )
            return True

    async def release_registration(self, event_id: int, owner: str) -> None:
        async with self._transaction() as session:
            await session.execute(
                update(Event)
                .where(Event.id == event_id, Event.lease_owner == owner)
                .values(lease_owner=None, lease_expires_at=None)
                .execution_options(synchronize_session=False)
            )

    async def list_registration_attempts(self, event_id: int | None = None) -> list[RegistrationAttemptRecord]:
        async with self._transaction() as session:
            stmt = select(RegistrationAttempt).order_by(RegistrationAttempt.id)
            if event_id is not None:
                stmt = stmt.where(RegistrationAttempt.event_id == event_id)
            rows = (await session.execute(stmt)).scalars().all()
            return [RegistrationAttemptRecord.model_validate(row) for row in rows]
