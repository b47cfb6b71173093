"""RegistrationOrchestrator — sequences scoring, approval and registration.

Entry points:
    propose_events(limit=None)            discovered -> scored -> conflict-checked -> approval SMS
    process_approved_events()             every approved event -> automator -> terminal status
    process_auto_registration(event_id)   single event, used by the SMS webhook

Registration of one event (``_register_one``):
1. Re-read the event; skip unless it is still approved
2. Wait for a browser slot, then claim a TTL lease in the store; skip if
   another worker holds it. The TTL must exceed the automator runtime
3. Run the automator inside the slot (never raises)
4. Store the terminal status and the attempt in one transaction, only while
   still holding the lease; a lost lease persists nothing
5. Best-effort side effects: calendar entries and an SMS notice

Events are processed as independent tasks in bounded batches; a failure in
one event never aborts the batch.
"""

import asyncio
import uuid
from datetime import datetime, timezone

import structlog

from family_events.core.config import CalendarMember
from family_events.core.exceptions import (
    ApprovalDispatchError,
    DailyApprovalLimitError,
    EventBusyError,
    InvalidTransitionError,
    PersistenceError,
)
from family_events.db.store import EventStore, RegistrationCompletion
from family_events.domain.lifecycle import EventStatus
from family_events.domain.messages import (
    build_manual_registration_notice,
    build_registration_success,
)
from family_events.integrations.calendars import CalendarProvider
from family_events.integrations.sms import SmsGateway
from family_events.schemas.events import EventRecord
from family_events.schemas.pipeline import (
    OutcomeStatus,
    ProposalSummary,
    RegistrationOutcome,
    RunSummary,
)
from family_events.services.approval_service import SmsApprovalManager
from family_events.services.conflict_checker import CalendarConflictChecker
from family_events.services.registration_automator import RegistrationAutomator, RegistrationResult
from family_events.services.reporting_service import ReportingService
from family_events.services.scoring_service import ScoringService

logger = structlog.get_logger(__name__)


class RegistrationOrchestrator:
    def __init__(
        self,
        store: EventStore,
        automator: RegistrationAutomator,
        approvals: SmsApprovalManager,
        scoring: ScoringService,
        conflict_checker: CalendarConflictChecker,
        sms: SmsGateway,
        calendar: CalendarProvider,
        calendar_members: list[CalendarMember],
        reporting: ReportingService | None = None,
        notify_phone: str = "",
        batch_size: int = 25,
        lease_seconds: int = 600,
        min_score_to_propose: float = 40.0,
        side_effect_timeout: float = 10.0,
        worker_id: str | None = None,
    ):
        if store is None or automator is None:
            raise TypeError("RegistrationOrchestrator requires a store and an automator")
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if lease_seconds <= automator.max_runtime_seconds:
            raise ValueError(
                f"lease_seconds ({lease_seconds}) must exceed the automator runtime "
                f"({automator.max_runtime_seconds:.0f}s)"
            )
        self.store = store
        self.automator = automator
        self.approvals = approvals
        self.scoring = scoring
        self.conflict_checker = conflict_checker
        self.sms = sms
        self.calendar = calendar
        self.calendar_members = list(calendar_members)
        self.reporting = reporting
        self.notify_phone = notify_phone
        self.batch_size = batch_size
        self.lease_seconds = lease_seconds
        self.min_score_to_propose = min_score_to_propose
        self.side_effect_timeout = side_effect_timeout
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"

    # ── Proposal ───────────────────────────────────────────────────────────

    async def propose_events(self, limit: int | None = None, now: datetime | None = None) -> ProposalSummary:
        """Score discovered events and send approval requests in rank order."""
        now = now or datetime.now(timezone.utc)
        summary = ProposalSummary()
        try:
            discovered = await self.store.list_events(EventStatus.DISCOVERED)
        except PersistenceError as exc:
            logger.error("discovered_events_load_failed", error=str(exc))
            return summary

        ranked = await self.scoring.score_and_record(discovered, now=now)
        summary.considered = len(ranked)

        for scored in ranked:
            if limit is not None and len(summary.proposed) >= limit:
                break
            event: EventRecord = scored.event
            if scored.result.total_score < self.min_score_to_propose:
                summary.below_threshold += 1
                continue

            conflicts = await self.conflict_checker.get_conflict_details(event.start_time, event.duration_minutes)
            if conflicts.has_conflict:
                summary.calendar_conflicts += 1
                logger.info(
                    "proposal_skipped_calendar_conflict",
                    event_id=event.id,
                    conflicts=len(conflicts.blocking_conflicts),
                )
                continue

            try:
                await self.approvals.send_event_for_approval(event, now=now)
            except DailyApprovalLimitError:
                summary.daily_limit_reached = True
                break
            except (ApprovalDispatchError, PersistenceError, InvalidTransitionError, EventBusyError) as exc:
                summary.failed += 1
                logger.warning(
                    "proposal_failed",
                    event_id=event.id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue
            summary.proposed.append(event.id)

        logger.info(
            "proposal_run_summary",
            considered=summary.considered,
            proposed=len(summary.proposed),
            below_threshold=summary.below_threshold,
            calendar_conflicts=summary.calendar_conflicts,
            failed=summary.failed,
            daily_limit_reached=summary.daily_limit_reached,
        )
        return summary

    # ── Registration ───────────────────────────────────────────────────────

    async def process_approved_events(self) -> list[RegistrationOutcome]:
        """Register every approved event. Returns one outcome per loaded event."""
        try:
            approved = await self.store.list_events(EventStatus.APPROVED)
        except Exception as exc:
            logger.error("approved_events_load_failed", error=str(exc), error_type=type(exc).__name__)
            return []

        outcomes: list[RegistrationOutcome] = []
        for start in range(0, len(approved), self.batch_size):
            batch = approved[start : start + self.batch_size]
            outcomes.extend(await asyncio.gather(*(self._register_one(e.id) for e in batch)))

        summary = RunSummary.from_outcomes(outcomes)
        logger.info("registration_run_summary", **summary.model_dump())

        if outcomes and self.reporting is not None:
            delivery = await self.reporting.send_run_report(outcomes)
            logger.info(
                "registration_run_reported",
                success=delivery.success,
                fallback=delivery.fallback,
                file_path=delivery.file_path,
            )
        return outcomes

    async def process_auto_registration(self, event_id: int, approval_id: int | None = None) -> RegistrationOutcome:
        return await self._register_one(event_id, approval_id)

    async def _register_one(self, event_id: int, approval_id: int | None = None) -> RegistrationOutcome:
        log = logger.bind(event_id=event_id)
        owner = f"{self.worker_id}:{uuid.uuid4().hex[:8]}"
        leased = False
        try:
            event = await self.store.get_event(event_id)
            if event is None:
                return RegistrationOutcome(event_id=event_id, status=OutcomeStatus.SKIPPED, message="Event not found")
            if event.status != EventStatus.APPROVED:
                return RegistrationOutcome(
                    event_id=event_id,
                    status=OutcomeStatus.SKIPPED,
                    event_title=event.title,
                    message=f"Event is {event.status.value}, not approved",
                )

            # The lease clock starts only once a browser session is free
            async with self.automator.session_slot():
                leased = await self.store.claim_registration(event_id, owner, self.lease_seconds)
                if not leased:
                    log.info("registration_already_claimed")
                    return RegistrationOutcome(
                        event_id=event_id,
                        status=OutcomeStatus.SKIPPED,
                        event_title=event.title,
                        message="Another worker is registering this event",
                    )
                result = await self.automator.register_for_event(event, slot_held=True)

            completion = RegistrationCompletion(
                status=EventStatus(result.outcome.value),
                message=result.message,
                confirmation_number=result.confirmation_number,
                failure_kind=result.failure_kind.value if result.failure_kind else None,
                payment_required=result.payment_required,
                approval_id=approval_id,
            )
            persisted = await self.store.complete_registration(event_id, owner, completion)
            leased = False
        except Exception as exc:
            log.error("registration_failed", error=str(exc), error_type=type(exc).__name__)
            if leased:
                await self._release(event_id, owner)
            return RegistrationOutcome(
                event_id=event_id,
                status=OutcomeStatus.ERROR,
                message=f"{type(exc).__name__}: {exc}",
            )

        if not persisted:
            log.warning("registration_lease_lost")
            return RegistrationOutcome(
                event_id=event_id,
                status=OutcomeStatus.CONFLICT,
                event_title=event.title,
                message="Registration lease lost; result discarded",
            )

        await self._after_registration(event, result)
        return RegistrationOutcome(
            event_id=event_id,
            status=OutcomeStatus(result.outcome.value),
            event_title=event.title,
            message=result.message,
            confirmation_number=result.confirmation_number,
            failure_kind=result.failure_kind.value if result.failure_kind else None,
        )

    async def _release(self, event_id: int, owner: str) -> None:
        try:
            await self.store.release_registration(event_id, owner)
        except Exception as exc:
            logger.warning("registration_lease_release_failed", event_id=event_id, error=str(exc))

    async def _after_registration(self, event: EventRecord, result: RegistrationResult) -> None:
        if result.success:
            registered = event.model_copy(update={"confirmation_number": result.confirmation_number})
            for member in self.calendar_members:
                if not member.blocking:
                    continue
                try:
                    await asyncio.wait_for(
                        self.calendar.create_event(member, registered),
                        timeout=self.side_effect_timeout,
                    )
                except Exception as exc:
                    logger.warning(
                        "calendar_entry_failed",
                        event_id=event.id,
                        member_id=member.member_id,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
            text = build_registration_success(event, result.confirmation_number)
        else:
            text = build_manual_registration_notice(event, result.message)

        if not self.notify_phone:
            return
        try:
            await asyncio.wait_for(self.sms.send(self.notify_phone, text), timeout=self.side_effect_timeout)
        except Exception as exc:
            logger.warning(
                "registration_notice_failed",
                event_id=event.id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
