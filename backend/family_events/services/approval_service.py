"""SmsApprovalManager — human approval gate delivered over SMS.

Per approval request: pending -> approved | rejected, both terminal.

- Sending is atomic: the event moves to pending, the approval row is created
  and the SMS goes out inside one store transaction. A failed send leaves
  nothing behind.
- The daily cap is counted from the store, so restarts do not reset it.
- Replies resolve the most recent pending request for the sender's number.
  The first valid reply wins; later replies are discarded.
- Confirmation and clarification texts are best-effort.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog

from family_events.core.exceptions import (
    ApprovalDispatchError,
    DailyApprovalLimitError,
    MessagingError,
    PersistenceError,
)
from family_events.db.store import EventStore
from family_events.domain.messages import (
    build_approval_message,
    build_clarification,
    build_decision_confirmation,
)
from family_events.domain.replies import ReplyIntent, parse_reply
from family_events.integrations.sms import SmsGateway
from family_events.schemas.events import EventRecord

logger = structlog.get_logger(__name__)

NO_PENDING_MESSAGE = "No pending event approvals found. You'll receive new event suggestions soon! 🎉"


@dataclass(frozen=True)
class ApprovalDecision:
    approval_id: int
    event_id: int
    approved: bool
    event_title: str
    requires_payment: bool


class SmsApprovalManager:
    def __init__(
        self,
        store: EventStore,
        sms: SmsGateway,
        approval_phone: str,
        daily_limit: int = 3,
        expiry_hours: int = 24,
        sms_timeout: float = 10.0,
    ):
        if store is None or sms is None:
            raise TypeError("SmsApprovalManager requires a store and an SMS gateway")
        self.store = store
        self.sms = sms
        self.approval_phone = approval_phone
        self.daily_limit = daily_limit
        self.expiry = timedelta(hours=expiry_hours)
        self.sms_timeout = sms_timeout
        # Serializes count-then-send so two concurrent sends cannot both pass the cap
        self._send_lock = asyncio.Lock()

    async def approvals_sent_today(self, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        day_start = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        return await self.store.count_approvals_since(day_start)

    async def send_event_for_approval(self, event: EventRecord, now: datetime | None = None) -> int:
        """Send an approval request for ``event`` and return the approval id.

        Raises:
            DailyApprovalLimitError: the daily cap is reached
            ApprovalDispatchError: the SMS could not be sent (nothing persisted)
            PersistenceError: the store failed (nothing persisted)
            InvalidTransitionError: the event cannot enter pending from its status
            EventBusyError: the event is reserved by another dispatch or a registration
        """
        now = now or datetime.now(timezone.utc)
        if not self.approval_phone:
            raise ApprovalDispatchError("No approval phone number configured")

        async with self._send_lock:
            sent = await self.approvals_sent_today(now)
            if sent >= self.daily_limit:
                logger.info("approval_daily_limit_reached", event_id=event.id, sent=sent, limit=self.daily_limit)
                raise DailyApprovalLimitError(self.daily_limit, sent)

            message = build_approval_message(event, now=now)
            reservation = self.store.begin_approval(
                event.id,
                self.approval_phone,
                message,
                now=now,
                reserve_seconds=int(self.sms_timeout) + 60,
            )
            async with reservation as handle:
                try:
                    handle.message_sid = await asyncio.wait_for(
                        self.sms.send(self.approval_phone, message),
                        timeout=self.sms_timeout,
                    )
                except (MessagingError, asyncio.TimeoutError) as exc:
                    logger.warning(
                        "approval_sms_failed",
                        event_id=event.id,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    raise ApprovalDispatchError(f"Approval SMS for event {event.id} failed: {exc}") from exc

        logger.info(
            "approval_requested",
            event_id=event.id,
            approval_id=handle.approval_id,
            message_sid=handle.message_sid,
            sent_today=sent + 1,
        )
        return handle.approval_id

    async def handle_incoming_response(
        self,
        phone_number: str,
        message_body: str | None,
        message_id: str | None = None,
        now: datetime | None = None,
    ) -> ApprovalDecision | None:
        """Apply an inbound reply. Returns the decision, or None when nothing changed.

        None covers empty / unclear bodies, replies with no pending request
        (orphans) and replies that lost to an earlier one. Store errors
        propagate so the webhook can ask the provider to redeliver.
        """
        now = now or datetime.now(timezone.utc)
        if not isinstance(phone_number, str) or not phone_number.strip():
            logger.warning("sms_reply_missing_sender", message_id=message_id)
            return None
        if not isinstance(message_body, str) or not message_body.strip():
            logger.info("sms_reply_empty", phone=phone_number, message_id=message_id)
            return None

        parsed = parse_reply(message_body)
        pending = await self.store.find_pending_approvals(phone_number, since=now - self.expiry)
        if not pending:
            logger.info("sms_reply_orphaned", phone=phone_number, message_id=message_id)
            await self._notify(phone_number, NO_PENDING_MESSAGE)
            return None

        latest = pending[0]
        if parsed.intent == ReplyIntent.UNCLEAR:
            event = await self.store.get_event(latest.event_id)
            logger.info("sms_reply_unclear", approval_id=latest.id, event_id=latest.event_id)
            if event is not None:
                await self._notify(phone_number, build_clarification(event.title, message_body))
            return None

        approved = parsed.intent == ReplyIntent.APPROVE
        resolved = await self.store.resolve_approval(
            latest.id,
            approved=approved,
            response_text=parsed.text,
            response_message_id=message_id,
            now=now,
        )
        if resolved is None:
            logger.info("sms_reply_superseded", approval_id=latest.id, message_id=message_id)
            return None

        event = await self.store.get_event(resolved.event_id)
        if event is None:
            raise PersistenceError(f"Event {resolved.event_id} vanished after approval {resolved.id}")

        logger.info(
            "approval_resolved",
            approval_id=resolved.id,
            event_id=event.id,
            approved=approved,
            confidence=parsed.confidence.value,
        )
        await self._notify(phone_number, build_decision_confirmation(event, approved))
        return ApprovalDecision(
            approval_id=resolved.id,
            event_id=event.id,
            approved=approved,
            event_title=event.title,
            requires_payment=not event.is_free,
        )

    async def _notify(self, phone_number: str, text: str) -> None:
        try:
            await asyncio.wait_for(self.sms.send(phone_number, text), timeout=self.sms_timeout)
        except Exception as exc:
            logger.warning(
                "sms_notification_failed",
                phone=phone_number,
                error=str(exc),
                error_type=type(exc).__name__,
            )
