"""Inbound SMS webhook (Twilio form post).

Twilio posts ``From``, ``Body`` and ``MessageSid`` as form fields and expects
TwiML back. Approvals schedule registration as a background task so the
webhook answers immediately. Store failures surface as 503 so the provider
can redeliver.
"""

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Form
from fastapi.responses import Response

from family_events.api.deps import get_services
from family_events.services.container import Services

logger = structlog.get_logger(__name__)

router = APIRouter()

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


@router.post("/sms")
async def receive_sms(
    background_tasks: BackgroundTasks,
    from_number: str = Form("", alias="From"),
    body: str = Form("", alias="Body"),
    message_sid: str | None = Form(None, alias="MessageSid"),
    services: Services = Depends(get_services),
) -> Response:
    logger.info("sms_received", sender=from_number, message_sid=message_sid)
    decision = await services.approvals.handle_incoming_response(from_number, body, message_sid)

    if decision is not None and decision.approved:
        background_tasks.add_task(
            services.orchestrator.process_auto_registration,
            decision.event_id,
            decision.approval_id,
        )
        logger.info("registration_scheduled", event_id=decision.event_id, approval_id=decision.approval_id)

    return Response(content=EMPTY_TWIML, media_type="application/xml")
