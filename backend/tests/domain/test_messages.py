"""Tests for outbound SMS text."""

from datetime import timedelta

import pytest

from family_events.domain.messages import (
    build_approval_message,
    build_clarification,
    build_decision_confirmation,
    build_manual_registration_notice,
    build_registration_success,
)
from family_events.schemas.events import EventRecord, Location, SocialProof

pytestmark = pytest.mark.unit


@pytest.fixture
def record(make_event):
    def _record(**overrides) -> EventRecord:
        return EventRecord(id=1, **make_event(**overrides).model_dump())

    return _record


def test_free_event_approval_message(record, now):
    event = record(
        start_time=now + timedelta(days=14),
        social_proof=SocialProof(rating=4.8, review_count=30, tags=["filling_fast"]),
    )

    message = build_approval_message(event, now=now)

    assert event.title in message
    assert "⭐ 4.8" in message
    assert "(2 weeks away)" in message
    assert "Cost: FREE" in message
    assert "Ages: 2-5" in message
    assert "⚡ Filling fast" in message
    assert message.endswith("Reply YES to book or NO to skip")


def test_paid_event_message_flags_payment(record, now):
    message = build_approval_message(record(cost=35), now=now)

    assert "⚠️ COST: $35 - REQUIRES PAYMENT" in message
    assert "payment link" in message


def test_long_location_is_truncated(record, now):
    event = record(location=Location(address="1234 Exceptionally Long Boulevard Name, Suite 500, Seattle WA"))

    line = next(l for l in build_approval_message(event, now=now).splitlines() if l.startswith("Location:"))

    assert line.endswith("...")
    assert len(line.removeprefix("Location: ")) <= 40


def test_decision_confirmations(record):
    free, paid = record(), record(cost=12.5)

    assert "booked automatically" in build_decision_confirmation(free, approved=True)
    assert "needs payment" in build_decision_confirmation(paid, approved=True)
    assert "Skipping" in build_decision_confirmation(free, approved=False)


def test_clarification_quotes_the_reply():
    text = build_clarification("Story Time", "  maybe later?  ")
    assert '"maybe later?"' in text
    assert "Story Time" in text


def test_registration_notices(record):
    event = record()

    assert "Confirmation: CONF-1" in build_registration_success(event, "CONF-1")
    assert "Confirmation" not in build_registration_success(event, None)
    notice = build_manual_registration_notice(event, "payment required")
    assert "payment required" in notice
    assert event.registration_url in notice
